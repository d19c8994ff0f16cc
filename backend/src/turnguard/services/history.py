"""Render a message log as provider-safe chat history."""

import json
import logging
from typing import Any

from turnguard_models import Turn
from turnguard.services.integrity import answered_call_ids, live_turns

logger = logging.getLogger(__name__)


def build_provider_messages(turns: list[Turn]) -> list[dict[str, Any]]:
    """Build OpenAI-style chat messages from a conversation log.

    Blocked and superseded turns are dropped. An assistant turn only lists the
    tool calls that were answered and not abandoned, and a tool result is only
    emitted when its call was emitted, so every tool message follows a
    matching request.
    """
    answered = answered_call_ids(turns)
    emitted_calls: set[str] = set()
    messages: list[dict[str, Any]] = []

    for turn in live_turns(turns):
        if turn.blocked:
            continue

        if turn.role in ("user", "system"):
            messages.append({"role": turn.role, "content": turn.content or ""})

        elif turn.role == "assistant":
            calls = [
                call
                for call in turn.tool_calls
                if not call.abandoned and call.call_id in answered
            ]
            if turn.tool_calls and not calls and not turn.content:
                continue
            message: dict[str, Any] = {"role": "assistant", "content": turn.content or ""}
            if calls:
                message["tool_calls"] = [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.arguments),
                        },
                    }
                    for call in calls
                ]
                emitted_calls.update(call.call_id for call in calls)
            messages.append(message)

        elif turn.role == "tool":
            if turn.tool_call_id not in emitted_calls:
                logger.debug(f"Skipping tool result {turn.id} without an emitted call")
                continue
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": turn.tool_call_id,
                    "content": turn.content or "",
                }
            )

    return messages
