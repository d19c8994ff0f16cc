"""Integrity validation for conversation message logs.

Pure functions: they inspect turns that have already been loaded and never
touch storage. Two entry points:

- check_append: the write-boundary check, run before a turn is persisted.
  Structural violations (duplicate call ids, orphan results) are caught here
  so they never reach the log.
- classify: grades a whole log as stable, stable-pending, repairable or
  corrupt. Corruption is only declared for things that cannot be retried;
  anything that waiting or abandoning a call can fix is repairable.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from turnguard_models import NewTurn, ReasonCode, RecoveryContext, ToolCallRequest, Turn


class Verdict(str, Enum):
    """Validator classification of a message log."""

    STABLE = "stable"
    STABLE_PENDING = "stable_pending"  # Readable, not checkpointable
    REPAIRABLE = "repairable"
    CORRUPT = "corrupt"


@dataclass
class Classification:
    """Result of classifying a message log."""

    verdict: Verdict
    reason: ReasonCode | None = None
    affected_ids: list[str] = field(default_factory=list)
    outstanding_ids: list[str] = field(default_factory=list)
    oldest_outstanding_at: datetime | None = None

    @property
    def checkpointable(self) -> bool:
        return self.verdict == Verdict.STABLE


@dataclass
class Rejection:
    """Why check_append refused a turn."""

    reason: ReasonCode
    detail: str


def live_turns(turns: list[Turn]) -> list[Turn]:
    """Turns that are still part of the log (not superseded by a restore)."""
    return [t for t in turns if not t.superseded]


def tool_requests(turns: list[Turn]) -> dict[str, ToolCallRequest]:
    """Map call_id -> request for every live assistant turn, blocked included."""
    return {call.call_id: call for t in live_turns(turns) for call in t.tool_calls}


def message_count(turns: list[Turn]) -> int:
    return len(live_turns(turns))


def tool_call_count(turns: list[Turn]) -> int:
    return sum(len(t.tool_calls) for t in live_turns(turns))


def answered_call_ids(turns: list[Turn]) -> set[str]:
    """Call ids answered by unblocked tool turns."""
    return {
        t.tool_call_id
        for t in live_turns(turns)
        if t.role == "tool" and not t.blocked and t.tool_call_id
    }


def unanswered_requests(turns: list[Turn]) -> list[tuple[Turn, list[ToolCallRequest]]]:
    """Assistant turns with tool calls that are neither answered nor abandoned."""
    answered = answered_call_ids(turns)
    result = []
    for turn in live_turns(turns):
        if turn.role != "assistant" or turn.blocked or not turn.tool_calls:
            continue
        missing = [
            call
            for call in turn.tool_calls
            if not call.abandoned and call.call_id not in answered
        ]
        if missing:
            result.append((turn, missing))
    return result


def check_append(turns: list[Turn], new_turn: NewTurn) -> Rejection | None:
    """Check whether appending new_turn would break a hard invariant.

    Returns None when the append is allowed.
    """
    live = live_turns(turns)

    if new_turn.role == "assistant" and new_turn.tool_calls:
        existing = tool_requests(live)
        duplicates = [c.call_id for c in new_turn.tool_calls if c.call_id in existing]
        if duplicates:
            return Rejection(
                ReasonCode.DUPLICATE_TOOL_CALL_ID,
                f"tool call ids already issued: {', '.join(duplicates)}",
            )

    if new_turn.role == "tool":
        call_id = new_turn.tool_call_id
        if not call_id:
            return Rejection(ReasonCode.MISSING_TOOL_CALL_ID, "tool turn without tool_call_id")

        # Blocked results still occupy their call id
        if any(t.role == "tool" and t.tool_call_id == call_id for t in live):
            return Rejection(
                ReasonCode.DUPLICATE_TOOL_CALL_ID, f"tool call {call_id} already answered"
            )

        request = tool_requests(live).get(call_id)
        if request is None:
            return Rejection(
                ReasonCode.ORPHANED_TOOL_RESULT, f"no tool call {call_id} in conversation"
            )
        if request.abandoned:
            return Rejection(
                ReasonCode.ABANDONED_TOOL_CALL, f"tool call {call_id} was abandoned"
            )

    return None


def classify(
    turns: list[Turn],
    *,
    now: datetime,
    grace_window: timedelta,
    recovery: RecoveryContext | None = None,
) -> Classification:
    """Classify a conversation's message log.

    Blocked turns are ignored for pairing. A dangling call is still pending
    while it is younger than the grace window or covered by an unexpired
    recovery context.
    """
    live = live_turns(turns)
    requests = tool_requests(live)

    seen: set[str] = set()
    for turn in live:
        if turn.role != "tool" or turn.blocked:
            continue
        if not turn.tool_call_id:
            return Classification(Verdict.CORRUPT, ReasonCode.MISSING_TOOL_CALL_ID, [turn.id])
        if turn.tool_call_id in seen:
            return Classification(
                Verdict.CORRUPT, ReasonCode.DUPLICATE_TOOL_CALL_ID, [turn.tool_call_id]
            )
        seen.add(turn.tool_call_id)
        if turn.tool_call_id not in requests:
            return Classification(
                Verdict.CORRUPT, ReasonCode.ORPHANED_TOOL_RESULT, [turn.tool_call_id]
            )

    covered: set[str] = set()
    if recovery is not None and not recovery.is_expired(now):
        covered = set(recovery.outstanding_call_ids)

    pending: list[ToolCallRequest] = []
    overdue: list[ToolCallRequest] = []
    partial_batch = False
    for turn, missing in unanswered_requests(live):
        for call in missing:
            if now - call.created_at < grace_window or call.call_id in covered:
                pending.append(call)
            else:
                overdue.append(call)
                if len(turn.tool_calls) > 1:
                    partial_batch = True

    outstanding = pending + overdue
    outstanding_ids = [c.call_id for c in outstanding]
    oldest = min((c.created_at for c in outstanding), default=None)

    if overdue:
        reason = ReasonCode.INCOMPLETE_TOOL_BATCH if partial_batch else ReasonCode.DANGLING_TOOL_CALL
        return Classification(
            Verdict.REPAIRABLE,
            reason,
            [c.call_id for c in overdue],
            outstanding_ids,
            oldest,
        )
    if pending:
        return Classification(
            Verdict.STABLE_PENDING,
            None,
            [c.call_id for c in pending],
            outstanding_ids,
            oldest,
        )
    return Classification(Verdict.STABLE)
