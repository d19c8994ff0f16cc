"""Typed errors raised by the integrity subsystem."""

from turnguard_models import ReasonCode


class ConversationError(Exception):
    """Base class for conversation integrity errors."""


class ConversationNotFoundError(ConversationError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class TurnRejectedError(ConversationError):
    """An append would break a hard log invariant and was not persisted."""

    def __init__(self, reason: ReasonCode | str, conversation_id: str, detail: str = ""):
        self.reason = ReasonCode(reason).value
        self.conversation_id = conversation_id
        message = f"Turn rejected for conversation {conversation_id}: {self.reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class CheckpointError(ConversationError):
    """A checkpoint could not be captured or restored as asked."""

    def __init__(self, message: str, conversation_id: str | None = None):
        super().__init__(message)
        self.conversation_id = conversation_id


class CheckpointNotFoundError(CheckpointError):
    def __init__(self, conversation_id: str, checkpoint_name: str):
        super().__init__(
            f"Checkpoint '{checkpoint_name}' not found for conversation {conversation_id}",
            conversation_id,
        )
        self.checkpoint_name = checkpoint_name


class ConversationIntegrityError(ConversationError):
    """Unrecoverable corruption. The one error that crosses the HTTP boundary."""

    def __init__(self, reason: ReasonCode | str, conversation_id: str):
        self.reason = ReasonCode(reason).value
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} is corrupted: {self.reason}")
