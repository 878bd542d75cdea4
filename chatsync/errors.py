from typing import Optional


class ChatSyncError(Exception):

    pass


class AuthenticationRequired(ChatSyncError):
    """No active session. Fatal to the whole session, never retried locally."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class NotParticipant(ChatSyncError):

    def __init__(self, conversation_id: str, user_id: str) -> None:
        super().__init__(f"User {user_id} is not a participant of conversation {conversation_id}")
        self.conversation_id = conversation_id
        self.user_id = user_id


class PersistenceFailure(ChatSyncError):
    """A gateway call failed. ``transient`` marks failures worth retrying."""

    def __init__(self, operation: str, reason: str = "", transient: bool = False, cause: Optional[BaseException] = None) -> None:
        message = f"{operation} failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.operation = operation
        self.transient = transient
        self.__cause__ = cause


class AnomalousUpdate(ChatSyncError):
    """Update event for an id the local log does not hold. Logged, never raised to the UI."""

    def __init__(self, conversation_id: str, message_id: str) -> None:
        super().__init__(f"Update for unknown message {message_id} in conversation {conversation_id}")
        self.conversation_id = conversation_id
        self.message_id = message_id
