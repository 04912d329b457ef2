"""Errors raised by the conversation store and session storage."""


class StateError(Exception):
    """An operation was invalid for the current conversation state.

    Raised before any state change, so the stored session is never left
    half-updated.
    """


class NoActiveThreadError(StateError):
    def __init__(self, message: str = "No active thread"):
        super().__init__(message)


class MessageNotFoundError(StateError):
    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} not found in the active thread")
        self.message_id = message_id


class ThreadNotFoundError(StateError):
    def __init__(self, thread_id: str):
        super().__init__(f"Thread {thread_id} not found")
        self.thread_id = thread_id


class PersistenceError(Exception):
    """Saving or loading from the key-value store failed.

    In-memory state stays authoritative until the next successful save.
    """
