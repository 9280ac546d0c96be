"""Exception hierarchy for the sync engine."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base sync engine error."""


class SourceError(SyncError):
    """Raised when an external chat or contact source cannot be used."""


class SourceRequestError(SourceError):
    """Raised when a request to an external source fails."""

    def __init__(self, *, status_code: int, message: str, source: str = "source") -> None:
        self.status_code = status_code
        self.message = message
        self.source = source
        super().__init__(f"{source} request failed ({status_code}): {message}")


class UnsortedBatchError(SyncError, ValueError):
    """Raised when a message batch is not in ascending sort-key order.

    Last-message derivation reads the final element of the batch, so an
    unsorted batch would attribute the wrong sender to the chat.
    """


class SyncLockHeldError(SyncError):
    """Raised when another sync pass holds a live advisory lock."""

    def __init__(self, holder: str | None) -> None:
        self.holder = holder
        super().__init__(f"Chat list sync is locked by {holder!r}")


class ContactNotFoundError(SyncError, LookupError):
    def __init__(self, contact_id: str) -> None:
        self.contact_id = contact_id
        super().__init__(f"Contact not found: {contact_id}")


class ChatNotFoundError(SyncError, LookupError):
    def __init__(self, chat_id: str) -> None:
        self.chat_id = chat_id
        super().__init__(f"Chat not found: {chat_id}")
