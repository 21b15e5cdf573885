"""Exceptions raised by ljsync.

Nothing in the library retries; every error reaches the immediate caller.
"""

from typing import Any, Optional


class LJError(Exception):
    """Base class for everything ljsync raises."""


class TransportError(LJError):
    """The server could not be reached (network, timeout, HTTP status)."""


class ProtocolError(LJError):
    """The server answered with a non-OK status."""

    def __init__(self, message: Optional[str]):
        self.message = message or "unknown server error"
        super().__init__(self.message)


class SyncInconsistencyError(ProtocolError):
    """Totals or pagination keys reported by the server do not add up."""


class DecodeError(LJError):
    """A wire response or export document is malformed."""


class ConflictError(LJError):
    """Two partial records for the same comment disagree on a field."""

    def __init__(self, comment_id: int, field: str, existing: Any, incoming: Any):
        self.comment_id = comment_id
        self.field = field
        self.existing = existing
        self.incoming = incoming
        super().__init__(
            f"comment {comment_id}: conflicting {field!r} ({existing!r} != {incoming!r})"
        )


class UnknownFieldError(DecodeError):
    """Strict mode met an entry property it does not know."""

    def __init__(self, name: str, value: Optional[str]):
        self.name = name
        self.value = value
        super().__init__(f"unknown prop ({name}, {value!r})")


class UserError(LJError):
    """The caller asked for something that makes no sense."""


class AccidentalDeleteError(UserError):
    """An edit would blank an entry without delete=True."""

    def __init__(self, itemid: Optional[int] = None):
        self.itemid = itemid
        super().__init__(
            f"edit of entry {itemid} would delete it; pass delete=True to mean that"
        )
