"""Exception types shared across the session components."""

from __future__ import annotations


class StreamChatError(Exception):
    """Base class for all streamchat errors."""


class InputRejected(StreamChatError):
    """Blank or concurrent submission. Never shown to the user."""


class TransportFailure(StreamChatError):
    """The backend or the network failed before or during a reply."""

    def __init__(self, message: str, *, partial: str = "") -> None:
        super().__init__(message)
        self.partial = partial


class PersistenceFailure(StreamChatError):
    """A transcript store write or read failed."""


class SummarizationFailure(StreamChatError):
    """Title generation failed; the placeholder title is kept."""


class CapabilityUnavailable(StreamChatError):
    """Speech recognition is not offered by the platform."""


class InvalidRole(StreamChatError, ValueError):
    """A history entry carries a role the backend encoding cannot express."""
