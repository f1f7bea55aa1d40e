"""Streaming multi-turn chat sessions with typed and dictated input.

The package provides the session state machine (``SessionController``), the
streaming exchange with a generation backend, voice dictation merging, title
summarization, a JSON transcript store and a FastAPI application factory
named ``create_app`` (see :mod:`streamchat.server`).

Typical usage
-------------
from streamchat import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .errors import (
    CapabilityUnavailable,
    InputRejected,
    PersistenceFailure,
    StreamChatError,
    SummarizationFailure,
    TransportFailure,
)
from .exchange import StreamingExchange
from .models import Conversation, Message
from .session import SessionController
from .speech import SpeechInputController
from .store import DiskTranscriptStore
from .titles import TitleSummarizer

__all__ = [
    "create_app",
    "__version__",
    "get_version",
    "Conversation",
    "Message",
    "SessionController",
    "StreamingExchange",
    "SpeechInputController",
    "TitleSummarizer",
    "DiskTranscriptStore",
    "StreamChatError",
    "InputRejected",
    "TransportFailure",
    "PersistenceFailure",
    "SummarizationFailure",
    "CapabilityUnavailable",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"

def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    Imported lazily so the session core works without the web stack loaded.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
