"""Short conversation titles derived from the first exchange."""
from __future__ import annotations

import asyncio
import logging
import re
import threading
from typing import List, Optional, Sequence, Set

from .backend import GenerationBackend
from .errors import SummarizationFailure
from .models import USER, Message
from .store import TranscriptStore

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Summarize this conversation in 3 to 5 words for a title. "
    "No quotation marks. Use the language of the conversation.\n\n"
    "Conversation:\n{conversation}"
)

MAX_TITLE_CHARS = 50
MAX_TITLE_WORDS = 5
FALLBACK_WORDS = 3

_WRAPPERS = "\"'`«»“”‘’*_"
# Leading filler a model tends to add before the title itself.
_PREFIX_RE = re.compile(
    r"^(?:(?:voici|voilà|voila|here is|here's)\b\s*:?"
    r"|(?:titre|sujet|title|subject|topic|título|titulo|tema|titel|thema|titolo|argomento)\s*:)\s*",
    re.IGNORECASE,
)


def _strip_wrappers(text: str) -> str:
    text = text.strip()
    # markdown heading marks
    text = re.sub(r"^#+\s*", "", text)
    prev = None
    while prev != text:
        prev = text
        text = text.strip().strip(_WRAPPERS).strip()
    return text


def clean_title(raw: str, user_message: str = "") -> str:
    """Deterministic post-processing of a generated title.

    Falls back to the first words of ``user_message`` when nothing usable
    remains.
    """
    text = (raw or "").strip().splitlines()[0] if (raw or "").strip() else ""
    text = _strip_wrappers(text)
    # filler may repeat ("Voici le titre: ...")
    prev = None
    while prev != text:
        prev = text
        text = _PREFIX_RE.sub("", text)
        text = re.sub(r"^(?:le|la|the)\s+(?=(?:titre|title)\b)", "", text, flags=re.IGNORECASE)
    text = _strip_wrappers(text)
    text = re.sub(r"\s+", " ", text).strip()

    if len(text) > MAX_TITLE_CHARS:
        text = " ".join(text.split(" ")[:MAX_TITLE_WORDS])

    if len(text) < 2:
        text = " ".join((user_message or "").split()[:FALLBACK_WORDS])
    return text


def format_conversation(messages: Sequence[Message]) -> str:
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


class TitleSummarizer:
    """Names a conversation once, after its first exchange.

    The store write and the generation call are both awaited; failures raise
    :class:`~streamchat.errors.SummarizationFailure` for the caller to log.
    """

    def __init__(self, backend: GenerationBackend, store: Optional[TranscriptStore] = None) -> None:
        self.backend = backend
        self.store = store
        self._titled: Set[str] = set()
        self._lock = threading.Lock()

    async def generate(self, first_exchange: Sequence[Message]) -> str:
        """Return a cleaned title for ``[user_message, model_message]``."""
        exchange: List[Message] = list(first_exchange)[:2]
        if not any(m.role == USER for m in exchange):
            raise SummarizationFailure("first exchange has no user message")
        user_text = next(m.content for m in exchange if m.role == USER)
        prompt = TITLE_PROMPT.format(conversation=format_conversation(exchange))
        try:
            raw = await self.backend.complete(prompt)
        except Exception as e:
            raise SummarizationFailure(f"title generation failed: {e}") from e
        return clean_title(raw, user_text)

    async def summarize(self, conversation_id: str, first_exchange: Sequence[Message]) -> Optional[str]:
        """Generate and store the title. Returns None if this conversation was already titled."""
        with self._lock:
            if conversation_id in self._titled:
                logger.debug("Conversation %s already titled", conversation_id)
                return None
            self._titled.add(conversation_id)

        title = await self.generate(first_exchange)
        if self.store is not None:
            try:
                await asyncio.to_thread(self.store.update_conversation_title, conversation_id, title)
            except Exception as e:
                raise SummarizationFailure(f"could not store title: {e}") from e
        logger.info("Titled conversation %s: %s", conversation_id, title)
        return title
