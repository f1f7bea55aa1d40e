"""Conversation session: owns the transcript and sequences each exchange."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Set

from .backend import GenerationBackend
from .errors import InputRejected, TransportFailure
from .exchange import DEFAULT_SYSTEM_PROMPT, StreamingExchange
from .models import MODEL, ROLES, USER, Message
from .store import TranscriptStore
from .titles import TitleSummarizer

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER_TITLE = "New conversation"


class SessionController:
    """Single-conversation state machine.

    Per accepted submission:
        user message appended -> persisted -> empty model message opened ->
        fragments appended in place -> model message persisted -> title
        summarization spawned after the first completed exchange.

    Only one exchange runs at a time; submissions arriving meanwhile are
    dropped. ``reset()`` and ``start()`` bump an epoch counter, and any
    exchange still running from an older epoch stops touching state the next
    time it resumes.
    """

    def __init__(
        self,
        store: TranscriptStore,
        backend: GenerationBackend,
        *,
        owner_id: str = "default",
        summarizer: Optional[TitleSummarizer] = None,
        placeholder_title: str = DEFAULT_PLACEHOLDER_TITLE,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        on_change: Optional[Callable[["SessionController"], None]] = None,
        on_fragment: Optional[Callable[[str], None]] = None,
        on_rate: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.owner_id = owner_id
        self.summarizer = summarizer
        self.placeholder_title = placeholder_title
        self.system_prompt = system_prompt
        self.on_change = on_change
        self.on_fragment = on_fragment
        self.on_rate = on_rate

        self.messages: List[Message] = []
        self.conversation_id: Optional[str] = None
        self.rate = 0.0
        self.last_error: Optional[str] = None
        self._in_flight = False
        self._epoch = 0
        self._failed: Optional[Message] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._in_flight

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def start(self, conversation_id: Optional[str] = None) -> None:
        """Load an existing conversation, or begin an empty one created on first send."""
        self.reset()
        if conversation_id is None:
            return
        epoch = self._epoch
        self.conversation_id = conversation_id
        try:
            loaded = await asyncio.to_thread(self.store.list_messages, conversation_id)
        except Exception:
            logger.exception("Failed to load conversation %s", conversation_id)
            loaded = []
        if self._stale(epoch):
            return

        messages: List[Message] = []
        for m in loaded:
            if m.role not in ROLES:
                logger.warning("Skipping message with unknown role %r in %s", m.role, conversation_id)
                continue
            messages.append(m)
        self.messages = messages
        self._changed()

    def reset(self) -> None:
        """Drop the transcript and conversation identity (new conversation or teardown)."""
        self._epoch += 1
        self.messages = []
        self.conversation_id = None
        self.rate = 0.0
        self.last_error = None
        self._in_flight = False
        self._failed = None
        self._changed()

    async def wait_background(self) -> None:
        """Wait for spawned title tasks; mainly for shutdown and tests."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -----------------------------
    # Exchange
    # -----------------------------
    async def submit(self, text: str) -> Optional[Message]:
        """Run one exchange for ``text``.

        Returns the completed model message, or None when the input is
        rejected or the session was reset mid-exchange. Raises
        :class:`TransportFailure` if the reply stream fails, and
        :class:`~streamchat.errors.InvalidRole` before any model message is
        opened if the history cannot be translated.
        """
        try:
            self._accept(text)
        except InputRejected as e:
            logger.debug("Ignoring submission: %s", e)
            return None

        self._in_flight = True
        epoch = self._epoch
        self._discard_failed()
        try:
            return await self._exchange(text, epoch)
        finally:
            if not self._stale(epoch):
                self._in_flight = False

    async def _exchange(self, text: str, epoch: int) -> Optional[Message]:
        history = list(self.messages)
        user_msg = Message(role=USER, content=text, conversation_id=self.conversation_id)
        self.messages.append(user_msg)
        self._changed()

        if self.conversation_id is None:
            created = await self._create_conversation()
            if self._stale(epoch):
                return None
            self.conversation_id = created
            user_msg.conversation_id = created

        await self._persist(user_msg)
        if self._stale(epoch):
            return None

        exchange = StreamingExchange(
            self.backend,
            system_prompt=self.system_prompt,
            on_rate=lambda r: self._rate(r, epoch),
        )
        # build the request before opening the model message
        stream = exchange.run(history, text)

        model_msg = Message(role=MODEL, content="", conversation_id=self.conversation_id)
        self.messages.append(model_msg)
        self.last_error = None
        self.rate = 0.0
        self._changed()

        try:
            async for fragment in stream:
                if self._stale(epoch):
                    logger.debug("Session reset mid-stream; dropping remaining fragments")
                    return None
                model_msg.content += fragment
                self._notify(self.on_fragment, fragment)
                self._changed()
        except TransportFailure as e:
            if self._stale(epoch):
                return None
            # partial reply stays visible but is never persisted
            self._failed = model_msg
            self.last_error = str(e)
            self._changed()
            raise
        finally:
            await stream.aclose()

        persisted = await self._persist(model_msg)
        if self._stale(epoch):
            return None
        if persisted:
            self._maybe_title(model_msg)
        return model_msg

    # -----------------------------
    # Internals
    # -----------------------------
    def _stale(self, epoch: int) -> bool:
        return epoch != self._epoch

    def _accept(self, text: str) -> None:
        if not text or not text.strip():
            raise InputRejected("blank submission")
        if self._in_flight:
            raise InputRejected("an exchange is already in flight")

    def _discard_failed(self) -> None:
        if self._failed is None:
            return
        self.messages = [m for m in self.messages if m is not self._failed]
        self._failed = None
        self.last_error = None
        self._changed()

    async def _create_conversation(self) -> Optional[str]:
        try:
            return await asyncio.to_thread(
                self.store.create_conversation, self.owner_id, self.placeholder_title
            )
        except Exception:
            # keep chatting unsaved; the next submission retries
            logger.exception("Failed to create conversation for %s", self.owner_id)
            return None

    async def _persist(self, msg: Message) -> bool:
        if msg.conversation_id is None:
            logger.warning("No conversation id; %s message kept in memory only", msg.role)
            return False
        try:
            await asyncio.to_thread(
                self.store.insert_message,
                msg.conversation_id,
                msg.role,
                msg.content,
                created_at=msg.created_at,
            )
        except Exception:
            logger.exception("Failed to persist %s message in %s", msg.role, msg.conversation_id)
            return False
        return True

    def _maybe_title(self, model_msg: Message) -> None:
        if self.summarizer is None or self.conversation_id is None:
            return
        if sum(1 for m in self.messages if m.role == MODEL) != 1:
            return
        user_msg = next((m for m in self.messages if m.role == USER), None)
        if user_msg is None:
            return
        task = asyncio.create_task(self._title(self.conversation_id, [user_msg, model_msg]))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _title(self, conversation_id: str, exchange: List[Message]) -> None:
        try:
            await self.summarizer.summarize(conversation_id, exchange)
        except Exception as e:
            logger.warning("Title generation failed for %s: %s", conversation_id, e)

    def _rate(self, rate: float, epoch: int) -> None:
        if self._stale(epoch):
            return
        self.rate = rate
        self._notify(self.on_rate, rate)

    def _changed(self) -> None:
        self._notify(self.on_change, self)

    def _notify(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("session callback failed")
