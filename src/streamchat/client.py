"""Input-field state tying typed text and dictation to a session."""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set

from .errors import TransportFailure
from .models import Conversation, Message
from .session import SessionController
from .speech import SpeechInputController

logger = logging.getLogger(__name__)


class ChatClient:
    """What a chat screen holds: the input field, the voice toggle and the session.

    Voice finalize events submit the dictated text; the input field is
    cleared once that submission has been dispatched, so the live
    reconstruction stays on screen until then.
    """

    def __init__(self, session: SessionController, speech: Optional[SpeechInputController] = None) -> None:
        self.session = session
        self.speech = speech or SpeechInputController()
        self.speech.on_display = self._on_voice_display
        self.speech.on_finalize = self._on_voice_final
        self.input_text = ""
        self.error: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()

    # --------- views ----------
    @property
    def messages(self) -> List[Message]:
        return self.session.messages

    @property
    def voice_available(self) -> bool:
        return self.speech.supported

    def conversations(self) -> List[Conversation]:
        """Sidebar listing, most recently updated first."""
        try:
            return self.session.store.list_conversations(self.session.owner_id)
        except Exception:
            logger.exception("Failed to list conversations")
            return []

    # --------- typing ----------
    def type(self, text: str) -> None:
        self.input_text = text

    async def send(self) -> Optional[Message]:
        """Submit the typed text; the field is cleared when the submission is accepted."""
        text = self.input_text
        if not text.strip() or self.session.busy:
            return None
        self.input_text = ""
        return await self._submit(text)

    # --------- voice ----------
    def toggle_voice(self) -> bool:
        """Start or stop dictation. Returns True while listening."""
        return self.speech.toggle(self.input_text)

    def _on_voice_display(self, text: str) -> None:
        self.input_text = text

    def _on_voice_final(self, text: str) -> None:
        if self.session.busy:
            # nothing dispatched: the dictation stays in the field for a later send
            logger.debug("Exchange in flight; keeping dictated text in the input")
            self.input_text = text
            return
        task = asyncio.get_running_loop().create_task(self._submit(text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.input_text = ""

    async def wait_pending(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --------- conversations ----------
    async def new_conversation(self) -> None:
        self.speech.stop()
        self.session.reset()
        self.input_text = ""
        self.error = None

    async def open_conversation(self, conversation_id: str) -> None:
        self.speech.stop()
        await self.session.start(conversation_id)
        self.input_text = ""
        self.error = None

    # --------- internals ----------
    async def _submit(self, text: str) -> Optional[Message]:
        self.error = None
        try:
            return await self.session.submit(text)
        except TransportFailure as e:
            self.error = f"Error: {e}"
            return None
