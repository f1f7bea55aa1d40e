"""Voice dictation merged into the typed input field."""
from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from .errors import CapabilityUnavailable

logger = logging.getLogger(__name__)


class Recognizer(Protocol):
    """Platform speech recognizer.

    The platform reports back through the controller's ``handle_results``,
    ``handle_error`` and ``handle_end`` methods.
    """

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def abort(self) -> None: ...


@dataclass
class RecognitionResult:
    """One recognized segment: ranked hypotheses plus a finality flag."""
    alternatives: List[str]
    is_final: bool = False

    @property
    def transcript(self) -> str:
        return self.alternatives[0] if self.alternatives else ""


class State(enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"


def normalize(text: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return re.sub(r"\s+", " ", text).strip()


def merge_results(results: Sequence[RecognitionResult]) -> Tuple[str, str]:
    """Return ``(final, interim)`` for the full result list of a pass.

    Final segments are joined in order, each followed by one space; the last
    non-final segment is the interim guess.
    """
    final = ""
    interim = ""
    for result in results:
        if result.is_final:
            final += result.transcript + " "
        else:
            interim = result.transcript
    return final, interim


@dataclass
class VoiceBuffer:
    base_text: str = ""
    interim: str = ""
    final: str = ""

    @property
    def display(self) -> str:
        return normalize(self.base_text + " " + self.final + self.interim)

    def rebuild(self, results: Sequence[RecognitionResult]) -> str:
        self.final, self.interim = merge_results(results)
        return self.display


@dataclass
class SpeechInputController:
    """Idle -> Listening -> Idle state machine for one dictation pass at a time.

    Every result event rebuilds the buffer from all results delivered in the
    pass, so a late or repeated callback cannot make the text drift. The first
    event carrying a final segment stops the recognizer and emits exactly one
    finalize callback.
    """

    recognizer: Optional[Recognizer] = None
    on_display: Optional[Callable[[str], None]] = None
    on_finalize: Optional[Callable[[str], None]] = None
    on_state: Optional[Callable[[State], None]] = None
    state: State = State.IDLE
    buffer: VoiceBuffer = field(default_factory=VoiceBuffer)
    _finalized: bool = field(default=False, init=False, repr=False)

    @property
    def supported(self) -> bool:
        return self.recognizer is not None

    @property
    def listening(self) -> bool:
        return self.state is State.LISTENING

    # --------- transitions ----------
    def start_listening(self, current_text: str = "") -> bool:
        """Begin a pass on top of ``current_text``. Returns False when unsupported."""
        if self.recognizer is None:
            logger.info("Speech recognition unavailable; voice input disabled")
            return False
        if self.listening:
            return True
        self.buffer = VoiceBuffer(base_text=current_text or "")
        self._finalized = False
        self._set_state(State.LISTENING)
        try:
            self.recognizer.start()
        except CapabilityUnavailable as e:
            # e.g. no microphone or permission denied: disable voice for good
            logger.info("Speech recognition unavailable: %s", e)
            self.recognizer = None
            self._set_state(State.IDLE)
            return False
        except Exception:
            logger.exception("Recognizer failed to start")
            self._set_state(State.IDLE)
            return False
        return True

    def stop(self) -> None:
        """Stop the current pass without finalizing. Safe to call at any time."""
        if not self.listening:
            return
        self._set_state(State.IDLE)
        self._stop_recognizer()

    def toggle(self, current_text: str = "") -> bool:
        if self.listening:
            self.stop()
            return False
        return self.start_listening(current_text)

    # --------- recognizer events ----------
    def handle_results(self, results: Sequence[RecognitionResult]) -> None:
        if not self.listening or self._finalized:
            return
        text = self.buffer.rebuild(results)
        self._emit_display(text)

        if not any(r.is_final for r in results):
            return
        self._finalized = True
        self._set_state(State.IDLE)
        self._stop_recognizer()
        if self.on_finalize is not None:
            self.on_finalize(text)

    def handle_error(self, error: object) -> None:
        if not self.listening:
            return
        logger.warning("Speech recognition error: %s", error)
        self._set_state(State.IDLE)

    def handle_end(self) -> None:
        # natural end without a final segment: leave the partial text in place
        if self.listening:
            self._set_state(State.IDLE)

    # --------- internals ----------
    def _stop_recognizer(self) -> None:
        if self.recognizer is None:
            return
        try:
            self.recognizer.stop()
        except Exception:
            logger.exception("Recognizer failed to stop")

    def _emit_display(self, text: str) -> None:
        if self.on_display is not None:
            self.on_display(text)

    def _set_state(self, state: State) -> None:
        if state is self.state:
            return
        self.state = state
        if self.on_state is not None:
            self.on_state(state)
