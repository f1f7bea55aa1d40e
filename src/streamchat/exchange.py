"""One request/response round trip against a generation backend."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import AsyncIterator, Callable, Iterable, Optional

from .backend import GenerationBackend, GenerationRequest, to_backend_history
from .errors import TransportFailure
from .models import Message

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant.\n"
    "Context: today is {date} and the current time is {time}.\n"
    "Use this information if the user asks for the date or the time."
)

# Rough characters-per-token ratio for the live throughput readout.
CHARS_PER_TOKEN = 4


def build_system_context(template: str = DEFAULT_SYSTEM_PROMPT, now: Optional[datetime] = None) -> str:
    """Fill ``{date}`` and ``{time}`` in ``template`` from ``now`` (default: current local time)."""
    now = now or datetime.now()
    # other braces in the template are literal text
    return template.replace("{date}", now.strftime("%A %d %B %Y")).replace("{time}", now.strftime("%H:%M:%S"))


def estimate_rate(characters: int, elapsed: float) -> float:
    """Estimated tokens per second; 0.0 until time has passed."""
    if elapsed <= 0:
        return 0.0
    return (characters / CHARS_PER_TOKEN) / elapsed


class StreamingExchange:
    """Streams one reply and tracks a throughput estimate on the side.

    Usage:
        exchange = StreamingExchange(backend, on_rate=print)
        async for fragment in exchange.run(history, "Hello"):
            ...
        exchange.text   # full reply

    Fragments are passed through exactly as the backend yields them. The
    rate callback is advisory: its errors are logged and never interrupt
    delivery.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        on_rate: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.perf_counter,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend
        self.system_prompt = system_prompt
        self.on_rate = on_rate
        self._clock = clock
        self._now = now or datetime.now
        self.characters = 0
        self.rate = 0.0
        self._parts: list[str] = []
        self.request: Optional[GenerationRequest] = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def run(
        self,
        history: Iterable[Message],
        message: str,
        system_context: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Build the request now and return the fragment stream.

        Role translation happens here, so :class:`~streamchat.errors.InvalidRole`
        is raised before any network activity.
        """
        if system_context is None:
            system_context = build_system_context(self.system_prompt, self._now())
        assistant_role = getattr(self.backend, "assistant_role", "assistant")
        self.request = GenerationRequest(
            system_instruction=system_context,
            message=message,
            history=to_backend_history(history, assistant_role=assistant_role),
        )
        self.characters = 0
        self.rate = 0.0
        self._parts = []
        return self._stream(self.request)

    async def _stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        started = self._clock()
        try:
            async for fragment in self.backend.stream(request):
                if not fragment:
                    continue
                self._parts.append(fragment)
                self.characters += len(fragment)
                self._report(self._clock() - started)
                yield fragment
        except Exception as e:
            logger.error("Stream failed after %d chars: %s", self.characters, e)
            raise TransportFailure(str(e) or type(e).__name__, partial=self.text) from e

    def _report(self, elapsed: float) -> None:
        self.rate = estimate_rate(self.characters, elapsed)
        if self.on_rate is None:
            return
        try:
            self.on_rate(self.rate)
        except Exception:
            logger.exception("rate callback failed")
