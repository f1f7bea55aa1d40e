"""Generation backends: a local GGUF model via llama.cpp and a remote streaming client."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

import httpx

from .errors import InvalidRole
from .models import MODEL, USER, Message

logger = logging.getLogger(__name__)


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class Turn:
    """One history entry in the backend's own role encoding."""
    role: str
    text: str


@dataclass
class GenerationRequest:
    system_instruction: str
    message: str
    history: List[Turn] = field(default_factory=list)


@dataclass
class GenerationConfig:
    max_new_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 50
    repeat_penalty: float = 1.1
    stop: Optional[List[str]] = None


class GenerationBackend(Protocol):
    def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        """Yield reply fragments in arrival order; raise on transport failure."""
        ...

    async def complete(self, prompt: str) -> str:
        """Single-shot, non-streaming generation."""
        ...


def to_backend_history(messages: Iterable[Message], *, assistant_role: str = "assistant") -> List[Turn]:
    """Translate local roles to the backend encoding.

    ``user`` stays ``user``, ``model`` becomes ``assistant_role``. Any other
    role is rejected.
    """
    turns: List[Turn] = []
    for m in messages:
        if m.role == USER:
            turns.append(Turn(role="user", text=m.content or ""))
        elif m.role == MODEL:
            turns.append(Turn(role=assistant_role, text=m.content or ""))
        else:
            raise InvalidRole(f"Cannot translate role {m.role!r} for the backend")
    return turns


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


_DONE = object()


async def _iterate_in_thread(it: Iterator[Any]) -> AsyncIterator[Any]:
    """Drive a blocking iterator from the event loop, one item per worker hop."""
    while True:
        item = await asyncio.to_thread(next, it, _DONE)
        if item is _DONE:
            return
        yield item


# -----------------------------
# GGUF backend
# -----------------------------

class GGUFBackend:
    """Thin wrapper around :mod:`llama_cpp` exposing the streaming backend contract."""

    assistant_role = "assistant"

    def __init__(self, model_path: str, *, sampling: Optional[GenerationConfig] = None, **kwargs: Any) -> None:
        """
        Parameters
        ----------
        model_path : str
            Path to .gguf weights.
        sampling : GenerationConfig | None
            Default sampling settings; environment LLM_* variables fill gaps.
        kwargs : Any
            Passed to llama_cpp.Llama with some smart defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, with fallback retry if OSError
        """
        # Lazy import so unit tests pass without the dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if "n_gpu_layers" not in kwargs or kwargs["n_gpu_layers"] is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs.setdefault("verbose", False)

        try:
            self._llama = Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if not use_mmap:
                raise
            # Network filesystems sometimes refuse memory-mapping.
            logger.warning("mmap load failed, retrying without mmap: %s", e)
            kwargs["use_mmap"] = False
            self._llama = Llama(model_path=model_path, **kwargs)

        self._supports_chat_template = hasattr(self._llama, "apply_chat_template")
        self.sampling = sampling or GenerationConfig(
            max_new_tokens=int(os.environ.get("LLM_MAX_NEW", "512")),
            temperature=float(os.environ.get("LLM_TEMP", "0.7")),
            top_p=float(os.environ.get("LLM_TOP_P", "0.95")),
            top_k=int(os.environ.get("LLM_TOP_K", "50")),
            repeat_penalty=float(os.environ.get("LLM_REPEAT_PEN", "1.1")),
        )
        self._default_stops = ["</s>", "###", "User:", "Assistant:"]

    # -------------------------
    # Backend contract
    # -------------------------
    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        prompt = self._render_chat(self._build_messages(request))
        parts = self._llama(prompt, **self._completion_kwargs(stream=True))
        async for part in _iterate_in_thread(iter(parts)):
            token = part.get("choices", [{}])[0].get("text", "")
            if token:
                yield token

    async def complete(self, prompt: str) -> str:
        result = await asyncio.to_thread(self._llama, prompt, **self._completion_kwargs(stream=False))
        return result["choices"][0]["text"]

    # -------------------------
    # Internals
    # -------------------------
    def _completion_kwargs(self, *, stream: bool) -> Dict[str, Any]:
        cfg = self.sampling
        return dict(
            max_tokens=cfg.max_new_tokens,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            top_k=cfg.top_k,
            repeat_penalty=cfg.repeat_penalty,
            stop=cfg.stop or self._default_stops,
            stream=stream,
        )

    def _build_messages(self, request: GenerationRequest) -> List[Dict[str, str]]:
        msgs: List[Dict[str, str]] = [{"role": "system", "content": request.system_instruction}]
        for turn in request.history:
            msgs.append({"role": turn.role, "content": turn.text})
        msgs.append({"role": "user", "content": request.message})
        return msgs

    def _render_chat(self, messages: List[Dict[str, str]]) -> str:
        """Render chat messages to a prompt string.

        Uses llama.cpp chat template if available; otherwise falls back
        to a simple instruction-style format.
        """
        if self._supports_chat_template:
            try:
                tpl = self._llama.apply_chat_template(messages, add_generation_prompt=True)
                if isinstance(tpl, bytes):
                    return tpl.decode("utf-8", errors="ignore")
                return str(tpl)
            except Exception as e:
                logger.debug("chat template unavailable, using fallback: %s", e)
        return render_instruction_prompt(messages)


def render_instruction_prompt(messages: Sequence[Dict[str, str]]) -> str:
    """Generic ### System / ### User / ### Assistant prompt."""
    lines: List[str] = []
    sys_lines = [m["content"] for m in messages if m["role"] == "system"]
    if sys_lines:
        lines.append("### System\n" + "\n".join(sys_lines).strip() + "\n")

    for m in messages:
        if m["role"] == "user":
            lines.append("### User\n" + m["content"].strip() + "\n")
        elif m["role"] == "assistant":
            lines.append("### Assistant\n" + m["content"].strip() + "\n")

    # Generation cue
    lines.append("### Assistant\n")
    return "\n".join(lines)


# -----------------------------
# Remote backend (wire contract client)
# -----------------------------

class HttpChatBackend:
    """Client for a streamchat server.

    ``POST /chat`` with ``{message, history}`` answers with a plain text body
    whose concatenation is the reply; the server supplies the system
    instruction itself, so ``request.system_instruction`` is not sent.
    """

    # the server speaks the local role names
    assistant_role = MODEL

    def __init__(
        self,
        base_url: str,
        *,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or httpx.Timeout(connect=3.0, read=120.0, write=120.0, pool=3.0)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        payload = {
            "message": request.message,
            "history": [{"role": t.role, "content": t.text} for t in request.history],
        }
        async with self._client() as client:
            async with client.stream("POST", "/chat", json=payload) as r:
                r.raise_for_status()
                # aiter_text decodes incrementally, so split multi-byte characters survive
                async for text in r.aiter_text():
                    if text:
                        yield text

    async def complete(self, prompt: str) -> str:
        async with self._client() as client:
            r = await client.post("/complete", json={"prompt": prompt})
            r.raise_for_status()
            return str(r.json().get("text", ""))


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> GenerationBackend:
    """Create the configured backend from a config dict (e.g., loaded YAML)."""
    model_cfg = (cfg or {}).get("model", {}) if isinstance(cfg, dict) else {}
    kind = str(model_cfg.get("backend", "gguf")).lower()

    if kind == "http":
        base_url = model_cfg.get("base_url")
        if not base_url:
            raise ValueError("model.base_url is required for the http backend")
        return HttpChatBackend(str(base_url))

    if kind != "gguf":
        raise ValueError(f"Unknown model backend: {kind!r}")

    model_dir = model_cfg.get("model_dir")
    model_path = model_cfg.get("model_path")
    if model_dir and model_path and not os.path.isabs(model_path):
        model_path = os.path.join(model_dir, model_path)

    if not model_path or not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found at: {model_path!r}")

    sampling = GenerationConfig(
        max_new_tokens=int(model_cfg.get("max_new_tokens", 512)),
        temperature=float(model_cfg.get("temperature", 0.7)),
        top_p=float(model_cfg.get("top_p", 0.95)),
        top_k=int(model_cfg.get("top_k", 50)),
        repeat_penalty=float(model_cfg.get("repeat_penalty", 1.1)),
    )
    params = {
        "n_ctx": model_cfg.get("n_ctx", 4096),
        "n_threads": model_cfg.get("n_threads"),
        "n_gpu_layers": model_cfg.get("n_gpu_layers"),
        "use_mmap": model_cfg.get("use_mmap", True),
    }
    # llama.cpp rejects explicit None values
    params = {k: v for k, v in params.items() if v is not None}

    return GGUFBackend(model_path=model_path, sampling=sampling, **params)
