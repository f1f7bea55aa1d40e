"""FastAPI application streaming replies from a generation backend."""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .backend import GenerationBackend, create_from_config
from .config import configure_logging, load_config
from .errors import InvalidRole, SummarizationFailure, TransportFailure
from .exchange import DEFAULT_SYSTEM_PROMPT, StreamingExchange
from .models import Message
from .store import DiskTranscriptStore
from .titles import TitleSummarizer

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class HistoryItem(BaseModel):
    role: str
    content: str = ""


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    history: List[HistoryItem] = Field(default_factory=list)


class CompleteRequest(BaseModel):
    prompt: str = Field(..., min_length=1)


class CompleteResponse(BaseModel):
    text: str


class TitleRequest(BaseModel):
    messages: List[HistoryItem] = Field(default_factory=list)


class TitleResponse(BaseModel):
    title: str


# -----------------------------
# Utilities
# -----------------------------
def _get_system_prompt(cfg: Dict[str, Any]) -> str:
    sys_prompt = cfg.get("session", {}).get("system_prompt") or DEFAULT_SYSTEM_PROMPT
    return str(sys_prompt).strip()


def _to_messages(items: List[HistoryItem]) -> List[Message]:
    return [Message(role=i.role, content=i.content) for i in items]


def _make_store(cfg: Dict[str, Any]) -> DiskTranscriptStore:
    data_dir = cfg.get("store", {}).get("data_dir") or "data"
    return DiskTranscriptStore(str(data_dir))


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    backend: Optional[GenerationBackend] = None,
    store: Optional[DiskTranscriptStore] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    configure_logging(cfg)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    backend = backend or create_from_config(cfg)
    store = store or _make_store(cfg)
    system_prompt = _get_system_prompt(cfg)

    app = FastAPI(title="StreamChat Server", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "backend": type(backend).__name__,
            "data_dir": str(store.root),
            "config_keys": list(cfg.keys()),
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        return JSONResponse(dict(cfg))

    @app.post("/chat")
    async def chat(req: ChatRequest) -> StreamingResponse:
        msg = req.message.strip()
        if not msg:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")

        exchange = StreamingExchange(backend, system_prompt=system_prompt)
        try:
            stream = exchange.run(_to_messages(req.history), msg)
        except InvalidRole as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        async def body() -> AsyncIterator[str]:
            try:
                async for fragment in stream:
                    yield fragment
            except TransportFailure as e:
                # No length header: aborting the body is how the client learns of it.
                logger.error("Chat stream aborted: %s", e)
                raise
            logger.info("Streamed %d chars (%.1f tok/s est.)", exchange.characters, exchange.rate)

        return StreamingResponse(body(), media_type="text/plain; charset=utf-8")

    @app.post("/complete", response_model=CompleteResponse)
    async def complete(req: CompleteRequest) -> CompleteResponse:
        try:
            text = await backend.complete(req.prompt)
        except Exception as e:
            logger.error("Completion failed: %s", e)
            raise HTTPException(status_code=502, detail="Backend completion failed.") from e
        return CompleteResponse(text=text)

    @app.post("/titles", response_model=TitleResponse)
    async def titles(req: TitleRequest) -> TitleResponse:
        messages = _to_messages(req.messages)
        if not any(m.role == "user" and m.content.strip() for m in messages):
            raise HTTPException(status_code=400, detail="A user message is required.")
        try:
            title = await TitleSummarizer(backend).generate(messages)
        except SummarizationFailure as e:
            logger.warning("Title generation failed: %s", e)
            raise HTTPException(status_code=502, detail="Failed to generate title.") from e
        return TitleResponse(title=title)

    @app.get("/conversations")
    def conversations(owner_id: str = Query("default")) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in store.list_conversations(owner_id)]

    @app.get("/conversations/{conversation_id}/messages")
    def conversation_messages(conversation_id: str) -> List[Dict[str, Any]]:
        if store.get_conversation(conversation_id) is None:
            raise HTTPException(status_code=404, detail="Conversation not found.")
        return [m.to_dict() for m in store.list_messages(conversation_id)]

    return app
