"""Disk-based transcript store for conversations and messages (thread-safe, atomic)."""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .errors import PersistenceFailure
from .models import ROLES, Conversation, Message

logger = logging.getLogger(__name__)


class TranscriptStore(Protocol):
    """Record keeper the session talks to. Any adapter honouring these calls works."""

    def insert_message(
        self, conversation_id: str, role: str, content: str, *, created_at: Optional[float] = None
    ) -> Message: ...

    def list_messages(self, conversation_id: str) -> List[Message]: ...

    def create_conversation(self, owner_id: str, title: str) -> str: ...

    def update_conversation_title(self, conversation_id: str, title: str) -> None: ...

    def list_conversations(self, owner_id: str) -> List[Conversation]: ...


# -----------------------------
# Helpers
# -----------------------------
def _safe_id(name: str) -> str:
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, obj: Any) -> None:
    _atomic_write_text(path, json.dumps(obj, ensure_ascii=False, indent=2))


# -----------------------------
# DiskTranscriptStore
# -----------------------------
class DiskTranscriptStore:
    """JSON-file store, one file per conversation.

    Layout:
        data_dir/
          conversations/<id>.json   # {"conversation": {...}, "messages": [...]}

    Every write rewrites the conversation file atomically, so each message is
    persisted independently of its neighbours. Last write wins.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.conversations_dir = self.root / "conversations"
        self.conversations_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # --------- paths ----------
    def _path(self, conversation_id: str) -> Path:
        return self.conversations_dir / f"{_safe_id(conversation_id)}.json"

    # --------- raw records ----------
    def _load_record(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        try:
            record = _read_json(path)
        except (OSError, ValueError):
            logger.exception("Corrupt conversation file %s, moving it aside", path)
            with self._lock:
                try:
                    path.rename(path.with_suffix(".corrupt.json"))
                except OSError:
                    logger.warning("Could not move corrupt file %s", path)
            return None
        if not isinstance(record, dict) or "conversation" not in record:
            return None
        return record

    def _save_record(self, conversation_id: str, record: Dict[str, Any]) -> None:
        try:
            _write_json(self._path(conversation_id), record)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"Failed to write conversation {conversation_id}: {e}") from e

    # --------- core API ----------
    def create_conversation(self, owner_id: str, title: str) -> str:
        now = time.time()
        conv = Conversation(id=uuid.uuid4().hex, owner_id=owner_id, title=title, created_at=now, updated_at=now)
        with self._lock:
            self._save_record(conv.id, {"conversation": conv.to_dict(), "messages": []})
        logger.debug("Created conversation %s for %s", conv.id, owner_id)
        return conv.id

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        record = self._load_record(conversation_id)
        if record is None:
            return None
        return Conversation.from_dict(record["conversation"])

    def insert_message(
        self, conversation_id: str, role: str, content: str, *, created_at: Optional[float] = None
    ) -> Message:
        if role not in ROLES:
            raise ValueError(f"unknown role {role!r}")
        msg = Message(
            role=role,
            content=content,
            conversation_id=conversation_id,
            created_at=time.time() if created_at is None else created_at,
        )
        with self._lock:
            record = self._load_record(conversation_id)
            if record is None:
                raise PersistenceFailure(f"Unknown conversation {conversation_id}")
            record.setdefault("messages", []).append(msg.to_dict())
            record["conversation"]["updated_at"] = time.time()
            self._save_record(conversation_id, record)
        return msg

    def list_messages(self, conversation_id: str) -> List[Message]:
        """Messages of a conversation, oldest first."""
        record = self._load_record(conversation_id)
        if record is None:
            return []
        msgs = [Message.from_dict(m) for m in record.get("messages", []) if isinstance(m, dict)]
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(msgs, key=lambda m: m.created_at)

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        with self._lock:
            record = self._load_record(conversation_id)
            if record is None:
                raise PersistenceFailure(f"Unknown conversation {conversation_id}")
            record["conversation"]["title"] = title
            record["conversation"]["updated_at"] = time.time()
            self._save_record(conversation_id, record)

    def list_conversations(self, owner_id: str) -> List[Conversation]:
        """Conversations of an owner, most recently updated first."""
        out: List[Conversation] = []
        for p in self.conversations_dir.glob("*.json"):
            if p.name.endswith(".corrupt.json"):
                continue
            record = self._load_record(p.stem)
            if record is None:
                continue
            conv = Conversation.from_dict(record["conversation"])
            if conv.owner_id == owner_id:
                out.append(conv)
        return sorted(out, key=lambda c: c.updated_at, reverse=True)
