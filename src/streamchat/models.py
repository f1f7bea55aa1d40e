"""Data models for conversations and their messages."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

USER = "user"
MODEL = "model"
ROLES = (USER, MODEL)


@dataclass
class Message:
    """A single transcript entry.

    ``content`` of the open model message is appended to in place while a
    reply streams; once persisted a message is treated as immutable.
    """

    role: str
    content: str
    conversation_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=str(data.get("role", "")),
            content=str(data.get("content") or ""),
            conversation_id=data.get("conversation_id"),
            created_at=float(data.get("created_at") or 0.0),
        )


@dataclass
class Conversation:
    id: str
    owner_id: str
    title: str
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(data["id"]),
            owner_id=str(data.get("owner_id", "")),
            title=str(data.get("title") or ""),
            created_at=float(data.get("created_at") or 0.0),
            updated_at=float(data.get("updated_at") or 0.0),
        )
