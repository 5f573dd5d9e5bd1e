"""Conversation data model: messages, attachments, choices and sessions."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

USER = "user"
ASSISTANT = "assistant"
SYSTEM = "system"
ROLES = (USER, ASSISTANT, SYSTEM)

# Older records used the backend's own name for the assistant role.
_ROLE_ALIASES = {"model": ASSISTANT, "ai": ASSISTANT, "human": USER}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # epoch milliseconds
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str) and value:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    return utc_now()


@dataclass(frozen=True)
class Choice:
    """A selectable option offered by a dialogue node."""
    label: str
    target_node_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "target_node_id": self.target_node_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Choice":
        if not isinstance(data, dict):
            raise ValueError(f"choice entry must be an object, got {type(data).__name__}")
        return cls(
            label=str(data.get("label", "")),
            target_node_id=str(data.get("target_node_id") or data.get("next_id") or ""),
        )


@dataclass
class Attachment:
    """An inline image sent along with a user turn.

    ``encoded_bytes`` is the raw base64 payload (no ``data:`` prefix),
    ``display_ref`` whatever the client uses to show it again (usually a
    data URL).
    """
    encoded_bytes: str
    mime_type: str
    display_ref: str = ""
    kind: str = "image"

    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.encoded_bytes}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "encoded_bytes": self.encoded_bytes,
            "mime_type": self.mime_type,
            "display_ref": self.display_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            encoded_bytes=str(data.get("encoded_bytes", "")),
            mime_type=str(data.get("mime_type", "")),
            display_ref=str(data.get("display_ref", "")),
            kind=str(data.get("kind", "image")),
        )


@dataclass(eq=False)
class Message:
    """One entry of a conversation timeline.

    Messages are mutable: a streaming assistant reply keeps its identity
    while its ``content`` grows, so observers see mutation rather than
    replacement. Equality is by value so persisted copies can be compared.
    """
    role: str
    content: str = ""
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utc_now)
    streaming: bool = False
    error: bool = False
    attachment: Optional[Attachment] = None
    choices: Optional[List[Choice]] = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    @property
    def final(self) -> bool:
        return not self.streaming

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "streaming": self.streaming,
            "error": self.error,
        }
        if self.attachment is not None:
            d["attachment"] = self.attachment.to_dict()
        if self.choices is not None:
            d["choices"] = [c.to_dict() for c in self.choices]
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        if not isinstance(data, dict):
            raise ValueError(f"message entry must be an object, got {type(data).__name__}")
        role = str(data.get("role", ASSISTANT)).lower()
        role = _ROLE_ALIASES.get(role, role)
        if role not in ROLES:
            raise ValueError(f"unknown message role: {role!r}")
        attachment = data.get("attachment")
        choices = data.get("choices")
        return cls(
            id=str(data.get("id") or new_id()),
            role=role,
            content=str(data.get("content") or ""),
            timestamp=_parse_ts(data.get("timestamp")),
            streaming=bool(data.get("streaming", False)),
            error=bool(data.get("error", False)),
            attachment=Attachment.from_dict(attachment) if isinstance(attachment, dict) else None,
            choices=[Choice.from_dict(c) for c in choices] if isinstance(choices, list) else None,
        )


@dataclass
class Session:
    """Durable per-owner conversation record."""
    owner_id: str
    messages: List[Message] = field(default_factory=list)
    last_updated: datetime = field(default_factory=utc_now)
    cursor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "owner_id": self.owner_id,
            "messages": [m.to_dict() for m in self.messages],
            "last_updated": self.last_updated.isoformat(),
        }
        if self.cursor is not None:
            d["cursor"] = self.cursor
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        cursor = data.get("cursor")
        messages = data.get("messages") or []
        if not isinstance(messages, list):
            raise ValueError(f"'messages' must be a list, got {type(messages).__name__}")
        return cls(
            owner_id=str(data.get("owner_id", "")),
            messages=[Message.from_dict(m) for m in messages],
            last_updated=_parse_ts(data.get("last_updated")),
            cursor=str(cursor) if cursor else None,
        )
