"""
Message model shared by memory, token counting and providers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

ROLES = ("user", "assistant", "system")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConversationMessage:
    """One turn in a conversation. Immutable once created."""
    role: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Mapping[str, Any] | None = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role '{self.role}' (expected one of {ROLES})")
        if self.metadata is not None:
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def is_user(self) -> bool:
        return self.role == "user"

    @property
    def is_assistant(self) -> bool:
        return self.role == "assistant"

    def to_record(self) -> dict:
        record = {
            "content": self.content,
            "role": self.role,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.metadata is not None:
            record["metadata"] = dict(self.metadata)
        return record

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "ConversationMessage":
        return cls(
            role=data["role"],
            content=data["content"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            metadata=data.get("metadata"),
        )

    def to_chat(self) -> dict:
        """OpenAI-style {"role", "content"} dict."""
        return {"role": self.role, "content": self.content}
