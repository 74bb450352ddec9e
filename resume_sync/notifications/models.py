"""Notification records and their wire contracts."""

from __future__ import annotations

import itertools
import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

OBJECT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")

_id_counter = itertools.count(1)


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    RATE_LIMIT = "rateLimit"


def is_object_id(value: Any) -> bool:
    """True for 24-hex-character server-issued ids."""
    return isinstance(value, str) and bool(OBJECT_ID_PATTERN.match(value))


def generate_notification_id() -> str:
    """Client-side id: ``notif-<epoch ms>-<counter>``."""
    return f"notif-{int(time.time() * 1000)}-{next(_id_counter)}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce_type(value: Any) -> NotificationType:
    try:
        return NotificationType(value)
    except ValueError:
        return NotificationType.INFO


@dataclass
class Notification:
    id: str
    type: NotificationType = NotificationType.INFO
    title: str = ""
    message: str = ""
    created_at: str = field(default_factory=_now_iso)
    read: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Notification":
        """Build from a server/stream payload (``_id`` or ``id``; ``createdAt`` or ``timestamp``)."""
        wire = NotificationWire.model_validate(raw)
        return cls(
            id=wire.id or generate_notification_id(),
            type=_coerce_type(wire.type),
            title=wire.title or "",
            message=wire.message or "",
            created_at=wire.createdAt or wire.timestamp or _now_iso(),
            read=bool(wire.read),
            metadata=dict(wire.metadata or {}),
        )

    def with_read(self, read: bool) -> "Notification":
        return replace(self, read=read)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "createdAt": self.created_at,
            "read": self.read,
            "metadata": dict(self.metadata),
        }


class NotificationWire(BaseModel):
    """Loose server shape; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    type: Optional[str] = "info"
    title: Optional[str] = None
    message: Optional[str] = None
    createdAt: Optional[str] = None
    timestamp: Optional[str] = None
    read: Optional[bool] = False
    metadata: Optional[Dict[str, Any]] = None


class NotificationPage(BaseModel):
    """``data`` member of ``GET /notifications``."""

    model_config = ConfigDict(extra="ignore")

    notifications: List[Dict[str, Any]] = Field(default_factory=list)
    count: Optional[int] = None
    total: Optional[int] = None

    @property
    def total_count(self) -> int:
        return self.count or self.total or len(self.notifications)

    def items(self) -> List[Notification]:
        return [Notification.from_api(raw) for raw in self.notifications]
