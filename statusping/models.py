from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

FREQUENCIES = ("instant", "daily", "weekly")
JOB_TYPES = ("instant_digest", "daily_digest", "weekly_digest")
JOB_STATUSES = ("pending", "processing", "completed", "failed")


@dataclass
class Project:
    name: str
    magic_link_token: str
    description: str = ""
    status: str = "active"  # active, archived
    branding_color: Optional[str] = None  # "#rrggbb"
    branding_logo_url: Optional[str] = None
    notifications_enabled: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class Image:
    update_id: int
    url: str
    filename: Optional[str] = None
    size_bytes: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class Link:
    update_id: int
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class Update:
    project_id: int
    content: str
    images: list[Image] = field(default_factory=list)
    link: Optional[Link] = None  # only the first persisted link is surfaced
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class Subscription:
    project_id: int
    email: str
    frequency: str = "instant"  # instant, daily, weekly
    last_sent_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class Job:
    type: str  # instant_digest, daily_digest, weekly_digest
    payload: dict = field(default_factory=dict)
    status: str = "pending"  # pending, processing, completed, failed
    attempts: int = 0
    scheduled_for: Optional[datetime] = None
    last_error: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class Recipient:
    email: str
    subscription_id: int


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
