"""
Core data models for the Slack message scheduler.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

MAX_CONTENT_LENGTH = 4000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.SENT, MessageStatus.FAILED, MessageStatus.CANCELLED)


# ──────────────────────────────────────────────────────────────
#  Credential, one per (workspace, user)
# ──────────────────────────────────────────────────────────────

class CredentialRecord(BaseModel):
    """Access/refresh credentials a user granted for one workspace."""
    id: str = Field(default_factory=_new_id)
    workspace_id: str
    workspace_name: str = ""
    user_id: str
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utcnow()) > self.expires_at


# ──────────────────────────────────────────────────────────────
#  Scheduled message
# ──────────────────────────────────────────────────────────────

class ScheduledMessage(BaseModel):
    """
    A message queued for delivery at `scheduled_for`.

    `timezone` is what the user picked in the compose form. Delivery is driven
    by the absolute instant only.
    """
    id: str = Field(default_factory=_new_id)
    workspace_id: str
    user_id: str
    channel: str
    channel_name: Optional[str] = None
    content: str = Field(min_length=1, max_length=MAX_CONTENT_LENGTH)
    scheduled_for: datetime
    timezone: str = "UTC"
    status: MessageStatus = MessageStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    remote_ts: Optional[str] = None           # Slack message ts once sent

    def is_due(self, now: Optional[datetime] = None) -> bool:
        return self.status == MessageStatus.PENDING and self.scheduled_for <= (now or _utcnow())

    def is_owned_by(self, workspace_id: str, user_id: str) -> bool:
        return self.workspace_id == workspace_id and self.user_id == user_id


# ──────────────────────────────────────────────────────────────
#  Channel catalogue
# ──────────────────────────────────────────────────────────────

class ChannelRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    channel_id: str
    name: str
    workspace_id: str
    is_private: bool = False
    last_used: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Remote boundary results
# ──────────────────────────────────────────────────────────────

class RefreshResult(BaseModel):
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None


class SendResult(BaseModel):
    channel: str
    remote_ts: str


# ──────────────────────────────────────────────────────────────
#  Read models for the route layer
# ──────────────────────────────────────────────────────────────

class MessageStats(BaseModel):
    messages_sent: int = 0
    scheduled_messages: int = 0
    active_channels: int = 0


class ConnectionStatus(BaseModel):
    connected: bool
    expired: bool = False
    workspace_id: Optional[str] = None
    workspace_name: Optional[str] = None
