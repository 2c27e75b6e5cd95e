"""
Abstract stores — Interfaces for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)
  - FileStore     (JSON files on disk, single-process, durable)

The stores are pure data access. Status rules live in delivery/state_machine.py;
the only concurrency primitive a store offers is the compare-and-set form of
update_message(expected_status=...).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    ChannelRecord, CredentialRecord, MessageStatus, ScheduledMessage,
)

# Fields frozen once a message leaves `pending`
IMMUTABLE_AFTER_PENDING = frozenset({"scheduled_for", "content", "channel"})

MESSAGE_UPDATABLE_FIELDS = frozenset({
    "status", "sent_at", "error_message", "remote_ts", "channel_name",
}) | IMMUTABLE_AFTER_PENDING

CREDENTIAL_UPDATABLE_FIELDS = frozenset({
    "access_token", "refresh_token", "expires_at", "workspace_name",
})


class StoreUnavailableError(Exception):
    """The backing medium (database, disk) could not serve the request."""


def check_message_update(current: ScheduledMessage, fields: dict[str, Any]) -> None:
    """Reject unknown fields and edits to a message that is no longer pending."""
    unknown = set(fields) - MESSAGE_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update message fields: {sorted(unknown)}")
    if current.status != MessageStatus.PENDING:
        frozen = set(fields) & IMMUTABLE_AFTER_PENDING
        if frozen:
            raise ValueError(
                f"Message {current.id} is {current.status.value}; {sorted(frozen)} are immutable"
            )


def check_credential_update(fields: dict[str, Any]) -> None:
    unknown = set(fields) - CREDENTIAL_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update credential fields: {sorted(unknown)}")


class BaseCredentialStore(ABC):
    """Per-(workspace, user) OAuth credentials. At most one record per key."""

    @abstractmethod
    async def get_credential(self, workspace_id: str, user_id: str) -> Optional[CredentialRecord]:
        ...

    @abstractmethod
    async def create_credential(self, record: CredentialRecord) -> CredentialRecord:
        """Store `record`, replacing any existing record for the same key."""
        ...

    @abstractmethod
    async def update_credential(
        self, workspace_id: str, user_id: str, **fields,
    ) -> Optional[CredentialRecord]:
        """Apply `fields` in a single write and bump updated_at. None if absent."""
        ...

    @abstractmethod
    async def delete_credential(self, workspace_id: str, user_id: str) -> bool:
        ...


class BaseMessageStore(ABC):
    """Scheduled-message records, kept for history once terminal."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[ScheduledMessage]:
        ...

    @abstractmethod
    async def create_message(self, message: ScheduledMessage) -> ScheduledMessage:
        ...

    @abstractmethod
    async def update_message(
        self, message_id: str, expected_status: Optional[MessageStatus] = None, **fields,
    ) -> Optional[ScheduledMessage]:
        """
        Apply `fields` to a message.

        With `expected_status`, the write happens only if the stored status still
        equals it (compare-and-set); otherwise nothing changes and None is
        returned. None is also returned for an unknown id.
        """
        ...

    @abstractmethod
    async def list_due(self, now: datetime) -> list[ScheduledMessage]:
        """Pending messages with scheduled_for <= now."""
        ...

    @abstractmethod
    async def list_by_owner(self, workspace_id: str, user_id: str) -> list[ScheduledMessage]:
        ...

    # ── Immediate-send counter ────────────────────────────

    @abstractmethod
    async def increment_sent_count(self, workspace_id: str, user_id: str) -> int:
        ...

    @abstractmethod
    async def get_sent_count(self, workspace_id: str, user_id: str) -> int:
        ...


class BaseChannelStore(ABC):
    """Channels seen per workspace, most recently used first."""

    @abstractmethod
    async def list_channels(self, workspace_id: str) -> list[ChannelRecord]:
        ...

    @abstractmethod
    async def upsert_channel(self, record: ChannelRecord) -> ChannelRecord:
        ...

    @abstractmethod
    async def touch_channel(self, channel_id: str, workspace_id: str) -> None:
        """Set last_used to now, if the channel is known."""
        ...


class BaseStore(BaseCredentialStore, BaseMessageStore, BaseChannelStore):
    """Everything a single backend provides."""

    async def close(self) -> None:
        pass
