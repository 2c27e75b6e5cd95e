"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore
  - Every read and write completes without yielding to the event loop,
    so compare-and-set updates are atomic within one process
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from database.store_base import (
    BaseStore, check_credential_update, check_message_update,
)
from models.schemas import (
    ChannelRecord, CredentialRecord, MessageStatus, ScheduledMessage,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _owner_key(workspace_id: str, user_id: str) -> str:
    return f"{workspace_id}:{user_id}"


class InMemoryStore(BaseStore):
    """
    Full-featured in-memory store with the same interface as SqlStore.
    Returns copies of stored models so callers never alias internal state.
    """

    def __init__(self):
        self._credentials: dict[str, CredentialRecord] = {}    # "ws:user" → record
        self._messages: dict[str, ScheduledMessage] = {}       # id → message
        self._channels: dict[str, ChannelRecord] = {}          # "ws:channel_id" → record
        self._sent_counts: dict[str, int] = defaultdict(int)   # "ws:user" → immediate sends
        logger.info("inmemory_store_initialized")

    # ── Credentials ───────────────────────────────────────

    async def get_credential(self, workspace_id: str, user_id: str) -> Optional[CredentialRecord]:
        record = self._credentials.get(_owner_key(workspace_id, user_id))
        return record.model_copy() if record else None

    async def create_credential(self, record: CredentialRecord) -> CredentialRecord:
        self._credentials[_owner_key(record.workspace_id, record.user_id)] = record.model_copy()
        return record.model_copy()

    async def update_credential(
        self, workspace_id: str, user_id: str, **fields,
    ) -> Optional[CredentialRecord]:
        check_credential_update(fields)
        key = _owner_key(workspace_id, user_id)
        existing = self._credentials.get(key)
        if existing is None:
            return None
        updated = existing.model_copy(update={**fields, "updated_at": _utcnow()})
        self._credentials[key] = updated
        return updated.model_copy()

    async def delete_credential(self, workspace_id: str, user_id: str) -> bool:
        return self._credentials.pop(_owner_key(workspace_id, user_id), None) is not None

    # ── Messages ──────────────────────────────────────────

    async def get_message(self, message_id: str) -> Optional[ScheduledMessage]:
        msg = self._messages.get(message_id)
        return msg.model_copy() if msg else None

    async def create_message(self, message: ScheduledMessage) -> ScheduledMessage:
        self._messages[message.id] = message.model_copy()
        return message.model_copy()

    async def update_message(
        self, message_id: str, expected_status: Optional[MessageStatus] = None, **fields,
    ) -> Optional[ScheduledMessage]:
        current = self._messages.get(message_id)
        if current is None:
            return None
        if expected_status is not None and current.status != expected_status:
            return None
        check_message_update(current, fields)
        updated = current.model_copy(update=fields)
        self._messages[message_id] = updated
        return updated.model_copy()

    async def list_due(self, now: datetime) -> list[ScheduledMessage]:
        return [m.model_copy() for m in self._messages.values() if m.is_due(now)]

    async def list_by_owner(self, workspace_id: str, user_id: str) -> list[ScheduledMessage]:
        return [
            m.model_copy() for m in self._messages.values()
            if m.is_owned_by(workspace_id, user_id)
        ]

    async def increment_sent_count(self, workspace_id: str, user_id: str) -> int:
        key = _owner_key(workspace_id, user_id)
        self._sent_counts[key] += 1
        return self._sent_counts[key]

    async def get_sent_count(self, workspace_id: str, user_id: str) -> int:
        return self._sent_counts.get(_owner_key(workspace_id, user_id), 0)

    # ── Channels ──────────────────────────────────────────

    async def list_channels(self, workspace_id: str) -> list[ChannelRecord]:
        channels = [
            c.model_copy() for c in self._channels.values()
            if c.workspace_id == workspace_id
        ]
        channels.sort(key=lambda c: c.last_used or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return channels

    async def upsert_channel(self, record: ChannelRecord) -> ChannelRecord:
        key = _owner_key(record.workspace_id, record.channel_id)
        existing = self._channels.get(key)
        if existing:
            record = existing.model_copy(update={"name": record.name, "is_private": record.is_private})
        elif record.last_used is None:
            record = record.model_copy(update={"last_used": _utcnow()})
        self._channels[key] = record
        return record.model_copy()

    async def touch_channel(self, channel_id: str, workspace_id: str) -> None:
        key = _owner_key(workspace_id, channel_id)
        existing = self._channels.get(key)
        if existing:
            self._channels[key] = existing.model_copy(update={"last_used": _utcnow()})

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "credentials": len(self._credentials),
            "messages": len(self._messages),
            "channels": len(self._channels),
        }
