"""
MessagingService — request-level operations on top of the delivery core.

Everything the route layer needs: schedule, send immediately, send a
scheduled message now, cancel, list, stats, connection status, disconnect
and the channel picker. Ownership and input validation live here; status
rules stay in the delivery engine.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from channels.base import CredentialMissingError
from channels.client_cache import SlackClientCache
from database.store_base import BaseStore
from delivery.engine import DeliveryEngine
from models.schemas import (
    MAX_CONTENT_LENGTH, ChannelRecord, ConnectionStatus, MessageStats,
    MessageStatus, ScheduledMessage, SendResult,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class MessagingError(Exception):
    """Base for request-level failures the route layer maps to 4xx."""


class ValidationFailedError(MessagingError):
    pass


class MessageNotFoundError(MessagingError):
    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__("Message not found")


class NotMessageOwnerError(MessagingError):
    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__("Not authorized to access this message")


class MessageNotCancellableError(MessagingError):
    def __init__(self, message_id: str, status: MessageStatus):
        self.message_id = message_id
        self.status = status
        super().__init__("Can only cancel pending messages")


# ──────────────────────────────────────────────────────────────
#  Service
# ──────────────────────────────────────────────────────────────

class MessagingService:

    def __init__(
        self,
        store: BaseStore,
        client_cache: SlackClientCache,
        engine: DeliveryEngine,
        max_message_length: int = MAX_CONTENT_LENGTH,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.clients = client_cache
        self.engine = engine
        self.max_message_length = min(max_message_length, MAX_CONTENT_LENGTH)
        self._clock = clock

    # ── Scheduling ────────────────────────────────────────────

    async def schedule_message(
        self,
        workspace_id: str,
        user_id: str,
        channel: str,
        content: str,
        scheduled_for: datetime,
        timezone_name: str = "UTC",
        channel_name: Optional[str] = None,
    ) -> ScheduledMessage:
        """
        Store a pending message.

        A naive `scheduled_for` is wall-clock time in `timezone_name`; an aware
        one is used as-is. Either way it must be strictly in the future.
        """
        if not channel:
            raise ValidationFailedError("Channel is required")
        self._check_content(content)
        try:
            tz = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValidationFailedError(f"Unknown timezone: {timezone_name}") from e

        if scheduled_for.tzinfo is None:
            scheduled_for = scheduled_for.replace(tzinfo=tz)
        scheduled_for = scheduled_for.astimezone(timezone.utc)
        if scheduled_for <= self._clock():
            raise ValidationFailedError("Scheduled time must be in the future")

        message = await self.store.create_message(ScheduledMessage(
            workspace_id=workspace_id,
            user_id=user_id,
            channel=channel,
            channel_name=channel_name or None,
            content=content,
            scheduled_for=scheduled_for,
            timezone=timezone_name,
            created_at=self._clock(),
        ))
        logger.info("message_scheduled", message_id=message.id,
                    workspace_id=workspace_id, channel=channel,
                    scheduled_for=scheduled_for.isoformat(), timezone=timezone_name)
        return message

    async def list_messages(self, workspace_id: str, user_id: str) -> list[ScheduledMessage]:
        messages = await self.store.list_by_owner(workspace_id, user_id)
        return sorted(messages, key=lambda m: m.scheduled_for)

    async def cancel_message(self, workspace_id: str, user_id: str, message_id: str) -> ScheduledMessage:
        await self._owned_message(workspace_id, user_id, message_id)
        result = await self.engine.cancel(message_id)
        if not result:
            current = await self.store.get_message(message_id)
            raise MessageNotCancellableError(message_id, current.status if current else MessageStatus.PENDING)
        return result.message

    async def deliver_now(self, workspace_id: str, user_id: str, message_id: str) -> ScheduledMessage:
        """Send a scheduled message immediately instead of waiting for its tick."""
        await self._owned_message(workspace_id, user_id, message_id)
        return await self.engine.deliver_now(message_id)

    # ── Immediate send ────────────────────────────────────────

    async def send_immediate(self, workspace_id: str, user_id: str, channel: str, text: str) -> SendResult:
        """
        Post right away without creating a scheduled record.

        Raises CredentialMissingError or RemoteSendFailedError for the route
        layer to map.
        """
        if not channel:
            raise ValidationFailedError("Channel and message are required")
        self._check_content(text)

        client = await self.clients.resolve_client(workspace_id, user_id)
        if client is None:
            raise CredentialMissingError(workspace_id, user_id)
        result = await client.send_message(channel, text)
        logger.info("immediate_message_sent", workspace_id=workspace_id,
                    channel=channel, remote_ts=result.remote_ts)

        try:
            await self.store.touch_channel(channel, workspace_id)
            await self.store.increment_sent_count(workspace_id, user_id)
        except Exception as e:
            logger.warning("message_stats_update_failed", error=str(e))
        return result

    # ── Read models ───────────────────────────────────────────

    async def get_stats(self, workspace_id: str, user_id: str) -> MessageStats:
        messages = await self.store.list_by_owner(workspace_id, user_id)
        channels = await self.store.list_channels(workspace_id)
        immediate = await self.store.get_sent_count(workspace_id, user_id)
        return MessageStats(
            messages_sent=sum(1 for m in messages if m.status == MessageStatus.SENT) + immediate,
            scheduled_messages=sum(1 for m in messages if m.status == MessageStatus.PENDING),
            active_channels=len(channels),
        )

    async def connection_status(self, workspace_id: str, user_id: str) -> ConnectionStatus:
        record = await self.store.get_credential(workspace_id, user_id)
        if record is None:
            return ConnectionStatus(connected=False)
        if record.is_expired(self._clock()):
            return ConnectionStatus(connected=False, expired=True)
        return ConnectionStatus(
            connected=True,
            workspace_id=record.workspace_id,
            workspace_name=record.workspace_name,
        )

    async def disconnect(self, workspace_id: str, user_id: str) -> bool:
        deleted = await self.store.delete_credential(workspace_id, user_id)
        await self.clients.invalidate(workspace_id, user_id)
        logger.info("workspace_disconnected", workspace_id=workspace_id,
                    user_id=user_id, had_credential=deleted)
        return deleted

    async def list_channels(self, workspace_id: str, user_id: str) -> list[dict[str, Any]]:
        """Channels visible to the user; unknown ones are added to the catalogue."""
        client = await self.clients.resolve_client(workspace_id, user_id)
        if client is None:
            raise CredentialMissingError(workspace_id, user_id)
        channels = await client.list_channels()

        known = {c.channel_id for c in await self.store.list_channels(workspace_id)}
        for ch in channels:
            if ch["id"] not in known:
                await self.store.upsert_channel(ChannelRecord(
                    channel_id=ch["id"], name=ch["name"],
                    workspace_id=workspace_id, is_private=ch["is_private"],
                ))
        return channels

    # ── Helpers ───────────────────────────────────────────────

    def _check_content(self, content: str) -> None:
        if not content or not content.strip():
            raise ValidationFailedError("Message content is required")
        if len(content) > self.max_message_length:
            raise ValidationFailedError(
                f"Message exceeds {self.max_message_length} characters"
            )

    async def _owned_message(self, workspace_id: str, user_id: str, message_id: str) -> ScheduledMessage:
        message = await self.store.get_message(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        if not message.is_owned_by(workspace_id, user_id):
            raise NotMessageOwnerError(message_id)
        return message
