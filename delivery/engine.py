"""
Delivery Engine — one delivery attempt per pending message.

Flow for deliver(message_id):
    1. Load; anything but `pending` is a silent no-op
    2. Claim: pending → sending (compare-and-set; losing the race is a no-op)
    3. Resolve the authenticated client for (workspace, user)
    4. chat.postMessage
    5. sending → sent (sent_at, remote_ts)  or  sending → failed (error_message)

Outcomes are observable only through the stored message. Nothing raised
while delivering one message escapes deliver(), and a failed message is
never retried automatically.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Callable, Optional

from channels.base import CredentialMissingError
from channels.client_cache import SlackClientCache
from database.store_base import BaseStore
from delivery.state_machine import MessageStateMachine, TransitionResult
from models.schemas import MessageStatus, ScheduledMessage

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def describe_error(exc: BaseException) -> str:
    """Human-readable cause for error_message."""
    text = str(exc).strip()
    return text or type(exc).__name__


class DeliveryEngine:

    def __init__(
        self,
        store: BaseStore,
        client_cache: SlackClientCache,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._clients = client_cache
        self._clock = clock
        self.state_machine = MessageStateMachine(store)

    async def deliver(self, message_id: str) -> None:
        """Attempt delivery of a pending message. Idempotent for anything else."""
        try:
            message = await self._store.get_message(message_id)
            if message is None or message.status != MessageStatus.PENDING:
                logger.debug("delivery_skipped", message_id=message_id,
                             status=message.status.value if message else None)
                return

            claim = await self.state_machine.transition(
                message_id, MessageStatus.PENDING, MessageStatus.SENDING,
            )
        except Exception as e:
            logger.error("delivery_claim_failed", message_id=message_id, error=describe_error(e))
            return
        if not claim:
            return

        try:
            client = await self._clients.resolve_client(message.workspace_id, message.user_id)
            if client is None:
                raise CredentialMissingError(message.workspace_id, message.user_id)
            result = await client.send_message(message.channel, message.content)
        except Exception as e:
            logger.warning("message_delivery_failed",
                           message_id=message_id, channel=message.channel,
                           error=describe_error(e), error_type=type(e).__name__)
            await self._finish(
                message_id, MessageStatus.FAILED, error_message=describe_error(e),
            )
            return

        finished = await self._finish(
            message_id, MessageStatus.SENT, sent_at=self._clock(), remote_ts=result.remote_ts,
        )
        if finished:
            logger.info("message_sent", message_id=message_id,
                        channel=message.channel, remote_ts=result.remote_ts)
            await self._touch_channel(message)

    async def deliver_now(self, message_id: str) -> Optional[ScheduledMessage]:
        """Deliver immediately, ignoring scheduled_for, and return the resulting record."""
        await self.deliver(message_id)
        return await self._store.get_message(message_id)

    async def cancel(self, message_id: str) -> TransitionResult:
        """pending → cancelled. Rejected (no-op result) once a delivery has started."""
        result = await self.state_machine.transition(
            message_id, MessageStatus.PENDING, MessageStatus.CANCELLED,
        )
        if result:
            logger.info("message_cancelled", message_id=message_id)
        return result

    # ── Helpers ───────────────────────────────────────────────

    async def _finish(self, message_id: str, status: MessageStatus, **fields) -> bool:
        try:
            result = await self.state_machine.transition(
                message_id, MessageStatus.SENDING, status, **fields,
            )
        except Exception as e:
            # stays `sending`; visible to operators, never re-attempted
            logger.error("message_finalize_failed", message_id=message_id,
                         status=status.value, error=describe_error(e))
            return False
        return bool(result)

    async def _touch_channel(self, message: ScheduledMessage) -> None:
        try:
            await self._store.touch_channel(message.channel, message.workspace_id)
        except Exception as e:
            logger.warning("channel_touch_failed", channel=message.channel, error=str(e))
