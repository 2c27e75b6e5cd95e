"""
Message State Machine — the only legal moves of a scheduled message.

    pending ──▶ sending ──▶ sent
       │           └──────▶ failed
       └──────▶ cancelled

sent, failed and cancelled are terminal. Every transition is written as a
compare-and-set against the status it leaves, so of two writers racing on the
same message exactly one wins. Illegal edges and lost races come from benign
overlaps (two ticks, a tick and a cancel) and are reported as no-ops, never
raised.

Usage:
    sm = MessageStateMachine(store)
    result = await sm.transition(msg_id, MessageStatus.PENDING, MessageStatus.SENDING)
    if result:
        ...  # we own the delivery attempt
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseMessageStore
from models.schemas import MessageStatus, ScheduledMessage

logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.PENDING: frozenset({MessageStatus.SENDING, MessageStatus.CANCELLED}),
    MessageStatus.SENDING: frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.SENT: frozenset(),
    MessageStatus.FAILED: frozenset(),
    MessageStatus.CANCELLED: frozenset(),
}


def can_transition(from_status: MessageStatus, to_status: MessageStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of a requested status change."""

    def __init__(
        self,
        transitioned: bool,
        message_id: str,
        from_status: MessageStatus,
        to_status: MessageStatus,
        message: Optional[ScheduledMessage] = None,
        reason: str = "",
    ):
        self.transitioned = transitioned
        self.message_id = message_id
        self.from_status = from_status
        self.to_status = to_status
        self.message = message
        self.reason = reason

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return f"<Transition {self.message_id} {self.from_status.value} → {self.to_status.value}>"
        return f"<NoTransition {self.message_id} ({self.reason})>"


# ──────────────────────────────────────────────────────────────
#  Message State Machine
# ──────────────────────────────────────────────────────────────

class MessageStateMachine:

    def __init__(self, store: BaseMessageStore):
        self._store = store

    async def transition(
        self,
        message_id: str,
        from_status: MessageStatus,
        to_status: MessageStatus,
        **fields,
    ) -> TransitionResult:
        """
        Move `message_id` from `from_status` to `to_status`, writing `fields`
        in the same update. No-op unless the edge is legal and the stored
        status still equals `from_status`.
        """
        if not can_transition(from_status, to_status):
            logger.warning("illegal_transition_ignored",
                           message_id=message_id,
                           from_status=from_status.value, to_status=to_status.value)
            return TransitionResult(False, message_id, from_status, to_status, reason="illegal")

        updated = await self._store.update_message(
            message_id, expected_status=from_status, status=to_status, **fields,
        )
        if updated is None:
            logger.info("transition_lost",
                        message_id=message_id,
                        from_status=from_status.value, to_status=to_status.value)
            return TransitionResult(False, message_id, from_status, to_status, reason="stale")

        logger.debug("message_transitioned",
                     message_id=message_id,
                     from_status=from_status.value, to_status=to_status.value)
        return TransitionResult(True, message_id, from_status, to_status, message=updated)
