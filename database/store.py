"""
SqlStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Compare-and-set on message status is a single conditional UPDATE
(`WHERE id = :id AND status = :expected`), so two processes racing to claim
the same message cannot both win.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from database.models import (
    Base, ChannelRow, CredentialRow, ScheduledMessageRow, SentCountRow,
)
from database.session import create_engine_for, create_session_factory, session_scope
from database.store_base import (
    BaseStore, StoreUnavailableError, check_credential_update, check_message_update,
)
from models.schemas import (
    ChannelRecord, CredentialRecord, MessageStatus, ScheduledMessage,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_column_values(fields: dict[str, Any]) -> dict[str, Any]:
    values = {}
    for key, value in fields.items():
        if isinstance(value, MessageStatus):
            value = value.value
        elif isinstance(value, datetime):
            value = _as_utc(value)
        values[key] = value
    return values


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, url: str, echo: bool = False, engine: AsyncEngine = None):
        self._engine = engine or create_engine_for(url, echo=echo)
        self._factory: async_sessionmaker[AsyncSession] = create_session_factory(self._engine)

    async def init(self) -> None:
        """Create all tables. Call once at application startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_initialized",
                    dialect=self._engine.dialect.name,
                    tables=list(Base.metadata.tables.keys()))

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("database_closed")

    # ── Credential operations ──────────────────────────────

    async def get_credential(self, workspace_id: str, user_id: str) -> Optional[CredentialRecord]:
        async with session_scope(self._factory) as db:
            row = await self._credential_row(db, workspace_id, user_id)
            return self._row_to_credential(row) if row else None

    async def create_credential(self, record: CredentialRecord) -> CredentialRecord:
        async with session_scope(self._factory) as db:
            await db.execute(delete(CredentialRow).where(and_(
                CredentialRow.workspace_id == record.workspace_id,
                CredentialRow.user_id == record.user_id,
            )))
            db.add(CredentialRow(**_to_column_values(record.model_dump())))
        return record

    async def update_credential(
        self, workspace_id: str, user_id: str, **fields,
    ) -> Optional[CredentialRecord]:
        check_credential_update(fields)
        async with session_scope(self._factory) as db:
            stmt = (
                update(CredentialRow)
                .where(and_(
                    CredentialRow.workspace_id == workspace_id,
                    CredentialRow.user_id == user_id,
                ))
                .values(**_to_column_values({**fields, "updated_at": _utcnow()}))
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount == 0:
                return None
            row = await self._credential_row(db, workspace_id, user_id, populate_existing=True)
            return self._row_to_credential(row) if row else None

    async def delete_credential(self, workspace_id: str, user_id: str) -> bool:
        async with session_scope(self._factory) as db:
            result = await db.execute(delete(CredentialRow).where(and_(
                CredentialRow.workspace_id == workspace_id,
                CredentialRow.user_id == user_id,
            )))
            return result.rowcount > 0

    # ── Message operations ─────────────────────────────────

    async def get_message(self, message_id: str) -> Optional[ScheduledMessage]:
        async with session_scope(self._factory) as db:
            row = await db.get(ScheduledMessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def create_message(self, message: ScheduledMessage) -> ScheduledMessage:
        async with session_scope(self._factory) as db:
            db.add(ScheduledMessageRow(**_to_column_values(message.model_dump())))
        return message

    async def update_message(
        self, message_id: str, expected_status: Optional[MessageStatus] = None, **fields,
    ) -> Optional[ScheduledMessage]:
        async with session_scope(self._factory) as db:
            row = await db.get(ScheduledMessageRow, message_id)
            if row is None:
                return None
            current = self._row_to_message(row)
            if expected_status is not None and current.status != expected_status:
                return None
            check_message_update(current, fields)

            stmt = update(ScheduledMessageRow).where(ScheduledMessageRow.id == message_id)
            if expected_status is not None:
                stmt = stmt.where(ScheduledMessageRow.status == expected_status.value)
            result = await db.execute(
                stmt.values(**_to_column_values(fields))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            return current.model_copy(update=fields)

    async def list_due(self, now: datetime) -> list[ScheduledMessage]:
        async with session_scope(self._factory) as db:
            stmt = select(ScheduledMessageRow).where(and_(
                ScheduledMessageRow.status == MessageStatus.PENDING.value,
                ScheduledMessageRow.scheduled_for <= _as_utc(now),
            ))
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    async def list_by_owner(self, workspace_id: str, user_id: str) -> list[ScheduledMessage]:
        async with session_scope(self._factory) as db:
            stmt = select(ScheduledMessageRow).where(and_(
                ScheduledMessageRow.workspace_id == workspace_id,
                ScheduledMessageRow.user_id == user_id,
            ))
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    async def increment_sent_count(self, workspace_id: str, user_id: str) -> int:
        key = and_(SentCountRow.workspace_id == workspace_id, SentCountRow.user_id == user_id)
        for attempt in (1, 2):
            try:
                async with session_scope(self._factory) as db:
                    result = await db.execute(
                        update(SentCountRow).where(key)
                        .values(count=SentCountRow.count + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        db.add(SentCountRow(workspace_id=workspace_id, user_id=user_id, count=1))
                        return 1
                    count = await db.execute(select(SentCountRow.count).where(key))
                    return count.scalar_one()
            except StoreUnavailableError as e:
                # another writer inserted the first row; the retry takes the UPDATE path
                if attempt == 2 or not isinstance(e.__cause__, IntegrityError):
                    raise

    async def get_sent_count(self, workspace_id: str, user_id: str) -> int:
        async with session_scope(self._factory) as db:
            row = await db.get(SentCountRow, (workspace_id, user_id))
            return row.count if row else 0

    # ── Channel operations ─────────────────────────────────

    async def list_channels(self, workspace_id: str) -> list[ChannelRecord]:
        async with session_scope(self._factory) as db:
            stmt = (
                select(ChannelRow)
                .where(ChannelRow.workspace_id == workspace_id)
                .order_by(ChannelRow.last_used.desc())
            )
            result = await db.execute(stmt)
            return [self._row_to_channel(r) for r in result.scalars()]

    async def upsert_channel(self, record: ChannelRecord) -> ChannelRecord:
        async with session_scope(self._factory) as db:
            stmt = select(ChannelRow).where(and_(
                ChannelRow.workspace_id == record.workspace_id,
                ChannelRow.channel_id == record.channel_id,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row:
                row.name = record.name
                row.is_private = record.is_private
            else:
                row = ChannelRow(
                    id=record.id,
                    channel_id=record.channel_id,
                    name=record.name,
                    workspace_id=record.workspace_id,
                    is_private=record.is_private,
                    last_used=_as_utc(record.last_used) or _utcnow(),
                )
                db.add(row)
            await db.flush()
            return self._row_to_channel(row)

    async def touch_channel(self, channel_id: str, workspace_id: str) -> None:
        async with session_scope(self._factory) as db:
            await db.execute(
                update(ChannelRow)
                .where(and_(
                    ChannelRow.workspace_id == workspace_id,
                    ChannelRow.channel_id == channel_id,
                ))
                .values(last_used=_utcnow())
                .execution_options(synchronize_session=False)
            )

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    async def _credential_row(
        db: AsyncSession, workspace_id: str, user_id: str, populate_existing: bool = False,
    ) -> Optional[CredentialRow]:
        stmt = select(CredentialRow).where(and_(
            CredentialRow.workspace_id == workspace_id,
            CredentialRow.user_id == user_id,
        ))
        if populate_existing:
            stmt = stmt.execution_options(populate_existing=True)
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _row_to_credential(row: CredentialRow) -> CredentialRecord:
        return CredentialRecord(
            id=row.id,
            workspace_id=row.workspace_id,
            workspace_name=row.workspace_name or "",
            user_id=row.user_id,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=_as_utc(row.expires_at),
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_message(row: ScheduledMessageRow) -> ScheduledMessage:
        data = row.to_dict()
        for key in ("scheduled_for", "created_at", "sent_at"):
            data[key] = _as_utc(data[key])
        data["status"] = MessageStatus(data["status"])
        return ScheduledMessage.model_validate(data)

    @staticmethod
    def _row_to_channel(row: ChannelRow) -> ChannelRecord:
        return ChannelRecord(
            id=row.id,
            channel_id=row.channel_id,
            name=row.name,
            workspace_id=row.workspace_id,
            is_private=bool(row.is_private),
            last_used=_as_utc(row.last_used),
        )
