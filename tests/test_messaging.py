"""Tests for MessagingService — request-level operations."""
from datetime import datetime, timedelta, timezone

import pytest

from channels.base import CredentialMissingError, RemoteSendFailedError
from core.messaging import (
    MessageNotCancellableError, MessageNotFoundError, MessagingService,
    NotMessageOwnerError, ValidationFailedError,
)
from models.schemas import ChannelRecord, MessageStatus
from tests.conftest import NOW, USER, WORKSPACE, make_message


class TestScheduleMessage:
    @pytest.mark.asyncio
    async def test_naive_time_is_local_to_timezone(self, messaging, store):
        # 09:00 in New York on 2026-10-20 is 13:00 UTC (EDT)
        msg = await messaging.schedule_message(
            WORKSPACE, USER, channel="C001", content="Good morning",
            scheduled_for=datetime(2026, 10, 20, 9, 0),
            timezone_name="America/New_York",
        )
        assert msg.scheduled_for == datetime(2026, 10, 20, 13, 0, tzinfo=timezone.utc)
        assert msg.timezone == "America/New_York"
        assert msg.status == MessageStatus.PENDING
        assert (await store.get_message(msg.id)) is not None

    @pytest.mark.asyncio
    async def test_aware_time_used_as_is(self, messaging):
        instant = datetime(2026, 10, 19, 16, 0, tzinfo=timezone(timedelta(hours=2)))
        msg = await messaging.schedule_message(
            WORKSPACE, USER, channel="C001", content="hi",
            scheduled_for=instant, timezone_name="Asia/Tokyo",
        )
        assert msg.scheduled_for == datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)
        assert msg.scheduled_for.utcoffset() == timedelta(0)

    @pytest.mark.asyncio
    async def test_past_time_rejected(self, messaging):
        with pytest.raises(ValidationFailedError, match="future"):
            await messaging.schedule_message(
                WORKSPACE, USER, channel="C001", content="late",
                scheduled_for=NOW - timedelta(minutes=1),
            )

    @pytest.mark.asyncio
    async def test_now_is_not_future(self, messaging):
        with pytest.raises(ValidationFailedError):
            await messaging.schedule_message(
                WORKSPACE, USER, channel="C001", content="now", scheduled_for=NOW,
            )

    @pytest.mark.asyncio
    async def test_unknown_timezone(self, messaging):
        with pytest.raises(ValidationFailedError, match="timezone"):
            await messaging.schedule_message(
                WORKSPACE, USER, channel="C001", content="hi",
                scheduled_for=NOW + timedelta(hours=1), timezone_name="Mars/Olympus",
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", "x" * 4001])
    async def test_invalid_content(self, messaging, content):
        with pytest.raises(ValidationFailedError):
            await messaging.schedule_message(
                WORKSPACE, USER, channel="C001", content=content,
                scheduled_for=NOW + timedelta(hours=1),
            )

    @pytest.mark.asyncio
    async def test_configured_length_limit(self, store, client_cache, engine, clock):
        service = MessagingService(store, client_cache, engine, max_message_length=10, clock=clock)
        with pytest.raises(ValidationFailedError, match="10"):
            await service.schedule_message(
                WORKSPACE, USER, channel="C001", content="x" * 11,
                scheduled_for=NOW + timedelta(hours=1),
            )

    @pytest.mark.asyncio
    async def test_channel_required(self, messaging):
        with pytest.raises(ValidationFailedError):
            await messaging.schedule_message(
                WORKSPACE, USER, channel="", content="hi", scheduled_for=NOW + timedelta(hours=1),
            )


class TestListAndCancel:
    @pytest.mark.asyncio
    async def test_list_sorted_by_time(self, messaging, store):
        late = await store.create_message(make_message(scheduled_for=NOW + timedelta(hours=3)))
        early = await store.create_message(make_message(scheduled_for=NOW + timedelta(hours=1)))
        await store.create_message(make_message(user_id="U0002"))

        result = await messaging.list_messages(WORKSPACE, USER)
        assert [m.id for m in result] == [early.id, late.id]

    @pytest.mark.asyncio
    async def test_cancel_pending(self, messaging, store):
        msg = await store.create_message(make_message())
        cancelled = await messaging.cancel_message(WORKSPACE, USER, msg.id)
        assert cancelled.status == MessageStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, messaging):
        with pytest.raises(MessageNotFoundError):
            await messaging.cancel_message(WORKSPACE, USER, "missing")

    @pytest.mark.asyncio
    async def test_cancel_someone_elses_message(self, messaging, store):
        msg = await store.create_message(make_message(user_id="U0002"))
        with pytest.raises(NotMessageOwnerError):
            await messaging.cancel_message(WORKSPACE, USER, msg.id)
        assert (await store.get_message(msg.id)).status == MessageStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_sent_message(self, messaging, store):
        msg = await store.create_message(make_message(status=MessageStatus.SENT, sent_at=NOW))
        with pytest.raises(MessageNotCancellableError) as exc_info:
            await messaging.cancel_message(WORKSPACE, USER, msg.id)
        assert exc_info.value.status == MessageStatus.SENT


class TestDeliverNow:
    @pytest.mark.asyncio
    async def test_sends_immediately(self, messaging, store, fake_slack, credential):
        await store.create_credential(credential)
        msg = await store.create_message(make_message(scheduled_for=NOW + timedelta(days=1)))

        result = await messaging.deliver_now(WORKSPACE, USER, msg.id)

        assert result.status == MessageStatus.SENT
        assert len(fake_slack.sent) == 1

    @pytest.mark.asyncio
    async def test_checks_ownership(self, messaging, store, fake_slack, credential):
        await store.create_credential(credential)
        msg = await store.create_message(make_message(workspace_id="T0002"))
        with pytest.raises(NotMessageOwnerError):
            await messaging.deliver_now(WORKSPACE, USER, msg.id)
        assert fake_slack.sent == []


class TestSendImmediate:
    @pytest.mark.asyncio
    async def test_sends_and_counts(self, messaging, store, fake_slack, credential):
        await store.create_credential(credential)

        result = await messaging.send_immediate(WORKSPACE, USER, "C001", "ship it")

        assert result.remote_ts
        assert fake_slack.sent[0]["text"] == "ship it"
        assert await store.get_sent_count(WORKSPACE, USER) == 1
        assert await store.list_by_owner(WORKSPACE, USER) == []

    @pytest.mark.asyncio
    async def test_no_client(self, messaging):
        with pytest.raises(CredentialMissingError):
            await messaging.send_immediate(WORKSPACE, USER, "C001", "ship it")

    @pytest.mark.asyncio
    async def test_remote_error_propagates(self, messaging, store, fake_slack, credential):
        fake_slack.channel_errors["C404"] = "channel_not_found"
        await store.create_credential(credential)
        with pytest.raises(RemoteSendFailedError, match="channel_not_found"):
            await messaging.send_immediate(WORKSPACE, USER, "C404", "ship it")
        assert await store.get_sent_count(WORKSPACE, USER) == 0

    @pytest.mark.asyncio
    async def test_empty_text(self, messaging):
        with pytest.raises(ValidationFailedError):
            await messaging.send_immediate(WORKSPACE, USER, "C001", "")


class TestReadModels:
    @pytest.mark.asyncio
    async def test_stats(self, messaging, store):
        await store.create_message(make_message(status=MessageStatus.SENT, sent_at=NOW))
        await store.create_message(make_message(status=MessageStatus.FAILED))
        await store.create_message(make_message())
        await store.create_message(make_message())
        await store.increment_sent_count(WORKSPACE, USER)
        await store.upsert_channel(ChannelRecord(channel_id="C001", name="general", workspace_id=WORKSPACE))

        stats = await messaging.get_stats(WORKSPACE, USER)

        assert stats.messages_sent == 2
        assert stats.scheduled_messages == 2
        assert stats.active_channels == 1

    @pytest.mark.asyncio
    async def test_connection_status_connected(self, messaging, store, credential):
        await store.create_credential(credential)
        status = await messaging.connection_status(WORKSPACE, USER)
        assert status.connected
        assert status.workspace_name == "Acme"

    @pytest.mark.asyncio
    async def test_connection_status_expired(self, messaging, store, expired_credential):
        await store.create_credential(expired_credential)
        status = await messaging.connection_status(WORKSPACE, USER)
        assert not status.connected
        assert status.expired

    @pytest.mark.asyncio
    async def test_connection_status_missing(self, messaging):
        status = await messaging.connection_status(WORKSPACE, USER)
        assert not status.connected
        assert not status.expired

    @pytest.mark.asyncio
    async def test_disconnect(self, messaging, store, client_cache, credential):
        await store.create_credential(credential)
        await client_cache.resolve_client(WORKSPACE, USER)

        assert await messaging.disconnect(WORKSPACE, USER) is True
        assert await store.get_credential(WORKSPACE, USER) is None
        assert (WORKSPACE, USER) not in client_cache
        assert await messaging.disconnect(WORKSPACE, USER) is False

    @pytest.mark.asyncio
    async def test_list_channels_adds_to_catalogue(self, messaging, store, credential):
        await store.create_credential(credential)
        channels = await messaging.list_channels(WORKSPACE, USER)

        assert [c["id"] for c in channels] == ["C001", "C002"]
        known = {c.channel_id: c for c in await store.list_channels(WORKSPACE)}
        assert set(known) == {"C001", "C002"}
        assert known["C002"].is_private

    @pytest.mark.asyncio
    async def test_list_channels_without_client(self, messaging):
        with pytest.raises(CredentialMissingError):
            await messaging.list_channels(WORKSPACE, USER)
