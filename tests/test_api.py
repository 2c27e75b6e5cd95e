"""Tests for the REST layer — routing and error mapping."""
import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from config.settings import Settings
from core.context import ServiceContext
from models.schemas import MessageStatus
from tests.conftest import NOW, USER, WORKSPACE, make_message

BASE = f"{WORKSPACE}/{USER}"


@pytest.fixture
def services(store, client_cache, engine, scheduler, messaging):
    settings = Settings()
    settings.scheduler.enabled = False
    return ServiceContext(
        settings=settings,
        store=store,
        client_cache=client_cache,
        engine=engine,
        scheduler=scheduler,
        messaging=messaging,
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


@pytest.fixture
def connected(store, credential):
    asyncio.run(store.create_credential(credential))
    return credential


class TestHealthAndConnection:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["scheduler_running"] is False

    def test_status_connected(self, client, connected):
        body = client.get(f"/api/slack/status/{BASE}").json()
        assert body == {"connected": True, "team": {"id": WORKSPACE, "name": "Acme"}}

    def test_status_not_connected(self, client):
        assert client.get(f"/api/slack/status/{BASE}").json() == {"connected": False}

    def test_disconnect(self, client, connected, store):
        resp = client.post(f"/api/slack/disconnect/{BASE}")
        assert resp.json() == {"success": True}
        assert asyncio.run(store.get_credential(WORKSPACE, USER)) is None

    def test_channels(self, client, connected):
        body = client.get(f"/api/slack/channels/{BASE}").json()
        assert body == [
            {"id": "C001", "name": "general", "isPrivate": False},
            {"id": "C002", "name": "ops", "isPrivate": True},
        ]

    def test_channels_without_connection(self, client):
        resp = client.get(f"/api/slack/channels/{BASE}")
        assert resp.status_code == 401


class TestImmediateSend:
    def test_send(self, client, connected, fake_slack):
        resp = client.post(f"/api/slack/send/{BASE}", json={"channel": "C001", "message": "hi"})
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "messageTs": "1760875200.000001"}
        assert fake_slack.sent[0]["text"] == "hi"

    def test_missing_fields(self, client, connected):
        resp = client.post(f"/api/slack/send/{BASE}", json={"channel": "C001"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Channel and message are required"

    def test_not_connected(self, client):
        resp = client.post(f"/api/slack/send/{BASE}", json={"channel": "C001", "message": "hi"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Slack connection not available or expired"

    @pytest.mark.parametrize("code,status,error", [
        ("channel_not_found", 400, "Channel not found or not accessible"),
        ("not_in_channel", 400, "Bot not in channel or insufficient permissions"),
        ("rate_limited", 429, "Rate limited - please try again later"),
        ("is_archived", 400, "is_archived"),
    ])
    def test_slack_error_mapping(self, client, connected, fake_slack, code, status, error):
        fake_slack.channel_errors["C001"] = code
        resp = client.post(f"/api/slack/send/{BASE}", json={"channel": "C001", "message": "hi"})
        assert resp.status_code == status
        assert resp.json()["error"] == error


class TestScheduledMessages:
    def test_schedule_and_list(self, client):
        resp = client.post(f"/api/messages/schedule/{BASE}", json={
            "channel": "C001",
            "channel_name": "general",
            "content": "Standup",
            "scheduled_for": "2026-10-20T09:00:00",
            "timezone": "America/New_York",
        })
        assert resp.status_code == 200
        created = resp.json()
        assert created["status"] == "pending"
        assert created["scheduled_for"].startswith("2026-10-20T13:00:00")

        listed = client.get(f"/api/messages/scheduled/{BASE}").json()
        assert [m["id"] for m in listed] == [created["id"]]

    def test_schedule_in_past(self, client):
        resp = client.post(f"/api/messages/schedule/{BASE}", json={
            "channel": "C001",
            "content": "Too late",
            "scheduled_for": (NOW - timedelta(hours=1)).isoformat(),
        })
        assert resp.status_code == 400
        assert "future" in resp.json()["error"]

    def test_send_now(self, client, connected, store):
        msg = asyncio.run(store.create_message(make_message()))
        resp = client.post(f"/api/messages/scheduled/{BASE}/{msg.id}/send")
        assert resp.status_code == 200
        assert resp.json()["status"] == "sent"

    def test_cancel(self, client, store):
        msg = asyncio.run(store.create_message(make_message()))
        resp = client.delete(f"/api/messages/scheduled/{BASE}/{msg.id}")
        assert resp.json() == {"success": True}
        assert asyncio.run(store.get_message(msg.id)).status == MessageStatus.CANCELLED

    def test_cancel_not_found(self, client):
        resp = client.delete(f"/api/messages/scheduled/{BASE}/missing")
        assert resp.status_code == 404

    def test_cancel_not_owner(self, client, store):
        msg = asyncio.run(store.create_message(make_message(user_id="U0002")))
        resp = client.delete(f"/api/messages/scheduled/{BASE}/{msg.id}")
        assert resp.status_code == 403

    def test_cancel_not_pending(self, client, store):
        msg = asyncio.run(store.create_message(make_message(status=MessageStatus.SENT, sent_at=NOW)))
        resp = client.delete(f"/api/messages/scheduled/{BASE}/{msg.id}")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Can only cancel pending messages"

    def test_stats(self, client, connected, store):
        asyncio.run(store.create_message(make_message()))
        client.post(f"/api/slack/send/{BASE}", json={"channel": "C001", "message": "hi"})
        body = client.get(f"/api/messages/stats/{BASE}").json()
        assert body == {"messagesSent": 1, "scheduledMessages": 1, "activeChannels": 0}
