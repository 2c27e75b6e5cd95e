"""
FastAPI Application — thin REST layer over MessagingService.

Provides:
- Connection status / disconnect
- Channel picker
- Immediate send
- Schedule, list, send-now and cancel for scheduled messages
- Per-user statistics
- Scheduler start/stop bound to the app lifespan

Slack error codes are mapped to HTTP statuses here and nowhere else.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from channels.base import ChannelError, CredentialMissingError
from config.settings import get_settings
from core.context import ServiceContext, build_services
from core.messaging import MessageNotFoundError, MessagingError, NotMessageOwnerError

logger = structlog.get_logger()

# Slack error code → (HTTP status, user-facing message)
_SLACK_ERROR_RESPONSES = {
    "channel_not_found": (400, "Channel not found or not accessible"),
    "not_in_channel": (400, "Bot not in channel or insufficient permissions"),
    "rate_limited": (429, "Rate limited - please try again later"),
    "ratelimited": (429, "Rate limited - please try again later"),
}


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class SendMessageRequest(BaseModel):
    channel: str = ""
    message: str = ""


class ScheduleMessageRequest(BaseModel):
    channel: str
    channel_name: Optional[str] = None
    content: str
    scheduled_for: datetime
    timezone: str = "UTC"


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(services: Optional[ServiceContext] = None) -> FastAPI:
    """Build the app. Pass `services` to reuse an already wired context."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = services or await build_services(get_settings())
        app.state.services = ctx
        await ctx.start()
        yield
        await ctx.aclose()

    app = FastAPI(
        title="Slack Scheduler API",
        description="Send Slack messages now or schedule them for later",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)
    _register_routes(app)
    return app


def _messaging(request: Request):
    return request.app.state.services.messaging


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(ChannelError)
    async def channel_error_handler(request: Request, exc: ChannelError):
        if isinstance(exc, CredentialMissingError):
            return JSONResponse(status_code=401,
                                content={"error": "Slack connection not available or expired"})
        status, message = _SLACK_ERROR_RESPONSES.get(exc.code, (400, exc.code))
        logger.info("slack_error_response", code=exc.code, status=status, path=request.url.path)
        return JSONResponse(status_code=status, content={"error": message})

    @app.exception_handler(MessagingError)
    async def messaging_error_handler(request: Request, exc: MessagingError):
        status = 400
        if isinstance(exc, MessageNotFoundError):
            status = 404
        elif isinstance(exc, NotMessageOwnerError):
            status = 403
        return JSONResponse(status_code=status, content={"error": str(exc)})


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health(request: Request):
        scheduler = request.app.state.services.scheduler
        return {"status": "ok", "scheduler_running": scheduler.running,
                "ticks": scheduler.tick_count}

    # ── Connection ────────────────────────────────────────

    @app.get("/api/slack/status/{workspace_id}/{user_id}")
    async def connection_status(workspace_id: str, user_id: str, request: Request):
        status = await _messaging(request).connection_status(workspace_id, user_id)
        body = {"connected": status.connected}
        if status.expired:
            body["expired"] = True
        if status.connected:
            body["team"] = {"id": status.workspace_id, "name": status.workspace_name}
        return body

    @app.post("/api/slack/disconnect/{workspace_id}/{user_id}")
    async def disconnect(workspace_id: str, user_id: str, request: Request):
        await _messaging(request).disconnect(workspace_id, user_id)
        return {"success": True}

    @app.get("/api/slack/channels/{workspace_id}/{user_id}")
    async def list_channels(workspace_id: str, user_id: str, request: Request):
        channels = await _messaging(request).list_channels(workspace_id, user_id)
        return [{"id": c["id"], "name": c["name"], "isPrivate": c["is_private"]} for c in channels]

    # ── Sending ───────────────────────────────────────────

    @app.post("/api/slack/send/{workspace_id}/{user_id}")
    async def send_message(workspace_id: str, user_id: str, body: SendMessageRequest, request: Request):
        if not body.channel or not body.message:
            return JSONResponse(status_code=400, content={"error": "Channel and message are required"})
        result = await _messaging(request).send_immediate(workspace_id, user_id, body.channel, body.message)
        return {"success": True, "messageTs": result.remote_ts}

    # ── Scheduled messages ────────────────────────────────

    @app.post("/api/messages/schedule/{workspace_id}/{user_id}")
    async def schedule_message(workspace_id: str, user_id: str, body: ScheduleMessageRequest, request: Request):
        message = await _messaging(request).schedule_message(
            workspace_id, user_id,
            channel=body.channel,
            content=body.content,
            scheduled_for=body.scheduled_for,
            timezone_name=body.timezone,
            channel_name=body.channel_name,
        )
        return message.model_dump(mode="json")

    @app.get("/api/messages/scheduled/{workspace_id}/{user_id}")
    async def list_scheduled(workspace_id: str, user_id: str, request: Request):
        messages = await _messaging(request).list_messages(workspace_id, user_id)
        return [m.model_dump(mode="json") for m in messages]

    @app.post("/api/messages/scheduled/{workspace_id}/{user_id}/{message_id}/send")
    async def send_scheduled_now(workspace_id: str, user_id: str, message_id: str, request: Request):
        message = await _messaging(request).deliver_now(workspace_id, user_id, message_id)
        return message.model_dump(mode="json")

    @app.delete("/api/messages/scheduled/{workspace_id}/{user_id}/{message_id}")
    async def cancel_scheduled(workspace_id: str, user_id: str, message_id: str, request: Request):
        await _messaging(request).cancel_message(workspace_id, user_id, message_id)
        return {"success": True}

    @app.get("/api/messages/stats/{workspace_id}/{user_id}")
    async def stats(workspace_id: str, user_id: str, request: Request):
        s = await _messaging(request).get_stats(workspace_id, user_id)
        return {
            "messagesSent": s.messages_sent,
            "scheduledMessages": s.scheduled_messages,
            "activeChannels": s.active_channels,
        }


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
