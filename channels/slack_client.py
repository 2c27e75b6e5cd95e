"""
Slack Web API client — the concrete remote boundary.

Calls used:
- oauth.v2.access (grant_type=refresh_token)  → credential refresh
- chat.postMessage                           → message delivery (single attempt)
- conversations.list                         → channel picker (retried on network errors)

One httpx.AsyncClient is shared by every SlackClient; the access token travels
per request in the Authorization header, so building a client per credential
costs nothing and needs no cleanup.

API Docs: https://api.slack.com/methods
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from channels.base import (
    CredentialRefresher, RefreshFailedError, RemoteSendFailedError, WorkspaceClient,
)
from models.schemas import RefreshResult, SendResult

logger = structlog.get_logger()

_RETRYABLE_ERRORS = {"rate_limited", "ratelimited", "network_error", "service_unavailable"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_network_error(exc: BaseException) -> bool:
    return isinstance(exc, RemoteSendFailedError) and exc.code == "network_error"


class SlackWebApi(CredentialRefresher):
    """Shared HTTP session plus the OAuth refresh exchange."""

    BASE_URL = "https://slack.com/api"

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        base_url: str = BASE_URL,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def call(
        self,
        api_method: str,
        token: str = "",
        http_method: str = "POST",
        **kwargs,
    ) -> dict[str, Any]:
        """
        Invoke a Web API method and return the decoded body.

        Raises RemoteSendFailedError carrying Slack's `error` string when the
        response is not ok, `rate_limited` on HTTP 429 and `network_error` when
        the request never completed.
        """
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            resp = await client.request(
                http_method, f"{self.base_url}/{api_method}", headers=headers, **kwargs,
            )
        except httpx.TransportError as e:
            logger.warning("slack_transport_error", method=api_method, error=str(e))
            raise RemoteSendFailedError("network_error", retryable=True) from e

        if resp.status_code == 429:
            logger.warning("slack_rate_limited", method=api_method,
                           retry_after=resp.headers.get("Retry-After"))
            raise RemoteSendFailedError("rate_limited", retryable=True, status_code=429)
        if resp.status_code >= 400:
            logger.error("slack_api_http_error", method=api_method,
                         status=resp.status_code, body=resp.text[:500])
            raise RemoteSendFailedError(f"http_{resp.status_code}", status_code=resp.status_code)

        try:
            body = resp.json()
        except ValueError as e:
            raise RemoteSendFailedError("invalid_response", status_code=resp.status_code) from e

        if not body.get("ok"):
            error = body.get("error") or "unknown_error"
            logger.info("slack_api_error", method=api_method, error=error)
            raise RemoteSendFailedError(error, retryable=error in _RETRYABLE_ERRORS,
                                        status_code=resp.status_code)
        return body

    def client_for(self, access_token: str) -> "SlackClient":
        return SlackClient(self, access_token)

    async def refresh_credential(self, refresh_token: str) -> RefreshResult:
        if not self.client_id or not self.client_secret:
            raise RefreshFailedError("Slack OAuth credentials not configured",
                                     code="oauth_not_configured")
        try:
            body = await self.call("oauth.v2.access", data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            })
        except RemoteSendFailedError as e:
            raise RefreshFailedError(f"Token refresh failed: {e.code}", code=e.code) from e

        access_token = body.get("access_token")
        if not access_token:
            raise RefreshFailedError("Token refresh returned no access token")

        expires_in = body.get("expires_in")
        expires_at = self._clock() + timedelta(seconds=int(expires_in)) if expires_in else None
        return RefreshResult(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or None,
            expires_at=expires_at,
        )

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


class SlackClient(WorkspaceClient):
    """Slack Web API calls made on behalf of one access token."""

    def __init__(self, api: SlackWebApi, access_token: str):
        self._api = api
        self._token = access_token

    async def send_message(self, channel: str, text: str) -> SendResult:
        body = await self._api.call(
            "chat.postMessage", token=self._token, json={"channel": channel, "text": text},
        )
        ts = body.get("ts")
        if not ts:
            raise RemoteSendFailedError("invalid_response")
        return SendResult(channel=body.get("channel") or channel, remote_ts=ts)

    @retry(
        retry=retry_if_exception(_is_network_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def list_channels(self) -> list[dict[str, Any]]:
        body = await self._api.call(
            "conversations.list",
            token=self._token,
            http_method="GET",
            params={
                "types": "public_channel,private_channel",
                "exclude_archived": "true",
                "limit": 100,
            },
        )
        return [
            {"id": c["id"], "name": c.get("name", ""), "is_private": bool(c.get("is_private", False))}
            for c in body.get("channels") or []
        ]
