"""
Authenticated Client Cache — (workspace, user) → live WorkspaceClient.

Resolution:
    cache hit                     → cached client, no freshness re-check
    no credential                 → None
    expired, no refresh token     → None (credential untouched)
    expired, refresh token        → refresh, persist, build client
    refresh refused               → None for this call (credential untouched)

Credentials are validated when a client is admitted to the cache. A refresh
evicts the entry so the next resolution rebuilds against the new token.

Concurrency:
    Each key has its own asyncio.Lock covering construction, refresh and
    eviction. A resolution that read the credential before a disconnect
    finishes caching first, and the eviction then removes its client.
    A caller that waited on the lock re-checks the cache first, so an
    expired credential is refreshed once even when the scheduler and a
    "send now" request resolve it at the same moment.

Usage:
    cache = SlackClientCache(store, slack_api, slack_api.client_for)
    client = await cache.resolve_client("T123", "U456")
    await cache.invalidate("T123", "U456")     # on disconnect
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Callable, Optional

from channels.base import (
    ClientFactory, CredentialMissingError, CredentialRefresher,
    RefreshFailedError, WorkspaceClient,
)
from database.store_base import BaseCredentialStore
from models.schemas import CredentialRecord

logger = structlog.get_logger()

CacheKey = tuple[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SlackClientCache:

    def __init__(
        self,
        store: BaseCredentialStore,
        refresher: CredentialRefresher,
        client_factory: ClientFactory,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._refresher = refresher
        self._client_factory = client_factory
        self._clock = clock
        self._clients: dict[CacheKey, WorkspaceClient] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}

    def _lock_for(self, key: CacheKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._clients

    def __len__(self) -> int:
        return len(self._clients)

    # ── Resolution ────────────────────────────────────────────

    async def resolve_client(self, workspace_id: str, user_id: str) -> Optional[WorkspaceClient]:
        key = (workspace_id, user_id)
        client = self._clients.get(key)
        if client is not None:
            return client

        async with self._lock_for(key):
            client = self._clients.get(key)
            if client is not None:
                return client

            record = await self._store.get_credential(workspace_id, user_id)
            if record is None:
                logger.info("credential_missing", workspace_id=workspace_id, user_id=user_id)
                return None

            if record.is_expired(self._clock()):
                if not record.refresh_token:
                    logger.info("credential_expired_no_refresh",
                                workspace_id=workspace_id, user_id=user_id)
                    return None
                try:
                    record = await self._refresh_locked(record)
                except (RefreshFailedError, CredentialMissingError) as e:
                    logger.warning("credential_refresh_failed",
                                   workspace_id=workspace_id, user_id=user_id,
                                   error=str(e), code=e.code)
                    return None

            client = self._client_factory(record.access_token)
            self._clients[key] = client
            logger.debug("client_cached", workspace_id=workspace_id, user_id=user_id)
            return client

    # ── Refresh ───────────────────────────────────────────────

    async def refresh(self, workspace_id: str, user_id: str) -> CredentialRecord:
        """
        Force a refresh of the stored credential.

        Raises CredentialMissingError when there is no record or no refresh
        token, RefreshFailedError when the exchange is refused.
        """
        async with self._lock_for((workspace_id, user_id)):
            record = await self._store.get_credential(workspace_id, user_id)
            if record is None or not record.refresh_token:
                raise CredentialMissingError(workspace_id, user_id)
            return await self._refresh_locked(record)

    async def _refresh_locked(self, record: CredentialRecord) -> CredentialRecord:
        """Exchange, persist, evict. Caller holds the key's lock."""
        try:
            result = await self._refresher.refresh_credential(record.refresh_token)
        except RefreshFailedError:
            raise
        except Exception as e:
            raise RefreshFailedError(f"Token refresh failed: {e}") from e

        updated = await self._store.update_credential(
            record.workspace_id, record.user_id,
            access_token=result.access_token,
            refresh_token=result.refresh_token or record.refresh_token,
            expires_at=result.expires_at,
        )
        self._clients.pop((record.workspace_id, record.user_id), None)
        if updated is None:
            # disconnected while the exchange was in flight
            raise CredentialMissingError(record.workspace_id, record.user_id)

        logger.info("credential_refreshed",
                    workspace_id=record.workspace_id, user_id=record.user_id,
                    expires_at=updated.expires_at.isoformat() if updated.expires_at else None,
                    rotated=bool(result.refresh_token))
        return updated

    # ── Eviction ──────────────────────────────────────────────

    async def invalidate(self, workspace_id: str, user_id: str) -> None:
        """Drop the cached client. Never touches the credential store."""
        key = (workspace_id, user_id)
        async with self._lock_for(key):
            evicted = self._clients.pop(key, None) is not None
        if evicted:
            logger.info("client_invalidated", workspace_id=workspace_id, user_id=user_id)

    def clear(self) -> None:
        self._clients.clear()
