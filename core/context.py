"""
Service context — builds and owns every long-lived object in the process.

The route layer and the scheduler share one store, one Slack HTTP session and
one client cache through this object; nothing is a module global, so tests
build isolated instances.

Usage:
    services = await build_services(get_settings())
    await services.start()
    ...
    await services.aclose()
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from channels.base import ClientFactory, CredentialRefresher
from channels.client_cache import SlackClientCache
from channels.slack_client import SlackWebApi
from config.settings import Settings
from core.messaging import MessagingService
from database.store_base import BaseStore
from database.store_factory import open_store
from delivery.engine import DeliveryEngine
from delivery.scheduler import SchedulerLoop

logger = structlog.get_logger()


@dataclass
class ServiceContext:
    settings: Settings
    store: BaseStore
    client_cache: SlackClientCache
    engine: DeliveryEngine
    scheduler: SchedulerLoop
    messaging: MessagingService
    slack_api: Optional[SlackWebApi] = None

    async def start(self) -> None:
        if self.settings.scheduler.enabled:
            await self.scheduler.start()
        logger.info("services_started", app=self.settings.app_name,
                    store=type(self.store).__name__,
                    scheduler_enabled=self.settings.scheduler.enabled)

    async def aclose(self) -> None:
        await self.scheduler.stop()
        self.client_cache.clear()
        if self.slack_api is not None:
            await self.slack_api.aclose()
        await self.store.close()
        logger.info("services_stopped")


async def build_services(
    settings: Settings,
    store: Optional[BaseStore] = None,
    refresher: Optional[CredentialRefresher] = None,
    client_factory: Optional[ClientFactory] = None,
) -> ServiceContext:
    """
    Wire the application. `store`, `refresher` and `client_factory` override
    the configured backends (tests pass fakes here).
    """
    if store is None:
        store = await open_store({
            "store_backend": settings.database.store_backend,
            "store_file_dir": settings.database.store_file_dir,
            "url": settings.database.url,
            "echo": settings.debug,
        })

    slack_api = None
    if refresher is None or client_factory is None:
        slack_api = SlackWebApi(
            client_id=settings.slack.client_id,
            client_secret=settings.slack.client_secret,
            base_url=settings.slack.api_base_url,
            timeout_s=settings.slack.timeout_s,
        )
        refresher = refresher or slack_api
        client_factory = client_factory or slack_api.client_for

    client_cache = SlackClientCache(store, refresher, client_factory)
    engine = DeliveryEngine(store, client_cache)
    scheduler = SchedulerLoop(
        store, engine,
        interval_s=settings.scheduler.interval_seconds,
        concurrency=settings.scheduler.concurrency,
        shutdown_grace_s=settings.scheduler.shutdown_grace_seconds,
    )
    messaging = MessagingService(
        store, client_cache, engine,
        max_message_length=settings.max_message_length,
    )
    return ServiceContext(
        settings=settings,
        store=store,
        client_cache=client_cache,
        engine=engine,
        scheduler=scheduler,
        messaging=messaging,
        slack_api=slack_api,
    )
