from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx
from starlette.requests import Request

from kindsync.core.config import Settings
from kindsync.core.webhook_auth import WebhookAuthenticator
from kindsync.services.content import ContentRepository, InMemoryContentRepository
from kindsync.services.orchestrator import ImportOrchestrator
from kindsync.services.pending import PendingQueue
from kindsync.services.repository import PostgresContentRepository, PostgresRepository
from kindsync.services.scheduler import StoreScheduler
from kindsync.services.sources import SourceRegistry, build_source_registry
from kindsync.services.store import ImportStore, InMemoryStore
from kindsync.services.upsert import UpsertEngine
from kindsync.services.webhooks import WebhookGateway


@dataclass(slots=True)
class Container:
    settings: Settings
    store: ImportStore
    content: ContentRepository
    sources: SourceRegistry
    engine: UpsertEngine
    orchestrator: ImportOrchestrator
    pending: PendingQueue
    webhooks: WebhookGateway

    async def close(self) -> None:
        await self.store.close()


def build_container(
    settings: Settings,
    *,
    store: ImportStore | None = None,
    content: ContentRepository | None = None,
    sources: SourceRegistry | None = None,
    http_client: httpx.AsyncClient | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Container:
    if store is None:
        if settings.database_url:
            repository = PostgresRepository(
                database_url=settings.database_url,
                min_pool_size=settings.database_pool_min_size,
                max_pool_size=settings.database_pool_max_size,
            )
            store = repository
            content = content or PostgresContentRepository(repository)
        else:
            store = InMemoryStore()
    content = content or InMemoryContentRepository()
    sources = sources or build_source_registry(settings, client=http_client)

    engine = UpsertEngine(content, embed_source=settings.listen_embed_source, clock=clock)
    orchestrator = ImportOrchestrator(
        store=store,
        sources=sources,
        engine=engine,
        scheduler=StoreScheduler(store, clock=clock),
        batch_size=settings.batch_size,
        batch_delay_seconds=settings.batch_delay_seconds,
        lease_seconds=settings.step_lease_seconds,
        retention_days=settings.job_retention_days,
        auto_import_sources=settings.auto_import_sources,
        clock=clock,
    )
    pending = PendingQueue(store, engine, post_status=settings.webhook_post_status, clock=clock)
    authenticator = WebhookAuthenticator(
        store,
        tokens=settings.webhook_tokens,
        hmac_secrets=settings.webhook_hmac_secrets,
        basic_credentials=settings.webhook_basic_credentials,
    )
    webhooks = WebhookGateway(
        store=store,
        authenticator=authenticator,
        engine=engine,
        pending=pending,
        auto_post=settings.webhook_auto_post,
        post_status=settings.webhook_post_status,
        plex_url=settings.plex_url,
        plex_token=settings.plex_token,
        clock=clock,
    )
    return Container(
        settings=settings,
        store=store,
        content=content,
        sources=sources,
        engine=engine,
        orchestrator=orchestrator,
        pending=pending,
        webhooks=webhooks,
    )


def get_container(request: Request) -> Container:
    return request.app.state.container
