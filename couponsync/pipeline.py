"""Explicit construction of the synchronization pipeline and its collaborators."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .brands import BrandResolver, BrandUpdater
from .config import SyncConfig
from .content_store import ContentStore, SqlContentStore
from .enrichment import ChatCompletionProvider, ContentEnricher
from .locks import LockManager
from .notifications import SyncNotifier, build_notifier
from .processor import ChunkProcessor, ChunkScheduler
from .rate_limit import RateLimiter
from .scheduler import SchedulerGate
from .shortener import YourlsShortener
from .sources import AddRevenueFetcher, AwinFetcher
from .state import SyncStateStore

LOGGER = logging.getLogger(__name__)


def create_session_factory(db_url: str, *, engine_options: dict | None = None, create_tables: bool = True):
    engine = create_engine(db_url, **(engine_options or {}))
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@dataclass(slots=True)
class SyncPipeline:
    config: SyncConfig
    store: SyncStateStore
    locks: LockManager
    gate: SchedulerGate
    content_store: ContentStore
    enricher: ContentEnricher
    processor: ChunkProcessor
    notifier: SyncNotifier
    addrevenue: AddRevenueFetcher
    awin: AwinFetcher
    provider: ChatCompletionProvider
    shortener: YourlsShortener | None = None

    def close(self) -> None:
        self.addrevenue.close()
        self.awin.close()
        self.provider.close()
        if self.shortener is not None:
            self.shortener.close()

    def __enter__(self) -> "SyncPipeline":  # pragma: no cover - convenience wrapper
        return self

    def __exit__(self, *_exc_info) -> None:  # pragma: no cover - convenience wrapper
        self.close()


def build_pipeline(
    config: SyncConfig,
    session_factory,
    scheduler: ChunkScheduler,
    *,
    transport: httpx.BaseTransport | None = None,
    content_store: ContentStore | None = None,
    notifier: SyncNotifier | None = None,
    clock: Callable[[], datetime] | None = None,
    rate_limiter: RateLimiter | None = None,
    rng: random.Random | None = None,
) -> SyncPipeline:
    """Wire every collaborator explicitly; nothing is looked up by name later."""

    store = SyncStateStore(session_factory)
    locks = LockManager(
        session_factory,
        stale_after=timedelta(seconds=config.schedule.lock_stale_after_seconds),
    )
    gate = SchedulerGate(store, locks, config.schedule)
    content_store = content_store or SqlContentStore(session_factory)
    notifier = notifier or build_notifier(config.notifications, store)

    timeout = config.timeout.request_timeout
    addrevenue = AddRevenueFetcher(
        config.addrevenue,
        user_agent=config.user_agent,
        timeout=timeout,
        transport=transport,
    )
    awin = AwinFetcher(
        config.awin,
        rate_limiter=rate_limiter or RateLimiter(config.awin.rate_limit),
        user_agent=config.user_agent,
        timeout=timeout,
        transport=transport,
    )
    provider = ChatCompletionProvider(
        config.enrichment,
        user_agent=config.user_agent,
        timeout=config.timeout.enrichment_timeout,
        transport=transport,
    )
    enricher = ContentEnricher(provider, store, config.enrichment, clock=clock, rng=rng)

    shortener = None
    if config.shortener.is_configured():
        shortener = YourlsShortener(
            config.shortener,
            user_agent=config.user_agent,
            timeout=timeout,
            transport=transport,
        )

    resolver = BrandResolver(
        content_store,
        notifier,
        similarity_threshold=config.brand_match.similarity_threshold,
    )
    brand_updater = BrandUpdater(content_store, enricher, shortener)

    processor = ChunkProcessor(
        config=config,
        gate=gate,
        locks=locks,
        store=store,
        addrevenue=addrevenue,
        awin=awin,
        resolver=resolver,
        brand_updater=brand_updater,
        enricher=enricher,
        content_store=content_store,
        notifier=notifier,
        scheduler=scheduler,
        clock=clock,
    )
    return SyncPipeline(
        config=config,
        store=store,
        locks=locks,
        gate=gate,
        content_store=content_store,
        enricher=enricher,
        processor=processor,
        notifier=notifier,
        addrevenue=addrevenue,
        awin=awin,
        provider=provider,
        shortener=shortener,
    )


__all__ = ["SyncPipeline", "build_pipeline", "create_session_factory"]
