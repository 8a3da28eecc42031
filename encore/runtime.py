"""Composition root wiring the pipeline components together."""

from __future__ import annotations

from dataclasses import dataclass
import random

import httpx

from encore.config import SETLISTFM, SPOTIFY, TICKETMASTER, AppConfig, config_summary, load_config
from encore.integrations.contracts import CatalogProvider, EventsProvider, SetlistProvider
from encore.integrations.guard import ProviderGuard, build_provider_guards
from encore.integrations.setlistfm import SetlistFmClient
from encore.integrations.spotify import SpotifyCatalogClient
from encore.integrations.ticketmaster import TicketmasterClient
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.orchestrator.deps import StageDeps
from encore.orchestrator.importer import ImportOrchestrator
from encore.orchestrator.progress import ProgressTracker
from encore.services.cache import ResponseCache
from encore.services.entity_store import EntityStore
from encore.workers.job_store import JobStore
from encore.workers.registry import QueueRegistry

logger = get_logger(__name__)


@dataclass(slots=True)
class EncoreRuntime:
    """Container for the long-lived pipeline components."""

    config: AppConfig
    store: JobStore
    registry: QueueRegistry
    entities: EntityStore
    tracker: ProgressTracker
    cache: ResponseCache
    guards: dict[str, ProviderGuard]
    orchestrator: ImportOrchestrator

    def start_workers(self) -> bool:
        if not self.config.workers.enabled:
            log_event(logger, "worker.registry", component="runtime", status="disabled")
            return False
        self.registry.start()
        return True

    async def close(self, *, timeout: float = 10.0) -> None:
        await self.registry.close(timeout=timeout)


def build_runtime(
    config: AppConfig | None = None,
    *,
    catalog: CatalogProvider | None = None,
    events: EventsProvider | None = None,
    setlists: SetlistProvider | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    cache: ResponseCache | None = None,
    rng: random.Random | None = None,
) -> EncoreRuntime:
    """Initialise the pipeline from ``config``.

    Providers default to the HTTP adapters; tests pass stubs or an
    ``httpx.MockTransport``. The historical-setlist adapter is only built
    when an API key is configured.
    """

    resolved = config or load_config()
    guards = build_provider_guards(resolved)
    if catalog is None:
        catalog = SpotifyCatalogClient(
            resolved.provider(SPOTIFY), guard=guards[SPOTIFY], transport=transport
        )
    if events is None:
        events = TicketmasterClient(
            resolved.provider(TICKETMASTER), guard=guards[TICKETMASTER], transport=transport
        )
    if setlists is None and resolved.provider(SETLISTFM).api_key:
        setlists = SetlistFmClient(
            resolved.provider(SETLISTFM), guard=guards[SETLISTFM], transport=transport
        )

    store = JobStore()
    registry = QueueRegistry(resolved, store, rng=rng)
    entities = EntityStore()
    tracker = ProgressTracker()
    response_cache = cache if cache is not None else ResponseCache()
    deps = StageDeps(
        config=resolved,
        registry=registry,
        entities=entities,
        tracker=tracker,
        catalog=catalog,
        events=events,
        setlists=setlists,
        cache=response_cache,
    )
    orchestrator = ImportOrchestrator(deps)
    orchestrator.register_handlers()

    log_event(
        logger,
        "config.loaded",
        component="runtime",
        status="ok",
        setlists_enabled=setlists is not None,
        meta=config_summary(resolved),
    )
    return EncoreRuntime(
        config=resolved,
        store=store,
        registry=registry,
        entities=entities,
        tracker=tracker,
        cache=response_cache,
        guards=guards,
        orchestrator=orchestrator,
    )


__all__ = ["EncoreRuntime", "build_runtime"]
