"""Runtime bootstrap for the vodscout web API."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from ..core.catalog_manager import CatalogManager
from ..core.event_bus import EventBus, Events
from ..core.rate_limiter import RateLimiter
from ..core.resolver import ResolutionOrchestrator
from ..core.settings_manager import SettingsManager
from ..core.source_prober import SourceProber
from ..services.stream_prober import StreamProber
from ..sources.apple_cms import AppleCmsSource

logger = logging.getLogger(__name__)


@dataclass
class VodscoutRuntime:
    """Shared service graph used by web endpoints."""

    settings: SettingsManager
    event_bus: EventBus
    rate_limiter: RateLimiter
    catalog: CatalogManager
    stream_prober: StreamProber
    source_prober: SourceProber
    resolver: ResolutionOrchestrator


def build_runtime(settings: SettingsManager | None = None) -> VodscoutRuntime:
    """Create and wire core services from persisted settings."""

    if settings is None:
        event_bus = EventBus()
        settings = SettingsManager(event_bus=event_bus)
    else:
        event_bus = getattr(settings, "event_bus", None) or EventBus()
    rate_limiter = RateLimiter(
        min_interval_seconds=float(settings.get("catalog_min_request_interval_seconds", 0.8) or 0.0),
        max_per_minute=int(settings.get("catalog_max_requests_per_minute", 30) or 30),
    )
    catalog = CatalogManager.from_settings(settings, event_bus)

    for site in settings.get("api_sites", []) or []:
        try:
            catalog.register(AppleCmsSource(site, settings, rate_limiter=rate_limiter))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping catalog site %r: %s", site.get("key") if isinstance(site, dict) else site, exc)
            continue
        if site.get("disabled"):
            catalog.enable_source(str(site.get("key")), False)

    stream_prober = StreamProber()
    source_prober = SourceProber(stream_prober, settings=settings, event_bus=event_bus)
    resolver = ResolutionOrchestrator(catalog, source_prober, event_bus=event_bus, settings=settings)

    def on_settings_changed(_changed):
        source_prober.reload_from_settings()
        catalog.reload_from_settings()

    event_bus.subscribe(Events.SETTINGS_CHANGED, on_settings_changed)

    return VodscoutRuntime(
        settings=settings,
        event_bus=event_bus,
        rate_limiter=rate_limiter,
        catalog=catalog,
        stream_prober=stream_prober,
        source_prober=source_prober,
        resolver=resolver,
    )
