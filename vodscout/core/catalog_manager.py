"""
Catalog Manager
Fans catalog searches out to every enabled site with deadlines, caching and circuit breaking
"""
from typing import Dict, Generic, Hashable, List, Optional, Tuple, TypeVar
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED, TimeoutError as FutureTimeoutError
from collections import OrderedDict
import logging
import threading
import time

from ..models.candidate import Candidate
from ..sources.base import BaseCatalogSource
from .event_bus import EventBus, Events

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

# (candidates, warning, attempts, latency_ms, ok)
SiteOutcome = Tuple[List[Candidate], Optional[str], int, float, bool]


class TTLCache(Generic[K, V]):
    """Least-recently-used query cache whose entries expire after ttl_seconds"""

    def __init__(self, max_size=100, ttl_seconds=300, clock=None):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: OrderedDict = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                self._entries.pop(key, None)
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: K, value: V):
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self):
        with self._lock:
            self._entries.clear()


@dataclass
class SourceHealth:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_error: str = ""
    last_latency_ms: float = 0.0
    last_attempt_at: float = 0.0
    last_success_at: float = 0.0
    cooldown_until: float = 0.0
    circuit_open: bool = False
    skipped_due_circuit: int = 0


class CatalogManager:
    """
    The search / fetch_detail collaborator used by the resolver.

    A transport failure at one site only costs that site's results; the
    failure is recorded in its health and the rest of the batch is returned.
    """

    def __init__(self, event_bus: Optional[EventBus] = None, reliability: Optional[Dict] = None,
                 cache: Optional[TTLCache] = None):
        self.event_bus = event_bus or EventBus()
        self._sources: Dict[str, BaseCatalogSource] = {}
        self._enabled: Dict[str, bool] = {}
        self._health: Dict[str, SourceHealth] = {}
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=10, thread_name_prefix="catalog")

        reliability = reliability or {}
        self._max_retries = int(reliability.get("max_retries", 0))
        self._retry_backoff_seconds = float(reliability.get("retry_backoff_seconds", 0.5))
        self._circuit_failure_threshold = int(reliability.get("circuit_failure_threshold", 3))
        self._circuit_cooldown_seconds = float(reliability.get("circuit_cooldown_seconds", 120.0))
        self._search_timeout_seconds = float(reliability.get("search_timeout_seconds", 12.0))
        self._detail_timeout_seconds = float(reliability.get("detail_timeout_seconds", 10.0))
        self._cache: TTLCache = cache if cache is not None else TTLCache(
            max_size=int(reliability.get("cache_max_entries", 100)),
            ttl_seconds=float(reliability.get("cache_ttl_seconds", 300.0)),
        )

    @classmethod
    def from_settings(cls, settings, event_bus: Optional[EventBus] = None) -> "CatalogManager":
        def number(key, default, cast=float):
            return cast(settings.get(key, default) or default)

        return cls(event_bus, reliability={
            "max_retries": number("catalog_max_retries", 0, int),
            "retry_backoff_seconds": number("catalog_retry_backoff_seconds", 0.5),
            "circuit_failure_threshold": number("catalog_circuit_failure_threshold", 3, int),
            "circuit_cooldown_seconds": number("catalog_circuit_cooldown_seconds", 120.0),
            "search_timeout_seconds": number("catalog_search_timeout_seconds", 12.0),
            "detail_timeout_seconds": number("catalog_detail_timeout_seconds", 10.0),
            "cache_ttl_seconds": number("catalog_cache_ttl_seconds", 300.0),
            "cache_max_entries": number("catalog_cache_max_entries", 100, int),
        })

    def register(self, source):
        """Add a catalog site; it starts enabled"""
        if not isinstance(source, BaseCatalogSource):
            raise TypeError(f"register() expects a BaseCatalogSource, got {type(source).__name__}")
        if not getattr(source, "key", ""):
            raise ValueError("Catalog source must define a non-empty 'key'.")
        with self._lock:
            self._sources[source.key] = source
            self._enabled[source.key] = True
            self._health.setdefault(source.key, SourceHealth())

    def enable_source(self, source_key: str, enabled: bool = True):
        with self._lock:
            if source_key in self._enabled:
                self._enabled[source_key] = enabled
            self._cache.clear()

    def get_enabled_sources(self) -> List[str]:
        """Enabled source keys in registration order"""
        with self._lock:
            return [key for key, enabled in self._enabled.items() if enabled]

    def get_source_keys(self) -> List[str]:
        with self._lock:
            return list(self._sources)

    def get_source_health_snapshot(self) -> Dict[str, Dict]:
        with self._lock:
            now = time.time()
            return {
                key: {
                    "name": getattr(self._sources.get(key), "name", key),
                    "enabled": bool(self._enabled.get(key, False)),
                    "attempts": h.attempts,
                    "successes": h.successes,
                    "failures": h.failures,
                    "consecutive_failures": h.consecutive_failures,
                    "last_error": h.last_error,
                    "last_latency_ms": round(h.last_latency_ms, 2),
                    "last_attempt_at": h.last_attempt_at,
                    "last_success_at": h.last_success_at,
                    "circuit_open": h.circuit_open and now < h.cooldown_until,
                    "cooldown_until": h.cooldown_until,
                    "skipped_due_circuit": h.skipped_due_circuit,
                }
                for key, h in self._health.items()
            }

    def reload_from_settings(self):
        """Re-read per-site settings and drop cached searches"""
        with self._lock:
            sources = list(self._sources.values())
            self._cache.clear()
        for source in sources:
            try:
                source.reload_from_settings()
            except Exception as exc:
                logger.warning("Reloading catalog site %s failed: %s", source.key, exc)
        self.event_bus.emit(Events.SOURCES_RELOADED, {"sources": [s.key for s in sources]})

    def search(self, query: str) -> List[Candidate]:
        """
        Concurrent multi-site search.

        Results are concatenated in registration order, so identical upstream
        answers always produce identical output. Sites that miss the deadline
        are skipped and recorded as failures.
        """
        query = (query or "").strip()
        if not query:
            return []

        cached = self._cache.get(query)
        if cached is not None:
            return list(cached)

        self.event_bus.emit(Events.SEARCH_STARTED, {"query": query})
        warnings: Dict[str, str] = {}
        futures = self._submit_searches(query, warnings)

        per_site: Dict[str, List[Candidate]] = {}
        any_ok = False
        if futures:
            per_site, any_ok = self._gather(futures, warnings)

        results: List[Candidate] = []
        for source_key in futures.values():
            results.extend(per_site.get(source_key, []))

        # Transport-only failures should be retried by the next caller.
        if any_ok:
            self._cache.set(query, list(results))

        self.event_bus.emit(Events.SEARCH_COMPLETED, {
            "query": query,
            "count": len(results),
            "source_warnings": warnings,
        })
        return results

    def _submit_searches(self, query: str, warnings: Dict[str, str]) -> Dict:
        """Submit one search per enabled site whose circuit allows it; insertion order is registration order"""
        futures = {}
        with self._lock:
            for source_key in self.get_enabled_sources():
                reason = self._source_block_reason(source_key)
                if reason:
                    warnings[source_key] = reason
                    continue
                futures[self._executor.submit(self._safe_search, self._sources[source_key], query)] = source_key
        return futures

    def _gather(self, futures: Dict, warnings: Dict[str, str]) -> Tuple[Dict[str, List[Candidate]], bool]:
        per_site: Dict[str, List[Candidate]] = {}
        any_ok = False
        total = len(futures)
        pending = set(futures)
        deadline = time.monotonic() + max(1.0, self._search_timeout_seconds)

        while pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            done, pending = wait(pending, timeout=min(0.25, remaining), return_when=FIRST_COMPLETED)
            for future in done:
                source_key = futures[future]
                candidates, warning, attempts, latency_ms, ok = future.result()
                per_site[source_key] = candidates
                any_ok = any_ok or ok
                if warning:
                    warnings[source_key] = warning
                self._record_source_outcome(source_key, ok, warning or "", latency_ms, attempts)
                self.event_bus.emit(Events.SEARCH_PROGRESS, {
                    "completed": len(per_site),
                    "total": total,
                    "source": source_key,
                    "warning": warnings.get(source_key, ""),
                })

        for future in pending:
            source_key = futures[future]
            future.cancel()
            message = f"{source_key} timed out after {self._search_timeout_seconds:g}s; its results were skipped."
            warnings[source_key] = message
            self._record_source_outcome(source_key, False, message, 0.0, 1)
        return per_site, any_ok

    def fetch_detail(self, source_key: str, item_id: str) -> Optional[Candidate]:
        """Exact lookup at one site, bounded by the detail timeout; None on any failure"""
        with self._lock:
            source = self._sources.get(source_key)
        if source is None:
            logger.warning("Detail requested for unknown source %s", source_key)
            return None

        started = time.perf_counter()
        future = self._executor.submit(source.fetch_detail, item_id)
        try:
            candidate = future.result(timeout=max(1.0, self._detail_timeout_seconds))
        except FutureTimeoutError:
            future.cancel()
            message = f"{source_key} detail timed out after {self._detail_timeout_seconds:g}s"
            logger.warning(message)
            self._record_source_outcome(source_key, False, message, 0.0, 1)
            return None
        except Exception as exc:
            logger.warning("Detail fetch from %s failed: %s", source_key, exc)
            self._record_source_outcome(source_key, False, str(exc), self._elapsed_ms(started), 1)
            return None
        self._record_source_outcome(source_key, True, "", self._elapsed_ms(started), 1)
        return candidate

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.perf_counter() - started) * 1000.0

    def _safe_search(self, source: BaseCatalogSource, query: str) -> SiteOutcome:
        """One site search with exponential backoff between retries; never raises"""
        warning = ""
        latency_ms = 0.0
        attempt = 0
        while True:
            attempt += 1
            started = time.perf_counter()
            try:
                candidates = list(source.search(query))
            except Exception as exc:
                latency_ms = self._elapsed_ms(started)
                warning = str(exc)
                logger.warning("Catalog search error in %s: %s", source.key, exc)
            else:
                latency_ms = self._elapsed_ms(started)
                warning = getattr(source, "last_error", "") or ""
                # A site that reports an error but still returned rows counts as a success.
                if candidates or not warning:
                    return candidates, (warning or None), attempt, latency_ms, True
            if attempt > self._max_retries:
                return [], (warning or None), attempt, latency_ms, False
            time.sleep(self._retry_backoff_seconds * (2 ** (attempt - 1)))

    def _source_block_reason(self, source_key: str) -> str:
        h = self._health.get(source_key)
        if h is None or not h.circuit_open:
            return ""
        now = time.time()
        if now < h.cooldown_until:
            h.skipped_due_circuit += 1
            return f"Circuit open after failures; retrying automatically in {int(max(1, h.cooldown_until - now))}s."
        # Cooldown over: let one half-open attempt through.
        h.circuit_open = False
        h.consecutive_failures = 0
        h.cooldown_until = 0.0
        return ""

    def _record_source_outcome(self, source_key: str, ok: bool, error_message: str, latency_ms: float, attempts: int):
        with self._lock:
            h = self._health.setdefault(source_key, SourceHealth())
            now = time.time()
            h.attempts += max(1, attempts)
            h.last_attempt_at = now
            h.last_latency_ms = float(latency_ms or 0.0)
            if ok:
                h.successes += 1
                h.last_success_at = now
                h.consecutive_failures = 0
                h.last_error = ""
                h.circuit_open = False
                h.cooldown_until = 0.0
                return
            h.failures += 1
            h.consecutive_failures += 1
            h.last_error = error_message
            if h.consecutive_failures >= self._circuit_failure_threshold:
                h.circuit_open = True
                h.cooldown_until = now + self._circuit_cooldown_seconds

    def shutdown(self):
        self._executor.shutdown(wait=False)
