"""
Source Prober
Measures candidate sources under a device-tier specific strategy
"""
from typing import Callable, Dict, List, Optional, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
import logging
import threading
import time

from ..models.candidate import Candidate, Measurement
from ..services.stream_prober import ProbeMode, ProbeReport, quality_from_resolution
from .device_profiler import DeviceTier
from .event_bus import EventBus, Events

logger = logging.getLogger(__name__)

MAX_FULL_PROBE_CONCURRENCY = 2


def _bounded(seconds: float, deadline: Optional[float]) -> float:
    """seconds, cut down to what is left before deadline (never negative)"""
    if deadline is None:
        return seconds
    return max(0.0, min(seconds, deadline - time.monotonic()))


class SourceProber:
    """
    Produces exactly one Measurement per candidate, keyed by Candidate.key.

    - constrained: no network at all, static ranking by source name
    - mobile: one HEAD per candidate, all in parallel, short timeout
    - desktop: partial reads in batches of at most two, with a pause between
      batches so earlier streams can release their resources

    An optional time_budget (seconds) caps the whole call: once it is spent
    no new requests start and unmeasured candidates get the sentinel.

    A failing or hung probe becomes Measurement.unreachable(); probe() itself
    never raises.
    """

    def __init__(self, prober, settings=None, event_bus: Optional[EventBus] = None,
                 sleeper: Optional[Callable[[float], None]] = None):
        self.prober = prober
        self.settings = settings
        self.event_bus = event_bus
        self._sleep = sleeper or time.sleep
        self.source_preference: List[str] = []
        self.lightweight_timeout = 3.0
        self.full_timeout = 12.0
        self.full_concurrency = MAX_FULL_PROBE_CONCURRENCY
        self.batch_pause = 0.5
        self.max_bytes = 1024 * 1024
        self.reload_from_settings()

    def reload_from_settings(self) -> None:
        get = self.settings.get if self.settings is not None else (lambda key, default=None: default)
        preference = get("source_preference", None)
        if not isinstance(preference, list) or not preference:
            preference = ["ok", "niuhu", "ying", "wasu", "mgtv", "iqiyi", "youku", "qq"]
        self.source_preference = [str(p).strip().lower() for p in preference if str(p or "").strip()]
        self.lightweight_timeout = float(get("lightweight_probe_timeout_seconds", 3.0) or 3.0)
        self.full_timeout = float(get("full_probe_timeout_seconds", 12.0) or 12.0)
        concurrency = int(get("full_probe_concurrency", MAX_FULL_PROBE_CONCURRENCY) or MAX_FULL_PROBE_CONCURRENCY)
        # Stricter limits are allowed, looser ones are not.
        self.full_concurrency = max(1, min(MAX_FULL_PROBE_CONCURRENCY, concurrency))
        self.batch_pause = max(0.0, float(get("full_probe_batch_pause_seconds", 0.5) or 0.0))
        self.max_bytes = max(1, int(get("full_probe_max_bytes", 1024 * 1024) or 1024 * 1024))

    def probe(self, candidates: Sequence[Candidate], tier: str,
              time_budget: Optional[float] = None) -> Dict[str, Measurement]:
        candidates = list(candidates)
        if not candidates:
            return {}
        deadline = time.monotonic() + max(0.0, time_budget) if time_budget is not None else None
        if tier == DeviceTier.CONSTRAINED:
            logger.info("Constrained device: ranking %d sources without network probes", len(candidates))
            result = self._static_rank(candidates)
        elif tier == DeviceTier.MOBILE:
            logger.info("Mobile device: lightweight reachability probes for %d sources", len(candidates))
            result = self._lightweight_probe(candidates, deadline)
        else:
            logger.info("Desktop device: full probes for %d sources", len(candidates))
            result = self._full_probe(candidates, deadline)

        if self.event_bus is not None:
            self.event_bus.emit(Events.PROBE_COMPLETED, {
                "tier": tier,
                "total": len(candidates),
                "available": sum(1 for m in result.values() if m.available),
            })
        return result

    # Constrained

    def preference_index(self, candidate: Candidate) -> int:
        name = (candidate.source_name or "").lower()
        for index, token in enumerate(self.source_preference):
            if token in name:
                return index
        return len(self.source_preference)

    def static_order(self, candidates: Sequence[Candidate]) -> List[Candidate]:
        """Known-good sources first; unmatched ones keep their input order"""
        return sorted(candidates, key=self.preference_index)

    def _static_rank(self, candidates: List[Candidate]) -> Dict[str, Measurement]:
        ordered = self.static_order(candidates)
        logger.debug("Static preference order: %s", [c.source_name for c in ordered])
        return {c.key: Measurement(ping_ms=0, available=True) for c in ordered}

    # Mobile

    def _lightweight_probe(self, candidates: List[Candidate], deadline: Optional[float] = None) -> Dict[str, Measurement]:
        slots: List[Optional[Measurement]] = [None] * len(candidates)

        def run(index: int, candidate: Candidate):
            slots[index] = self._lightweight_one(candidate)
            self._emit_progress(candidate, slots[index])

        executor = ThreadPoolExecutor(max_workers=len(candidates))
        try:
            futures = [executor.submit(run, i, c) for i, c in enumerate(candidates)]
            # Small grace on top of the request timeout for thread scheduling.
            wait(futures, timeout=_bounded(self.lightweight_timeout + 0.5, deadline))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return self._collect(candidates, slots)

    def _lightweight_one(self, candidate: Candidate) -> Measurement:
        url = candidate.probe_url
        if not url:
            return Measurement.unreachable()
        try:
            report: ProbeReport = self.prober.probe_url(url, ProbeMode.HEAD, timeout=self.lightweight_timeout)
        except Exception as exc:
            logger.warning("Lightweight probe failed for %s: %s", candidate.source_name, exc)
            return Measurement.unreachable()
        if not report.reachable:
            logger.warning("Lightweight probe failed for %s: %s", candidate.source_name, report.error)
            return Measurement.unreachable()
        return Measurement(ping_ms=int(round(report.latency_ms)), available=True)

    # Desktop

    def _full_probe(self, candidates: List[Candidate], deadline: Optional[float] = None) -> Dict[str, Measurement]:
        slots: List[Optional[Measurement]] = [None] * len(candidates)
        # Shared across batches: an abandoned probe keeps its slot until it really ends.
        in_flight = threading.BoundedSemaphore(self.full_concurrency)
        executor = ThreadPoolExecutor(max_workers=self.full_concurrency)
        batch_count = (len(candidates) + self.full_concurrency - 1) // self.full_concurrency

        def run(index: int, candidate: Candidate):
            if not in_flight.acquire(timeout=self.full_timeout):
                logger.warning("No probe slot freed up in time for %s", candidate.source_name)
                slots[index] = Measurement.unreachable()
                return
            try:
                slots[index] = self._full_one(candidate)
            finally:
                in_flight.release()
            self._emit_progress(candidate, slots[index])

        try:
            for start in range(0, len(candidates), self.full_concurrency):
                if _bounded(self.full_timeout, deadline) <= 0:
                    logger.warning(
                        "Probe time budget spent; %d sources left unmeasured", len(candidates) - start,
                    )
                    break
                batch = list(enumerate(candidates))[start:start + self.full_concurrency]
                logger.info(
                    "Probe batch %d/%d: %d sources",
                    start // self.full_concurrency + 1, batch_count, len(batch),
                )
                futures = [executor.submit(run, i, c) for i, c in batch]
                _, not_done = wait(futures, timeout=_bounded(self.full_timeout + 0.5, deadline))
                for future in not_done:
                    future.cancel()
                if not_done:
                    # The worker thread is stuck; move on without it.
                    executor.shutdown(wait=False, cancel_futures=True)
                    executor = ThreadPoolExecutor(max_workers=self.full_concurrency)
                pause = _bounded(self.batch_pause, deadline)
                if start + self.full_concurrency < len(candidates) and pause > 0:
                    self._sleep(pause)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return self._collect(candidates, slots)

    def _full_one(self, candidate: Candidate) -> Measurement:
        url = candidate.probe_url
        if not url:
            return Measurement.unreachable()
        try:
            report: ProbeReport = self.prober.probe_url(
                url, ProbeMode.PARTIAL, timeout=self.full_timeout, max_bytes=self.max_bytes,
            )
        except Exception as exc:
            logger.warning("Probe failed for %s: %s", candidate.source_name, exc)
            return Measurement.unreachable()
        if not report.reachable:
            logger.warning("Probe failed for %s: %s", candidate.source_name, report.error)
            return Measurement.unreachable()

        speed = report.speed_kbps
        return Measurement(
            ping_ms=int(round(report.latency_ms)),
            available=True,
            quality=quality_from_resolution(report.resolution),
            load_speed=Measurement.format_speed(speed) if speed else "unknown",
        )

    # Helpers

    def _emit_progress(self, candidate: Candidate, measurement: Optional[Measurement]):
        if self.event_bus is None or measurement is None:
            return
        self.event_bus.emit(Events.PROBE_PROGRESS, {
            "key": candidate.key,
            "source": candidate.source,
            "measurement": measurement.to_dict(),
        })

    @staticmethod
    def _collect(candidates: List[Candidate], slots: List[Optional[Measurement]]) -> Dict[str, Measurement]:
        """Every candidate gets an entry; empty slots (timed out) become the sentinel"""
        out: Dict[str, Measurement] = {}
        for candidate, measurement in zip(candidates, slots):
            out[candidate.key] = measurement if measurement is not None else Measurement.unreachable()
        return out
