"""
Resolution Orchestrator
Turns a title (and optionally a known source/id) into a chosen playable candidate
"""
from typing import Callable, Dict, List, Optional
import logging
import time

from ..models.candidate import Candidate, Measurement, ResolutionRequest, ResolutionResult
from .device_profiler import DeviceProfiler
from .event_bus import EventBus, Events
from .matcher import CandidateMatcher
from .scoring import ScoringEngine
from .variants import VariantGenerator

logger = logging.getLogger(__name__)


class ResolutionError(Exception):
    """Base class for errors surfaced by resolve()"""


class MissingParameters(ResolutionError):
    pass


class NotFound(ResolutionError):
    pass


class Stage:
    SEARCHING = "searching"
    FETCHING = "fetching"
    PREFERRING = "preferring"
    READY = "ready"


class ResolutionOrchestrator:
    """
    Searching -> (fetching) -> (preferring) -> ready.

    Variants are searched in order and iteration stops at the first one whose
    accumulated results contain an exact match, so later variants are never
    sent upstream. Transport failures count as empty results.
    """

    def __init__(
        self,
        catalog,
        source_prober,
        event_bus: Optional[EventBus] = None,
        settings=None,
        variants: Optional[VariantGenerator] = None,
        matcher: Optional[CandidateMatcher] = None,
        profiler: Optional[DeviceProfiler] = None,
        scoring: Optional[ScoringEngine] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.catalog = catalog
        self.source_prober = source_prober
        self.event_bus = event_bus or EventBus()
        self.settings = settings
        self.variants = variants or VariantGenerator()
        self.matcher = matcher or CandidateMatcher()
        self.profiler = profiler or DeviceProfiler()
        self.scoring = scoring or ScoringEngine()
        self._clock = clock or time.monotonic

    def _setting(self, key: str, default):
        if self.settings is None:
            return default
        value = self.settings.get(key, default)
        return default if value is None else value

    def resolve(self, request: ResolutionRequest) -> ResolutionResult:
        if not request.title and not request.has_known_pair:
            raise MissingParameters("Either a title or both source and id are required.")

        self.event_bus.emit(Events.RESOLVE_STARTED, {
            "title": request.title,
            "source": request.known_source,
            "id": request.known_id,
        })
        try:
            result = self._resolve(request)
        except ResolutionError as exc:
            self.event_bus.emit(Events.RESOLVE_FAILED, {"title": request.title, "error": str(exc)})
            raise
        self.event_bus.emit(Events.RESOLVE_COMPLETED, {
            "title": request.title,
            "source": result.chosen.source,
            "id": result.chosen.id,
            "candidates": len(result.candidates),
            "tier": result.tier,
        })
        return result

    def _resolve(self, request: ResolutionRequest) -> ResolutionResult:
        deadline = self._clock() + float(self._setting("resolve_timeout_seconds", 60.0))
        candidates: List[Candidate] = []
        variants_tried: List[str] = []

        if request.title:
            self._stage(Stage.SEARCHING)
            candidates, variants_tried = self.search_candidates(request, deadline)

        if request.has_known_pair:
            wanted_key = f"{request.known_source}-{request.known_id}"
            if not any(c.key == wanted_key for c in candidates):
                self._stage(Stage.FETCHING)
                detail = self._fetch_detail(request.known_source, request.known_id, deadline)
                candidates = [detail] if detail is not None else []

        if not candidates:
            raise NotFound(f"No playable source found for {request.title or request.known_id!r}.")

        if request.has_known_pair and not request.prefer_best:
            wanted_key = f"{request.known_source}-{request.known_id}"
            chosen = next((c for c in candidates if c.key == wanted_key), None)
            if chosen is None:
                raise NotFound(f"{request.known_source} has no item {request.known_id!r}.")
            self._stage(Stage.READY)
            return ResolutionResult(chosen=chosen, candidates=candidates, variants_tried=variants_tried)

        optimize = bool(self._setting("optimization_enabled", True))
        if request.prefer_best and optimize and len(candidates) > 1:
            self._stage(Stage.PREFERRING)
            tier = self.profiler.classify(request.user_agent, request.touch_points)
            measurements: Dict[str, Measurement] = self.source_prober.probe(
                candidates, tier, time_budget=max(0.0, deadline - self._clock()),
            )
            selection = self.scoring.select(candidates, measurements, tier)
            logger.info(
                "Preferred %s (%s) out of %d sources on %s tier",
                selection.chosen.source_name, selection.chosen.key, len(candidates), tier,
            )
            self._stage(Stage.READY)
            return ResolutionResult(
                chosen=selection.chosen,
                candidates=candidates,
                measurements=measurements,
                tier=tier,
                ranking=selection.ranking,
                variants_tried=variants_tried,
            )

        self._stage(Stage.READY)
        return ResolutionResult(chosen=candidates[0], candidates=candidates, variants_tried=variants_tried)

    def search_candidates(self, request: ResolutionRequest, deadline: float):
        """
        Search variant by variant against an accumulated pool.

        Returns (matched candidates, variants actually sent upstream).
        """
        pool: List[Candidate] = []
        tried: List[str] = []
        matched: List[Candidate] = []

        for variant in self.variants.generate(request.title):
            if tried and self._clock() >= deadline:
                logger.warning("Resolution deadline reached after %d variants", len(tried))
                break
            tried.append(variant)
            results = self._search(variant)
            logger.info("Variant %r returned %d results", variant, len(results))
            self.event_bus.emit(Events.VARIANT_SEARCHED, {"variant": variant, "count": len(results)})
            pool.extend(results)
            matched = self.matcher.exact_matches(request.title, request.year, request.type, pool)
            if matched:
                break

        if not matched and pool:
            matched = self.matcher.relaxed_matches(request.title, request.year, request.type, pool)

        return self.matcher.deduplicate(matched), tried

    def _search(self, variant: str) -> List[Candidate]:
        try:
            return list(self.catalog.search(variant) or [])
        except Exception as exc:
            logger.warning("Search for %r failed, treating as empty: %s", variant, exc)
            return []

    def _fetch_detail(self, source: str, item_id: str, deadline: float) -> Optional[Candidate]:
        if self._clock() >= deadline:
            logger.warning("Resolution deadline reached before fetching %s-%s", source, item_id)
            return None
        try:
            return self.catalog.fetch_detail(source, item_id)
        except Exception as exc:
            logger.warning("Detail fetch for %s-%s failed: %s", source, item_id, exc)
            return None

    def _stage(self, stage: str):
        logger.debug("Resolution stage: %s", stage)
        self.event_bus.emit(Events.RESOLVE_STAGE, {"stage": stage})
