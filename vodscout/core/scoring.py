"""
Scoring Engine
Turns probe measurements into a composite score and picks the winning source
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from ..models.candidate import Candidate, Measurement
from .device_profiler import DeviceTier

logger = logging.getLogger(__name__)

QUALITY_SCORES = {
    "4K": 100,
    "2K": 85,
    "1080p": 75,
    "720p": 60,
    "480p": 40,
    "SD": 20,
}

QUALITY_WEIGHT = 0.4
SPEED_WEIGHT = 0.4
PING_WEIGHT = 0.2

UNKNOWN_SPEED_SCORE = 30.0

# Batch baselines when no measurement provides a usable value.
DEFAULT_MAX_SPEED_KBPS = 1024.0
DEFAULT_MIN_PING_MS = 50.0
DEFAULT_MAX_PING_MS = 1000.0


@dataclass(frozen=True)
class BatchStats:
    max_speed: float
    min_ping: float
    max_ping: float


@dataclass(frozen=True)
class Selection:
    chosen: Candidate
    # Ranked candidate keys, best first; empty when nothing was usable.
    ranking: List[str]
    scores: Dict[str, float]


def _clamp(value: float) -> float:
    return min(100.0, max(0.0, value))


class ScoringEngine:
    """Weighted quality / speed / latency scoring (desktop path)"""

    def quality_score(self, quality: Optional[str]) -> float:
        return float(QUALITY_SCORES.get(quality or "", 0))

    def speed_score(self, measurement: Measurement, max_speed: float) -> float:
        speed = measurement.load_speed_kbps
        if speed is None:
            return UNKNOWN_SPEED_SCORE
        if max_speed <= 0:
            return 0.0
        return _clamp(speed / max_speed * 100.0)

    def ping_score(self, ping: float, min_ping: float, max_ping: float) -> float:
        if ping <= 0:
            return 0.0
        if max_ping == min_ping:
            return 100.0
        return _clamp((max_ping - ping) / (max_ping - min_ping) * 100.0)

    def score(self, measurement: Measurement, max_speed: float, min_ping: float, max_ping: float) -> float:
        total = (
            self.quality_score(measurement.quality) * QUALITY_WEIGHT
            + self.speed_score(measurement, max_speed) * SPEED_WEIGHT
            + self.ping_score(measurement.ping_ms, min_ping, max_ping) * PING_WEIGHT
        )
        return round(total, 2)

    @staticmethod
    def batch_stats(measurements: Sequence[Measurement]) -> BatchStats:
        speeds = [s for s in (m.load_speed_kbps for m in measurements) if s is not None and s > 0]
        pings = [m.ping_ms for m in measurements if m.ping_ms > 0]
        return BatchStats(
            max_speed=max(speeds) if speeds else DEFAULT_MAX_SPEED_KBPS,
            min_ping=min(pings) if pings else DEFAULT_MIN_PING_MS,
            max_ping=max(pings) if pings else DEFAULT_MAX_PING_MS,
        )

    def rank(self, candidates: Sequence[Candidate], measurements: Dict[str, Measurement]) -> List[Tuple[Candidate, float]]:
        """Score available candidates; stable, so ties keep input order"""
        usable = [
            (c, measurements[c.key]) for c in candidates
            if c.key in measurements and measurements[c.key].available
        ]
        if not usable:
            return []
        stats = self.batch_stats([m for _, m in usable])
        scored = [(c, self.score(m, stats.max_speed, stats.min_ping, stats.max_ping)) for c, m in usable]
        scored.sort(key=lambda item: item[1], reverse=True)
        for position, (candidate, value) in enumerate(scored, start=1):
            m = measurements[candidate.key]
            logger.debug(
                "%d. %s - score %.2f (%s, %s, %sms)",
                position, candidate.source_name, value, m.quality, m.load_speed, m.ping_ms,
            )
        return scored

    def select(
        self,
        candidates: Sequence[Candidate],
        measurements: Dict[str, Measurement],
        tier: str,
    ) -> Selection:
        """
        Pick the winner for a tier.

        desktop ranks by score, mobile by ping among reachable sources, and
        constrained keeps the prober's static order. When nothing is usable the
        first candidate wins.
        """
        candidates = list(candidates)
        if not candidates:
            raise ValueError("select() needs at least one candidate")
        by_key = {c.key: c for c in candidates}

        if tier == DeviceTier.CONSTRAINED:
            ranking = [key for key in measurements if key in by_key]
            scores: Dict[str, float] = {}
        elif tier == DeviceTier.MOBILE:
            reachable = [c for c in candidates if c.key in measurements and measurements[c.key].available]
            reachable.sort(key=lambda c: measurements[c.key].ping_ms)
            ranking = [c.key for c in reachable]
            scores = {}
        else:
            scored = self.rank(candidates, measurements)
            ranking = [c.key for c, _ in scored]
            scores = {c.key: value for c, value in scored}

        if not ranking:
            logger.warning("No source could be measured, falling back to the first one")
            return Selection(chosen=candidates[0], ranking=[], scores={})
        return Selection(chosen=by_key[ranking[0]], ranking=ranking, scores=scores)
