"""
Candidate Model
Value objects shared by the discovery and preference engine
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import re


UNREACHABLE_PING_MS = 9999

QUALITY_LABELS = ("4K", "2K", "1080p", "720p", "480p", "SD", "unknown")


@dataclass(frozen=True)
class Candidate:
    """One playable (source, id) pairing for a requested title"""
    source: str
    source_name: str
    id: str
    title: str
    year: str = "unknown"
    episodes: Tuple[str, ...] = ()
    douban_id: Optional[int] = None
    poster: str = ""
    episode_titles: Tuple[str, ...] = ()
    type_name: str = ""

    @property
    def key(self) -> str:
        """Composite identity used for dedup and measurement lookup"""
        return f"{self.source}-{self.id}"

    @property
    def probe_url(self) -> Optional[str]:
        """Episode used for probing: the second one when present, else the first"""
        if not self.episodes:
            return None
        return self.episodes[1] if len(self.episodes) > 1 else self.episodes[0]

    @staticmethod
    def normalize_year(value: Any) -> str:
        match = re.search(r"\d{4}", str(value or ""))
        if match:
            return match.group(0)
        return "unknown"

    @staticmethod
    def normalize_douban_id(value: Any) -> Optional[int]:
        try:
            num = int(str(value).strip())
        except (TypeError, ValueError):
            return None
        return num if num > 0 else None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Candidate":
        """
        Build a Candidate from a loosely-typed catalog payload.

        Raises ValueError for entries that cannot be played or identified,
        so malformed rows never reach the matcher.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"candidate payload must be a dict, got {type(payload).__name__}")

        source = str(payload.get("source") or "").strip()
        item_id = str(payload.get("id") if payload.get("id") is not None else "").strip()
        title = str(payload.get("title") or "").strip()
        if not source or not item_id:
            raise ValueError("candidate payload requires source and id")
        if not title:
            raise ValueError(f"candidate {source}-{item_id} has no title")

        raw_episodes = payload.get("episodes") or []
        if isinstance(raw_episodes, str):
            raw_episodes = [raw_episodes]
        episodes = tuple(str(url).strip() for url in raw_episodes if str(url or "").strip())
        if not episodes:
            raise ValueError(f"candidate {source}-{item_id} has no playable episodes")

        raw_titles = payload.get("episode_titles") or []
        episode_titles = tuple(str(t).strip() for t in raw_titles if t is not None)

        return cls(
            source=source,
            source_name=str(payload.get("source_name") or source).strip(),
            id=item_id,
            title=title,
            year=cls.normalize_year(payload.get("year")),
            episodes=episodes,
            douban_id=cls.normalize_douban_id(payload.get("douban_id")),
            poster=str(payload.get("poster") or "").strip(),
            episode_titles=episode_titles,
            type_name=str(payload.get("type_name") or "").strip(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "source_name": self.source_name,
            "id": self.id,
            "title": self.title,
            "year": self.year,
            "episodes": list(self.episodes),
            "episode_titles": list(self.episode_titles),
            "douban_id": self.douban_id,
            "poster": self.poster,
            "type_name": self.type_name,
        }


@dataclass(frozen=True)
class Measurement:
    """Probe outcome for one candidate"""
    ping_ms: int
    available: bool
    quality: Optional[str] = None
    load_speed: Optional[str] = None

    @classmethod
    def unreachable(cls) -> "Measurement":
        return cls(ping_ms=UNREACHABLE_PING_MS, available=False)

    @property
    def load_speed_kbps(self) -> Optional[float]:
        """Parse load_speed into KB/s; None when unknown or malformed"""
        match = re.match(r"^([\d.]+)\s*(KB/s|MB/s)$", (self.load_speed or "").strip())
        if not match:
            return None
        try:
            value = float(match.group(1))
        except ValueError:
            return None
        return value * 1024 if match.group(2) == "MB/s" else value

    @staticmethod
    def format_speed(kbps: float) -> str:
        """Format KB/s into the display unit used by load_speed"""
        if kbps >= 1024:
            return f"{kbps / 1024:.1f} MB/s"
        return f"{kbps:.1f} KB/s"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pingMs": self.ping_ms,
            "available": self.available,
            "quality": self.quality,
            "loadSpeed": self.load_speed,
        }


VALID_TYPES = ("movie", "tv")


@dataclass
class ResolutionRequest:
    """What the caller wants to watch"""
    title: Optional[str] = None
    year: Optional[str] = None
    type: Optional[str] = None
    known_source: Optional[str] = None
    known_id: Optional[str] = None
    prefer_best: bool = False
    user_agent: str = ""
    touch_points: int = 0

    def __post_init__(self):
        self.title = (self.title or "").strip() or None
        self.year = (str(self.year).strip() if self.year is not None else "") or None
        self.known_source = (self.known_source or "").strip() or None
        self.known_id = (str(self.known_id).strip() if self.known_id is not None else "") or None
        kind = (self.type or "").strip().lower() or None
        if kind is not None and kind not in VALID_TYPES:
            raise ValueError(f"type must be one of {VALID_TYPES}, got {self.type!r}")
        self.type = kind

    @property
    def has_known_pair(self) -> bool:
        return bool(self.known_source and self.known_id)


@dataclass
class ResolutionResult:
    """Chosen candidate plus everything needed for manual switching"""
    chosen: Candidate
    candidates: List[Candidate]
    measurements: Dict[str, Measurement] = field(default_factory=dict)
    tier: Optional[str] = None
    ranking: List[str] = field(default_factory=list)
    variants_tried: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chosen": self.chosen.to_dict(),
            "candidates": [c.to_dict() for c in self.candidates],
            "measurements": {k: m.to_dict() for k, m in self.measurements.items()},
            "tier": self.tier,
            "ranking": list(self.ranking),
            "variantsTried": list(self.variants_tried),
        }
