"""
Settings Manager
Handles persistent engine settings in the user data directory
"""
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
import threading

from .event_bus import Events

logger = logging.getLogger(__name__)


class SettingsManager:
    """Manages engine settings with persistence"""

    DEFAULT_SOURCE_PREFERENCE = [
        "ok",
        "niuhu",
        "ying",
        "wasu",
        "mgtv",
        "iqiyi",
        "youku",
        "qq",
    ]

    DEFAULT_SETTINGS = {
        # Catalog sites: [{"key", "name", "api", "detail"?, "disabled"?}]
        "api_sites": [],

        # Preference
        "optimization_enabled": True,
        "source_preference": list(DEFAULT_SOURCE_PREFERENCE),

        # Catalog collaborator
        "catalog_search_timeout_seconds": 12.0,
        "catalog_detail_timeout_seconds": 10.0,
        "catalog_request_timeout_seconds": 15.0,
        "catalog_max_retries": 0,
        "catalog_retry_backoff_seconds": 0.5,
        "catalog_circuit_failure_threshold": 3,
        "catalog_circuit_cooldown_seconds": 120.0,
        "catalog_cache_ttl_seconds": 300.0,
        "catalog_cache_max_entries": 100,
        "catalog_min_request_interval_seconds": 0.8,
        "catalog_max_requests_per_minute": 30,

        # Probing
        "lightweight_probe_timeout_seconds": 3.0,
        "full_probe_timeout_seconds": 12.0,
        "full_probe_concurrency": 2,
        "full_probe_batch_pause_seconds": 0.5,
        "full_probe_max_bytes": 1024 * 1024,

        # Orchestrator
        "resolve_timeout_seconds": 60.0,
    }

    def __init__(self, settings_dir: Optional[Path] = None, event_bus=None):
        if settings_dir is None:
            data_dir = str(os.environ.get("VODSCOUT_DATA_DIR", "") or "").strip()
            settings_dir = Path(data_dir).expanduser() if data_dir else (Path.home() / ".vodscout")
        self.settings_dir = Path(settings_dir)
        self.settings_file = self.settings_dir / "settings.json"
        self.event_bus = event_bus

        self._lock = threading.RLock()
        self._settings: Dict[str, Any] = {}
        self._load()

    def _defaults(self) -> Dict[str, Any]:
        return copy.deepcopy(self.DEFAULT_SETTINGS)

    def _load(self):
        """Load settings from file"""
        with self._lock:
            if self.settings_file.exists():
                try:
                    with open(self.settings_file, "r", encoding="utf-8") as f:
                        loaded = json.load(f)
                    if not isinstance(loaded, dict):
                        raise ValueError("settings root must be an object")
                    # Merge with defaults (adds new keys if they don't exist)
                    self._settings = {**self._defaults(), **loaded}
                except (OSError, ValueError) as e:
                    logger.warning("Error loading settings from %s: %s", self.settings_file, e)
                    self._settings = self._defaults()
            else:
                self._settings = self._defaults()
            self._settings["api_sites"] = self._normalize_sites(self._settings.get("api_sites"))

    @staticmethod
    def _normalize_sites(value: Any) -> List[Dict[str, Any]]:
        """Keep only well-formed site entries, de-duplicated by key"""
        out: List[Dict[str, Any]] = []
        seen = set()
        if not isinstance(value, list):
            return out
        for raw in value:
            if not isinstance(raw, dict):
                continue
            key = str(raw.get("key") or "").strip()
            api = str(raw.get("api") or "").strip()
            if not key or not api or key in seen:
                continue
            seen.add(key)
            site = {
                "key": key,
                "name": str(raw.get("name") or key).strip(),
                "api": api,
                "detail": str(raw.get("detail") or "").strip(),
                "disabled": bool(raw.get("disabled", False)),
            }
            out.append(site)
        return out

    def _save(self):
        """Save settings to file"""
        with self._lock:
            try:
                self.settings_dir.mkdir(parents=True, exist_ok=True)
                with open(self.settings_file, "w", encoding="utf-8") as f:
                    json.dump(self._settings, f, indent=2, ensure_ascii=False)
            except OSError as e:
                logger.warning("Error saving settings to %s: %s", self.settings_file, e)

    def _notify(self, keys: List[str]):
        if self.event_bus is None:
            return
        self.event_bus.emit(Events.SETTINGS_CHANGED, {"keys": keys})

    def get(self, key: str, default=None) -> Any:
        """Get a setting value"""
        with self._lock:
            return self._settings.get(key, default)

    def set(self, key: str, value: Any):
        """Set a setting value and save"""
        if key == "api_sites":
            value = self._normalize_sites(value)
        with self._lock:
            self._settings[str(key)] = value
            self._save()
        self._notify([str(key)])

    def update(self, settings_dict: Dict[str, Any]):
        """Update multiple settings at once"""
        settings_dict = dict(settings_dict or {})
        if "api_sites" in settings_dict:
            settings_dict["api_sites"] = self._normalize_sites(settings_dict["api_sites"])
        with self._lock:
            self._settings.update(settings_dict)
            self._save()
        self._notify(sorted(settings_dict.keys()))

    def get_all(self) -> Dict[str, Any]:
        """Get all settings"""
        with self._lock:
            return copy.deepcopy(self._settings)

    def reset(self):
        """Reset to default settings"""
        with self._lock:
            self._settings = self._defaults()
            self._save()
        self._notify(sorted(self.DEFAULT_SETTINGS.keys()))
