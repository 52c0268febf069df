import json
import tempfile
import unittest
from pathlib import Path

from vodscout.core.event_bus import EventBus, Events
from vodscout.core.settings_manager import SettingsManager


class TestSettingsManager(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_defaults(self):
        settings = SettingsManager(self.dir)
        self.assertTrue(settings.get("optimization_enabled"))
        self.assertEqual(settings.get("full_probe_concurrency"), 2)
        self.assertEqual(settings.get("lightweight_probe_timeout_seconds"), 3.0)
        self.assertEqual(settings.get("source_preference")[0], "ok")
        self.assertEqual(settings.get("api_sites"), [])

    def test_set_persists_and_reloads(self):
        settings = SettingsManager(self.dir)
        settings.set("resolve_timeout_seconds", 30.0)
        reloaded = SettingsManager(self.dir)
        self.assertEqual(reloaded.get("resolve_timeout_seconds"), 30.0)
        self.assertEqual(reloaded.get("full_probe_timeout_seconds"), 12.0)

    def test_corrupt_file_falls_back_to_defaults(self):
        (self.dir / "settings.json").write_text("{not json", encoding="utf-8")
        settings = SettingsManager(self.dir)
        self.assertEqual(settings.get("catalog_search_timeout_seconds"), 12.0)

    def test_sites_are_normalized(self):
        settings = SettingsManager(self.dir)
        settings.set("api_sites", [
            {"key": "a", "api": "https://a.example.com/api"},
            {"key": "a", "api": "https://dup.example.com/api"},
            {"key": "", "api": "https://nokey.example.com"},
            {"key": "b"},
            "junk",
        ])
        sites = settings.get("api_sites")
        self.assertEqual([s["key"] for s in sites], ["a"])
        self.assertEqual(sites[0]["name"], "a")
        self.assertFalse(sites[0]["disabled"])
        saved = json.loads((self.dir / "settings.json").read_text(encoding="utf-8"))
        self.assertEqual(len(saved["api_sites"]), 1)

    def test_changes_are_announced(self):
        bus = EventBus()
        seen = []
        bus.subscribe(Events.SETTINGS_CHANGED, seen.append)
        settings = SettingsManager(self.dir, event_bus=bus)
        settings.update({"full_probe_batch_pause_seconds": 1.0, "optimization_enabled": False})
        settings.reset()
        self.assertEqual(seen[0], {"keys": ["full_probe_batch_pause_seconds", "optimization_enabled"]})
        self.assertEqual(len(seen), 2)
        self.assertTrue(settings.get("optimization_enabled"))


if __name__ == "__main__":
    unittest.main()
