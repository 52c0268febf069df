import unittest

from vodscout.core.event_bus import Events
from vodscout.models.candidate import Candidate
from vodscout.sources.base import BaseCatalogSource

try:
    from fastapi.testclient import TestClient
    from vodscout.web.app import create_app
    from vodscout.web.runtime import build_runtime
    HAS_WEB_DEPS = True
except Exception:
    HAS_WEB_DEPS = False


class _Settings:
    def __init__(self):
        self.data = {
            "api_sites": [],
            "catalog_search_timeout_seconds": 5.0,
            "catalog_min_request_interval_seconds": 0.0,
        }

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value

    def update(self, values):
        self.data.update(values)


class StubSource(BaseCatalogSource):
    key = "zy1"
    name = "Example ZY"

    def __init__(self):
        self.item = Candidate(
            source="zy1",
            source_name="Example ZY",
            id="101",
            title="中餐厅第九季",
            year="2025",
            episodes=("https://cdn.example.com/101/1.m3u8", "https://cdn.example.com/101/2.m3u8"),
        )

    def search(self, query):
        return [self.item] if query == "中餐厅第九季" else []

    def fetch_detail(self, item_id):
        return self.item if item_id == "101" else None


@unittest.skipUnless(HAS_WEB_DEPS, "fastapi/httpx not installed")
class TestWebAPI(unittest.TestCase):
    def setUp(self):
        runtime = build_runtime(_Settings())
        runtime.catalog.register(StubSource())
        self.runtime = runtime
        self.client = TestClient(create_app(runtime))

    def tearDown(self):
        self.runtime.catalog.shutdown()

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["ok"])

    def test_variants(self):
        resp = self.client.get("/api/variants", params={"q": "死神来了 血脉诅咒"})
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertEqual(payload["variants"][0], "死神来了 血脉诅咒")
        self.assertIn("死神来了：血脉诅咒", payload["variants"])
        self.assertEqual(self.client.get("/api/variants").status_code, 400)

    def test_resolve(self):
        resp = self.client.get("/api/resolve", params={"title": "中餐厅 第九季"})
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertEqual(payload["chosen"]["id"], "101")
        self.assertEqual(len(payload["candidates"]), 1)
        self.assertEqual(payload["variantsTried"], ["中餐厅 第九季", "中餐厅第九季"])

    def test_resolve_known_pair(self):
        resp = self.client.get("/api/resolve", params={"source": "zy1", "id": "101"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["chosen"]["source"], "zy1")

    def test_resolve_errors(self):
        self.assertEqual(self.client.get("/api/resolve").status_code, 400)
        self.assertEqual(self.client.get("/api/resolve", params={"title": "Nothing Here"}).status_code, 404)
        self.assertEqual(self.client.get("/api/resolve", params={"title": "Foo", "type": "anime"}).status_code, 422)

    def test_sources_and_toggle(self):
        resp = self.client.get("/api/sources")
        self.assertEqual(resp.status_code, 200)
        sources = resp.json()["sources"]
        self.assertEqual([s["key"] for s in sources], ["zy1"])
        self.assertEqual(sources[0]["health"], "healthy")
        self.assertEqual(sources[0]["sourceHealth"]["skipped_due_circuit"], 0)

        toggled = self.client.post("/api/sources/zy1/toggle", json={"enabled": False})
        self.assertEqual(toggled.status_code, 200)
        self.assertEqual(self.runtime.catalog.get_enabled_sources(), [])
        self.assertEqual(self.client.post("/api/sources/nope/toggle", json={"enabled": True}).status_code, 404)

    def test_settings_change_reloads_catalog_sites(self):
        seen = []
        self.runtime.event_bus.subscribe(Events.SOURCES_RELOADED, seen.append)
        self.runtime.event_bus.emit(Events.SETTINGS_CHANGED, {"keys": ["catalog_request_timeout_seconds"]})
        self.assertEqual(seen, [{"sources": ["zy1"]}])


if __name__ == "__main__":
    unittest.main()
