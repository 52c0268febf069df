import threading
import time
import unittest

from vodscout.core.device_profiler import DeviceTier
from vodscout.core.event_bus import EventBus, Events
from vodscout.core.source_prober import SourceProber
from vodscout.models.candidate import Candidate, Measurement
from vodscout.services.stream_prober import ProbeMode, ProbeReport


class _Settings:
    def __init__(self, **overrides):
        self.data = {
            "full_probe_batch_pause_seconds": 0.0,
            "full_probe_timeout_seconds": 5.0,
        }
        self.data.update(overrides)

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value

    def update(self, values):
        self.data.update(values)


def _candidate(name, item_id="1", episodes=None):
    return Candidate(
        source=name,
        source_name=name,
        id=item_id,
        title="Foo",
        episodes=tuple(episodes or (f"https://{name}.example.com/ep1.m3u8", f"https://{name}.example.com/ep2.m3u8")),
    )


class CountingProber:
    def __init__(self, report=None):
        self.calls = []
        self.report = report or ProbeReport(reachable=True, latency_ms=42.0)
        self._lock = threading.Lock()

    def probe_url(self, url, mode, **kwargs):
        with self._lock:
            self.calls.append((url, mode, kwargs))
        return self.report


class InFlightProber:
    """Tracks how many probes run at the same time"""

    def __init__(self, delay=0.05):
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = 0
        self._lock = threading.Lock()

    def probe_url(self, url, mode, **kwargs):
        with self._lock:
            self.in_flight += 1
            self.calls += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            assert self.in_flight <= 2
        try:
            time.sleep(self.delay)
            return ProbeReport(
                reachable=True,
                latency_ms=80.0,
                bytes_read=2048 * 1024,
                transfer_ms=1000.0,
                resolution=(1920, 1080),
            )
        finally:
            with self._lock:
                self.in_flight -= 1


class HangingProber:
    def __init__(self, hang_url, hang_seconds=1.5):
        self.hang_url = hang_url
        self.hang_seconds = hang_seconds

    def probe_url(self, url, mode, **kwargs):
        if url == self.hang_url:
            time.sleep(self.hang_seconds)
        return ProbeReport(reachable=True, latency_ms=10.0)


class RaisingProber:
    def probe_url(self, url, mode, **kwargs):
        raise RuntimeError("decoder crashed")


class TestConstrainedStrategy(unittest.TestCase):
    def test_no_network_calls_and_static_order(self):
        prober = CountingProber()
        sp = SourceProber(prober, _Settings())
        candidates = [_candidate("foo"), _candidate("iqiyi-cdn"), _candidate("ok-zy"), _candidate("bar")]

        result = sp.probe(candidates, DeviceTier.CONSTRAINED)

        self.assertEqual(prober.calls, [])
        self.assertEqual(list(result.keys()), ["ok-zy-1", "iqiyi-cdn-1", "foo-1", "bar-1"])
        for measurement in result.values():
            self.assertEqual(measurement.ping_ms, 0)
            self.assertTrue(measurement.available)

    def test_many_candidates_still_no_calls(self):
        prober = CountingProber()
        sp = SourceProber(prober, _Settings())
        candidates = [_candidate(f"site{i}") for i in range(25)]
        self.assertEqual(len(sp.probe(candidates, DeviceTier.CONSTRAINED)), 25)
        self.assertEqual(prober.calls, [])


class TestLightweightStrategy(unittest.TestCase):
    def test_head_probe_on_second_episode_with_three_second_timeout(self):
        prober = CountingProber()
        sp = SourceProber(prober, _Settings())
        a = _candidate("a")
        b = _candidate("b", episodes=["https://b.example.com/only.m3u8"])

        result = sp.probe([a, b], DeviceTier.MOBILE)

        urls = sorted(call[0] for call in prober.calls)
        self.assertEqual(urls, ["https://a.example.com/ep2.m3u8", "https://b.example.com/only.m3u8"])
        for _, mode, kwargs in prober.calls:
            self.assertEqual(mode, ProbeMode.HEAD)
            self.assertEqual(kwargs.get("timeout"), 3.0)
        self.assertEqual(result[a.key].ping_ms, 42)
        self.assertIsNone(result[a.key].quality)
        self.assertIsNone(result[a.key].load_speed)

    def test_unreachable_becomes_sentinel(self):
        prober = CountingProber(ProbeReport(reachable=False, error="refused"))
        sp = SourceProber(prober, _Settings())
        a = _candidate("a")
        result = sp.probe([a], DeviceTier.MOBILE)
        self.assertEqual(result[a.key].ping_ms, 9999)
        self.assertFalse(result[a.key].available)

    def test_hung_head_request_is_abandoned(self):
        slow = _candidate("slow")
        fast = _candidate("fast")
        sp = SourceProber(HangingProber(slow.probe_url, hang_seconds=3.0),
                          _Settings(lightweight_probe_timeout_seconds=0.2))

        started = time.perf_counter()
        result = sp.probe([slow, fast], DeviceTier.MOBILE)
        elapsed = time.perf_counter() - started

        self.assertLess(elapsed, 1.5)
        self.assertFalse(result[slow.key].available)
        self.assertEqual(result[slow.key].ping_ms, 9999)
        self.assertTrue(result[fast.key].available)

    def test_time_budget_shortens_wait(self):
        slow = _candidate("slow")
        sp = SourceProber(HangingProber(slow.probe_url, hang_seconds=2.0), _Settings())

        started = time.perf_counter()
        result = sp.probe([slow], DeviceTier.MOBILE, time_budget=0.1)

        self.assertLess(time.perf_counter() - started, 1.0)
        self.assertFalse(result[slow.key].available)


class TestFullStrategy(unittest.TestCase):
    def test_at_most_two_probes_in_flight(self):
        prober = InFlightProber()
        sp = SourceProber(prober, _Settings())
        candidates = [_candidate(f"site{i}") for i in range(7)]

        result = sp.probe(candidates, DeviceTier.DESKTOP)

        self.assertEqual(prober.calls, 7)
        self.assertLessEqual(prober.max_in_flight, 2)
        self.assertEqual(set(result.keys()), {c.key for c in candidates})

    def test_concurrency_setting_cannot_loosen_bound(self):
        prober = InFlightProber()
        sp = SourceProber(prober, _Settings(full_probe_concurrency=6))
        self.assertEqual(sp.full_concurrency, 2)
        sp.probe([_candidate(f"site{i}") for i in range(6)], DeviceTier.DESKTOP)
        self.assertLessEqual(prober.max_in_flight, 2)

    def test_pause_between_batches(self):
        pauses = []
        sp = SourceProber(
            CountingProber(),
            _Settings(full_probe_batch_pause_seconds=0.5),
            sleeper=pauses.append,
        )
        sp.probe([_candidate(f"site{i}") for i in range(5)], DeviceTier.DESKTOP)
        self.assertEqual(pauses, [0.5, 0.5])

    def test_measurement_fields(self):
        sp = SourceProber(InFlightProber(delay=0.0), _Settings())
        a = _candidate("a")
        m = sp.probe([a], DeviceTier.DESKTOP)[a.key]
        self.assertTrue(m.available)
        self.assertEqual(m.quality, "1080p")
        self.assertEqual(m.load_speed, "2.0 MB/s")
        self.assertEqual(m.ping_ms, 80)

    def test_unknown_speed_when_nothing_was_read(self):
        sp = SourceProber(CountingProber(ProbeReport(reachable=True, latency_ms=12.0)), _Settings())
        a = _candidate("a")
        m = sp.probe([a], DeviceTier.DESKTOP)[a.key]
        self.assertEqual(m.load_speed, "unknown")
        self.assertEqual(m.quality, "unknown")

    def test_hung_probe_is_abandoned(self):
        hung = _candidate("slow")
        fast = _candidate("fast")
        sp = SourceProber(HangingProber(hung.probe_url), _Settings(full_probe_timeout_seconds=0.2))

        started = time.perf_counter()
        result = sp.probe([hung, fast], DeviceTier.DESKTOP)
        elapsed = time.perf_counter() - started

        self.assertLess(elapsed, 1.4)
        self.assertFalse(result[hung.key].available)
        self.assertTrue(result[fast.key].available)

    def test_time_budget_stops_new_batches(self):
        prober = InFlightProber(delay=0.3)
        sp = SourceProber(prober, _Settings())
        candidates = [_candidate(f"site{i}") for i in range(8)]

        started = time.perf_counter()
        result = sp.probe(candidates, DeviceTier.DESKTOP, time_budget=0.5)
        elapsed = time.perf_counter() - started

        self.assertLess(elapsed, 1.1)
        self.assertLessEqual(prober.calls, 4)
        self.assertEqual(set(result), {c.key for c in candidates})
        for late in candidates[4:]:
            self.assertFalse(result[late.key].available)

    def test_spent_budget_makes_no_requests(self):
        prober = CountingProber()
        sp = SourceProber(prober, _Settings())
        candidates = [_candidate("a"), _candidate("b"), _candidate("c")]

        result = sp.probe(candidates, DeviceTier.DESKTOP, time_budget=0.0)

        self.assertEqual(prober.calls, [])
        self.assertTrue(all(m == Measurement.unreachable() for m in result.values()))

    def test_probe_errors_never_escape(self):
        sp = SourceProber(RaisingProber(), _Settings())
        candidates = [_candidate("a"), _candidate("b"), _candidate("c")]
        for tier in (DeviceTier.DESKTOP, DeviceTier.MOBILE):
            result = sp.probe(candidates, tier)
            self.assertEqual(len(result), 3)
            self.assertTrue(all(not m.available for m in result.values()))

    def test_progress_events(self):
        bus = EventBus()
        seen = []
        bus.subscribe(Events.PROBE_PROGRESS, seen.append)
        done = {}
        bus.subscribe(Events.PROBE_COMPLETED, lambda d: done.update(d))
        sp = SourceProber(CountingProber(), _Settings(), event_bus=bus)
        sp.probe([_candidate("a"), _candidate("b")], DeviceTier.DESKTOP)
        self.assertEqual(len(seen), 2)
        self.assertEqual(done.get("total"), 2)
        self.assertEqual(done.get("available"), 2)

    def test_empty_input(self):
        self.assertEqual(SourceProber(CountingProber(), _Settings()).probe([], DeviceTier.DESKTOP), {})


if __name__ == "__main__":
    unittest.main()
