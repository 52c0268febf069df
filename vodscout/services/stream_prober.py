"""
Stream Prober
Low-level reachability / throughput measurement for a single playable URL
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Tuple
from urllib.parse import urljoin
import logging
import re
import time

import m3u8
import requests

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)

HEIGHT_FROM_URI = re.compile(r"(?<!\d)(2160|1440|1080|720|480|360)[pP](?!\w)")


class ProbeMode:
    HEAD = "head"
    PARTIAL = "partial"


@dataclass(frozen=True)
class ProbeReport:
    reachable: bool
    latency_ms: float = 0.0
    bytes_read: int = 0
    transfer_ms: float = 0.0
    # (width, height); width is 0 when only a height hint was found
    resolution: Optional[Tuple[int, int]] = None
    error: str = ""

    @property
    def speed_kbps(self) -> Optional[float]:
        if self.bytes_read <= 0 or self.transfer_ms <= 0:
            return None
        return (self.bytes_read / 1024.0) / (self.transfer_ms / 1000.0)


def quality_from_resolution(resolution: Optional[Tuple[int, int]]) -> str:
    """Bucket a (width, height) pair into the coarse quality labels"""
    if not resolution:
        return "unknown"
    width, height = resolution
    if width and width > 0:
        if width >= 3840:
            return "4K"
        if width >= 2560:
            return "2K"
        if width >= 1920:
            return "1080p"
        if width >= 1280:
            return "720p"
        if width >= 854:
            return "480p"
        return "SD"
    if height and height > 0:
        if height >= 2160:
            return "4K"
        if height >= 1440:
            return "2K"
        if height >= 1080:
            return "1080p"
        if height >= 720:
            return "720p"
        if height >= 480:
            return "480p"
        return "SD"
    return "unknown"


class StreamProber:
    """
    Measures one URL.

    HEAD mode only checks that the host answers; PARTIAL mode walks an HLS
    playlist down to its first media segment and reads a bounded number of
    bytes from it to estimate throughput and resolution.
    """

    def __init__(self, session: Optional[requests.Session] = None, user_agent: str = DEFAULT_USER_AGENT):
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "User-Agent": user_agent,
                "Accept": "*/*",
            }
        )

    def probe_url(
        self,
        url: str,
        mode: str = ProbeMode.HEAD,
        timeout: float = 3.0,
        max_bytes: int = 1024 * 1024,
    ) -> ProbeReport:
        if not url:
            return ProbeReport(reachable=False, error="empty url")
        try:
            if mode == ProbeMode.HEAD:
                return self._probe_head(url, timeout)
            if mode == ProbeMode.PARTIAL:
                return self._probe_partial(url, timeout, max_bytes)
        except (requests.RequestException, ValueError) as exc:
            logger.debug("Probe failed for %s: %s", url, exc)
            return ProbeReport(reachable=False, error=str(exc))
        raise ValueError(f"Unknown probe mode: {mode!r}")

    def _probe_head(self, url: str, timeout: float) -> ProbeReport:
        started = time.perf_counter()
        resp = self.session.head(url, timeout=timeout, allow_redirects=True)
        latency_ms = (time.perf_counter() - started) * 1000.0
        resp.close()
        # Any answer counts; CDNs often reject HEAD with 403/405 while still serving GET.
        return ProbeReport(reachable=True, latency_ms=latency_ms)

    def _probe_partial(self, url: str, timeout: float, max_bytes: int) -> ProbeReport:
        started = time.perf_counter()
        resp = self.session.get(url, timeout=timeout, stream=True)
        latency_ms = (time.perf_counter() - started) * 1000.0
        try:
            resp.raise_for_status()
            chunks = resp.iter_content(chunk_size=64 * 1024)
            transfer_started = time.perf_counter()
            first = next(chunks, b"") or b""
            if not first.lstrip().startswith(b"#EXTM3U"):
                # Direct media file: the same response doubles as the throughput sample.
                bytes_read = self._drain(chunks, max_bytes, already=len(first))
                return ProbeReport(
                    reachable=True,
                    latency_ms=latency_ms,
                    bytes_read=bytes_read,
                    transfer_ms=(time.perf_counter() - transfer_started) * 1000.0,
                    resolution=self._resolution_hint(url),
                )
            body = self._read_capped(chunks, max_bytes, first)
        finally:
            resp.close()

        playlist = m3u8.loads(body.decode("utf-8", errors="replace"), uri=url)
        resolution = None
        media_url = url
        if playlist.is_variant:
            variant = self._pick_best_variant(playlist)
            if variant is None:
                return ProbeReport(reachable=True, latency_ms=latency_ms, error="no playable variant")
            info = getattr(variant, "stream_info", None)
            resolution = getattr(info, "resolution", None) if info is not None else None
            media_url = urljoin(url, variant.uri)
            media_resp = self.session.get(media_url, timeout=timeout, stream=True)
            try:
                media_resp.raise_for_status()
                media_body = self._read_capped(media_resp.iter_content(chunk_size=64 * 1024), max_bytes)
            finally:
                media_resp.close()
            playlist = m3u8.loads(media_body.decode("utf-8", errors="replace"), uri=media_url)
            if resolution is None:
                resolution = self._resolution_hint(media_url)
        else:
            resolution = self._resolution_hint(url)

        if not playlist.segments:
            return ProbeReport(reachable=True, latency_ms=latency_ms, resolution=resolution, error="empty playlist")

        segment_url = urljoin(media_url, playlist.segments[0].uri)
        seg_resp = self.session.get(
            segment_url,
            timeout=timeout,
            stream=True,
            headers={"Range": f"bytes=0-{max(1, int(max_bytes)) - 1}"},
        )
        transfer_started = time.perf_counter()
        try:
            seg_resp.raise_for_status()
            bytes_read = self._drain(seg_resp.iter_content(chunk_size=64 * 1024), max_bytes)
        finally:
            seg_resp.close()
        transfer_ms = (time.perf_counter() - transfer_started) * 1000.0

        return ProbeReport(
            reachable=True,
            latency_ms=latency_ms,
            bytes_read=bytes_read,
            transfer_ms=transfer_ms,
            resolution=tuple(resolution) if resolution else None,
        )

    @staticmethod
    def _read_capped(chunks: Iterator[bytes], max_bytes: int, first: bytes = b"") -> bytes:
        """Playlist text up to max_bytes, cut back to the last complete line"""
        body = bytearray(first)
        while len(body) < max_bytes:
            chunk = next(chunks, None)
            if chunk is None:
                break
            body.extend(chunk)
        if len(body) <= max_bytes:
            return bytes(body)
        cut = body.rfind(b"\n", 0, max_bytes)
        return bytes(body[:cut + 1] if cut >= 0 else body[:max_bytes])

    @staticmethod
    def _drain(chunks: Iterator[bytes], max_bytes: int, already: int = 0) -> int:
        total = already
        if total >= max_bytes:
            return total
        for chunk in chunks:
            if not chunk:
                continue
            total += len(chunk)
            if total >= max_bytes:
                break
        return total

    @staticmethod
    def _pick_best_variant(playlist: m3u8.M3U8):
        def rank(variant):
            info = getattr(variant, "stream_info", None)
            res = getattr(info, "resolution", None) if info is not None else None
            pixels = res[0] * res[1] if res else 0
            bandwidth = getattr(info, "bandwidth", 0) if info is not None else 0
            return pixels, int(bandwidth or 0)

        variants = [v for v in playlist.playlists if getattr(v, "uri", None)]
        if not variants:
            return None
        return max(variants, key=rank)

    @staticmethod
    def _resolution_hint(uri: str) -> Optional[Tuple[int, int]]:
        match = HEIGHT_FROM_URI.search(uri or "")
        if not match:
            return None
        return 0, int(match.group(1))
