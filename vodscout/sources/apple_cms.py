"""
Apple CMS Catalog Source

Queries a video site exposing the common "ac=videolist" JSON API.

Notes:
- Episode lists come from vod_play_url; when a site publishes several play
  groups the one carrying the most m3u8 links wins.
- Sites configured with a "detail" base URL answer fetch_detail from their
  HTML detail page instead of the JSON ids= lookup; search always uses JSON.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse
import logging
import re

import requests
from bs4 import BeautifulSoup

from .base import BaseCatalogSource
from ..core.rate_limiter import RateLimiter
from ..models.candidate import Candidate

logger = logging.getLogger(__name__)

M3U8_RE = re.compile(r"(https?://[^\"'\s$#]+?\.m3u8)")
PLAY_GROUP_SEPARATOR = "$$$"


class AppleCmsSource(BaseCatalogSource):

    def __init__(self, site: Dict[str, Any], settings=None, rate_limiter: Optional[RateLimiter] = None):
        self.site = dict(site or {})
        self.key = str(self.site.get("key") or "").strip()
        self.name = str(self.site.get("name") or self.key).strip()
        if not self.key:
            raise ValueError("Catalog site requires a non-empty 'key'.")
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.last_error = ""
        self.session = requests.Session()
        self.session.headers.update(
            {
                "User-Agent": (
                    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
                ),
                "Accept": "application/json, text/plain, */*",
                "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
            }
        )
        self._api = ""
        self._detail = ""
        self._timeout_seconds = 15.0
        self.reload_from_settings()

    def reload_from_settings(self) -> None:
        self._api = str(self.site.get("api") or "").strip()
        self._detail = str(self.site.get("detail") or "").strip().rstrip("/")
        timeout = self.settings.get("catalog_request_timeout_seconds", 15.0) if self.settings is not None else 15.0
        self._timeout_seconds = float(timeout or 15.0)

    def search(self, query: str) -> List[Candidate]:
        self.last_error = ""
        if not query or not str(query).strip():
            return []
        if not self._api:
            self.last_error = f"{self.name} has no api url configured."
            return []

        payload = self._get_json({"ac": "videolist", "wd": str(query).strip()})
        return self._parse_list(payload)

    def fetch_detail(self, item_id: str) -> Optional[Candidate]:
        self.last_error = ""
        item_id = str(item_id or "").strip()
        if not item_id:
            return None
        if self._detail:
            return self._fetch_html_detail(item_id)
        if not self._api:
            self.last_error = f"{self.name} has no api url configured."
            return None

        payload = self._get_json({"ac": "videolist", "ids": item_id})
        for candidate in self._parse_list(payload):
            if candidate.id == item_id:
                return candidate
        return None

    # HTTP

    def _pace(self, url: str):
        if self.rate_limiter is None:
            return
        host = (urlparse(url).hostname or url).lower()
        self.rate_limiter.wait(host)

    def _get_json(self, params: Dict[str, str]) -> Any:
        self._pace(self._api)
        resp = self.session.get(self._api, params=params, timeout=max(2.0, self._timeout_seconds))
        if resp.status_code == 429:
            self.last_error = f"{self.name} is rate limiting requests (429)."
        resp.raise_for_status()
        return resp.json()

    # Parsing

    def _parse_list(self, payload: Any) -> List[Candidate]:
        if not isinstance(payload, dict):
            self.last_error = f"{self.name} returned unexpected response."
            return []
        rows = payload.get("list") or []
        if not isinstance(rows, list):
            self.last_error = f"{self.name} returned unexpected response."
            return []

        out: List[Candidate] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            titles, episodes = self.parse_play_url(str(row.get("vod_play_url") or ""))
            try:
                candidate = Candidate.from_dict({
                    "source": self.key,
                    "source_name": self.name,
                    "id": row.get("vod_id"),
                    "title": re.sub(r"\s+", " ", str(row.get("vod_name") or "")).strip(),
                    "year": row.get("vod_year"),
                    "episodes": episodes,
                    "episode_titles": titles,
                    "douban_id": row.get("vod_douban_id"),
                    "poster": row.get("vod_pic"),
                    "type_name": row.get("type_name"),
                })
            except ValueError as exc:
                logger.debug("Skipping malformed row from %s: %s", self.key, exc)
                continue
            out.append(candidate)
        return out

    @staticmethod
    def parse_play_url(play_url: str) -> Tuple[List[str], List[str]]:
        """Split 'name$url#name$url$$$...' into (titles, urls) of the best group"""
        if not play_url:
            return [], []
        best_titles: List[str] = []
        best_urls: List[str] = []
        best_m3u8 = -1
        for group in play_url.split(PLAY_GROUP_SEPARATOR):
            titles: List[str] = []
            urls: List[str] = []
            for index, entry in enumerate(e for e in group.split("#") if e.strip()):
                if "$" in entry:
                    name, url = entry.split("$", 1)
                else:
                    name, url = "", entry
                url = url.strip()
                if not url.startswith("http"):
                    continue
                titles.append(name.strip() or str(index + 1))
                urls.append(url)
            m3u8_count = sum(1 for u in urls if ".m3u8" in u)
            if urls and m3u8_count > best_m3u8:
                best_titles, best_urls, best_m3u8 = titles, urls, m3u8_count
        return best_titles, best_urls

    def _fetch_html_detail(self, item_id: str) -> Optional[Candidate]:
        detail_url = f"{self._detail}/index.php/vod/detail/id/{item_id}.html"
        self._pace(detail_url)
        resp = self.session.get(detail_url, timeout=max(2.0, self._timeout_seconds))
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        html = resp.text

        episodes: List[str] = []
        for url in M3U8_RE.findall(html):
            if url not in episodes:
                episodes.append(url)

        soup = BeautifulSoup(html, "html.parser")
        heading = soup.find("h1")
        title = heading.get_text(" ", strip=True) if heading else ""
        if not title and soup.title:
            title = soup.title.get_text(" ", strip=True)
        year_match = re.search(r"\b((?:19|20)\d{2})\b", soup.get_text(" ", strip=True))
        poster = ""
        image = soup.select_one("img[data-original]") or soup.select_one(".module-item-pic img, .video-cover img")
        if image is not None:
            poster = str(image.get("data-original") or image.get("src") or "")

        try:
            return Candidate.from_dict({
                "source": self.key,
                "source_name": self.name,
                "id": item_id,
                "title": title,
                "year": year_match.group(1) if year_match else None,
                "episodes": episodes,
                "episode_titles": [str(i + 1) for i in range(len(episodes))],
                "poster": poster,
            })
        except ValueError as exc:
            self.last_error = f"{self.name} detail page unusable: {exc}"
            return None
