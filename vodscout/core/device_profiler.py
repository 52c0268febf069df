"""Device tier classification from an explicit user agent."""
from __future__ import annotations

import re


class DeviceTier:
    DESKTOP = "desktop"
    MOBILE = "mobile"
    CONSTRAINED = "constrained"

    ALL = (DESKTOP, MOBILE, CONSTRAINED)


TABLET_RE = re.compile(r"iPad", re.IGNORECASE)
MOBILE_RE = re.compile(r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE)


class DeviceProfiler:
    """
    Picks the probing tier for a client.

    Tablets (including iPads reporting a desktop Macintosh agent with touch
    support) crash when many media probes allocate buffers at once, so they get
    the constrained tier.
    """

    def classify(self, user_agent: str | None, touch_points: int | None = 0) -> str:
        ua = user_agent or ""
        touches = int(touch_points or 0)
        if TABLET_RE.search(ua) or ("Macintosh" in ua and touches >= 1):
            return DeviceTier.CONSTRAINED
        if MOBILE_RE.search(ua):
            return DeviceTier.MOBILE
        return DeviceTier.DESKTOP
