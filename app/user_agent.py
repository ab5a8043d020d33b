"""User-agent parsing for click enrichment.

Ordered substring matching over the lowercased header. Browser precedence
matters because the tokens overlap: Edge sends ``chrome/`` and ``safari/``,
Chrome sends ``safari/``, Opera sends ``chrome/``.

Matching Order
==============
::
    browser:  edg/ → chrome/ → firefox/ → safari/ (+version/) → opr/|opera/
    os:       windows nt → iphone os|ipad cpu os → mac os x → android → ios → linux
    device:   iphone → ipad → android (+mobile) → vendor → Desktop
    type:     mobile|iphone → Mobile
              tablet|ipad|android without mobile → Tablet
              else → Desktop

Key Behaviours
===============
- Empty, whitespace or unrecognisable user agents give "Unknown" for every
  field.
- Versions keep the major component only (``Chrome 120``).
- Unexpected errors degrade to the all-"Unknown" result and are logged.
"""

import logging
import re
from dataclasses import dataclass

from app.enums import UNKNOWN, DeviceType

__all__ = ["UserAgentInfo", "UserAgentParser"]

logger = logging.getLogger(__name__)

_WINDOWS_VERSIONS = (
    ("windows nt 10.0", "10"),
    ("windows nt 6.3", "8.1"),
    ("windows nt 6.2", "8"),
    ("windows nt 6.1", "7"),
)
_DEVICE_VENDORS = (
    ("samsung", "Samsung Device"),
    ("huawei", "Huawei Device"),
    ("xiaomi", "Xiaomi Device"),
    ("oneplus", "OnePlus Device"),
)


@dataclass(frozen=True)
class UserAgentInfo:
    browser: str = UNKNOWN
    browser_version: str = UNKNOWN
    operating_system: str = UNKNOWN
    os_version: str = UNKNOWN
    device: str = UNKNOWN
    device_type: str = DeviceType.UNKNOWN.value

    @property
    def browser_label(self) -> str:
        if self.browser == UNKNOWN or self.browser_version == UNKNOWN:
            return self.browser
        return f"{self.browser} {self.browser_version}"

    @property
    def os_label(self) -> str:
        if self.operating_system == UNKNOWN or self.os_version == UNKNOWN:
            return self.operating_system
        return f"{self.operating_system} {self.os_version}"


class UserAgentParser:
    """Stateless parser; one instance is shared by every ingestion task."""

    def parse(self, user_agent: str | None) -> UserAgentInfo:
        if not user_agent or not user_agent.strip():
            return UserAgentInfo()

        ua = user_agent.lower()
        try:
            browser, browser_version = self._browser(ua)
            os_name, os_version = self._operating_system(ua)
            if browser == UNKNOWN and os_name == UNKNOWN:
                # nothing recognisable, so device guesses would be noise
                return UserAgentInfo()
            return UserAgentInfo(
                browser=browser,
                browser_version=browser_version,
                operating_system=os_name,
                os_version=os_version,
                device=self._device(ua),
                device_type=self.device_type(ua).value,
            )
        except Exception:
            logger.warning(f"Failed to parse user agent: {user_agent!r}", exc_info=True)
            return UserAgentInfo()

    @staticmethod
    def _version(ua: str, token: str) -> str:
        match = re.search(rf"(?<={re.escape(token)})[\d_.]+", ua)
        if not match:
            return UNKNOWN
        major = match.group(0).replace("_", ".").split(".")[0]
        return major or UNKNOWN

    def _browser(self, ua: str) -> tuple[str, str]:
        if "edg/" in ua:
            return "Microsoft Edge", self._version(ua, "edg/")
        if "chrome/" in ua:
            return "Chrome", self._version(ua, "chrome/")
        if "firefox/" in ua:
            return "Firefox", self._version(ua, "firefox/")
        if "safari/" in ua:
            return "Safari", self._version(ua, "version/")
        if "opr/" in ua or "opera/" in ua:
            return "Opera", self._version(ua, "opr/" if "opr/" in ua else "opera/")
        return UNKNOWN, UNKNOWN

    def _operating_system(self, ua: str) -> tuple[str, str]:
        if "windows nt" in ua:
            for token, version in _WINDOWS_VERSIONS:
                if token in ua:
                    return "Windows", version
            return "Windows", UNKNOWN
        if "iphone os" in ua or ("ipad" in ua and "cpu os" in ua):
            token = "iphone os " if "iphone os" in ua else "cpu os "
            return "iOS", self._version(ua, token)
        if "mac os x" in ua:
            return "macOS", self._version(ua, "mac os x ")
        if "android" in ua:
            return "Android", self._version(ua, "android ")
        if "ios" in ua:
            return "iOS", UNKNOWN
        if "linux" in ua:
            return "Linux", UNKNOWN
        return UNKNOWN, UNKNOWN

    @staticmethod
    def _device(ua: str) -> str:
        if "iphone" in ua:
            return "iPhone"
        if "ipad" in ua:
            return "iPad"
        if "android" in ua:
            return "Android Phone" if "mobile" in ua else "Android Tablet"
        for token, label in _DEVICE_VENDORS:
            if token in ua:
                return label
        return "Desktop"

    @staticmethod
    def device_type(ua: str) -> DeviceType:
        ua = ua.lower()
        if "mobile" in ua or "iphone" in ua:
            return DeviceType.MOBILE
        if "tablet" in ua or "ipad" in ua or "android" in ua:
            return DeviceType.TABLET
        return DeviceType.DESKTOP
