"""Traffic-source classification from the referrer and UTM parameters.

Decision Order
==============
::
    utm_source present?
    ├─ yes → by utm_medium
    │        email → Email          social → Social
    │        cpc|ppc|paid|organic → Search
    │        referral → Referral    display → Campaign
    │        otherwise by utm_source name
    │          social site / "social" → Social
    │          search engine / "search" → Search
    │          else → Campaign
    └─ no → referrer present?
             ├─ yes → host unparsable → Unknown
             │        search engine → Search
             │        social site → Social
             │        else → Referral
             └─ no → Direct
"""

import logging
from dataclasses import dataclass
from urllib.parse import urlsplit

from app.enums import TrafficSource

__all__ = ["TrafficInfo", "TrafficSourceClassifier", "SEARCH_ENGINES", "SOCIAL_SITES"]

logger = logging.getLogger(__name__)

SEARCH_ENGINES = frozenset(
    {"google.com", "bing.com", "yahoo.com", "duckduckgo.com", "baidu.com", "yandex.com"}
)
SOCIAL_SITES = frozenset(
    {
        "facebook.com",
        "twitter.com",
        "x.com",
        "t.co",
        "instagram.com",
        "linkedin.com",
        "pinterest.com",
        "reddit.com",
        "tiktok.com",
        "youtube.com",
        "snapchat.com",
        "whatsapp.com",
    }
)

_MEDIUM_SOURCES = {
    "email": TrafficSource.EMAIL,
    "social": TrafficSource.SOCIAL,
    "cpc": TrafficSource.SEARCH,
    "ppc": TrafficSource.SEARCH,
    "paid": TrafficSource.SEARCH,
    "organic": TrafficSource.SEARCH,
    "referral": TrafficSource.REFERRAL,
    "display": TrafficSource.CAMPAIGN,
}


@dataclass(frozen=True)
class TrafficInfo:
    source: TrafficSource
    referrer_domain: str | None = None


def _matches(host: str, domains: frozenset[str]) -> bool:
    """True for the domain itself and any of its subdomains."""
    return any(host == domain or host.endswith(f".{domain}") for domain in domains)


def _referrer_host(referrer: str) -> str | None:
    parts = urlsplit(referrer.strip())
    if not parts.hostname:
        return None
    host = parts.hostname.lower()
    return host[4:] if host.startswith("www.") else host


class TrafficSourceClassifier:
    def classify(
        self,
        referrer: str | None,
        utm_source: str | None = None,
        utm_medium: str | None = None,
    ) -> TrafficInfo:
        try:
            domain = _referrer_host(referrer) if referrer and referrer.strip() else None
        except ValueError:
            logger.debug(f"Unparsable referrer: {referrer!r}")
            domain = None

        if utm_source and utm_source.strip():
            return TrafficInfo(self._from_utm(utm_source, utm_medium), domain)

        if referrer and referrer.strip():
            if domain is None:
                return TrafficInfo(TrafficSource.UNKNOWN, None)
            if _matches(domain, SEARCH_ENGINES):
                return TrafficInfo(TrafficSource.SEARCH, domain)
            if _matches(domain, SOCIAL_SITES):
                return TrafficInfo(TrafficSource.SOCIAL, domain)
            return TrafficInfo(TrafficSource.REFERRAL, domain)

        return TrafficInfo(TrafficSource.DIRECT, None)

    @staticmethod
    def _from_utm(utm_source: str, utm_medium: str | None) -> TrafficSource:
        medium = (utm_medium or "").strip().lower()
        if medium in _MEDIUM_SOURCES:
            return _MEDIUM_SOURCES[medium]

        source = utm_source.strip().lower()
        if "social" in source or any(site.split(".")[0] == source or site == source for site in SOCIAL_SITES):
            return TrafficSource.SOCIAL
        if "search" in source or any(engine.split(".")[0] == source or engine == source for engine in SEARCH_ENGINES):
            return TrafficSource.SEARCH
        return TrafficSource.CAMPAIGN
