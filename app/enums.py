"""Shared enums for the link resolver service.

This module defines all status and category enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = [
    "UNKNOWN",
    "HealthStatus",
    "ResolutionStatus",
    "DenialReason",
    "DeviceType",
    "TrafficSource",
    "CacheStatus",
]

UNKNOWN = "Unknown"


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ResolutionStatus(StrEnum):
    """Terminal outcomes of a single resolution request."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    PASSWORD_REQUIRED = "password_required"
    UNAUTHORIZED = "unauthorized"


class DenialReason(StrEnum):
    """Why an existing link is not currently resolvable."""

    EXPIRED = "expired"
    INACTIVE = "inactive"
    LIMIT_REACHED = "limit_reached"


class DeviceType(StrEnum):
    DESKTOP = "Desktop"
    MOBILE = "Mobile"
    TABLET = "Tablet"
    UNKNOWN = "Unknown"


class TrafficSource(StrEnum):
    DIRECT = "Direct"
    REFERRAL = "Referral"
    SOCIAL = "Social"
    SEARCH = "Search"
    EMAIL = "Email"
    CAMPAIGN = "Campaign"
    UNKNOWN = "Unknown"


class CacheStatus(StrEnum):
    HIT = "hit"
    MISS = "miss"
    BYPASS = "bypass"
