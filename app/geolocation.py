"""IP geolocation collaborator used by click enrichment.

Flow Diagram — HttpGeoLocator.locate()
======================================
::
    ┌──────────────┐  private / loopback / empty
    │  ip address  │ ───────────────────────────▶ Unknown
    └──────┬───────┘
           ▼
    ┌──────────────┐  timeout / HTTP error / bad JSON
    │ GET geo API  │ ───────────────────────────▶ Unknown (warning logged)
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ GeoLocation  │
    └──────────────┘

Key Behaviours
===============
- ``locate`` never raises; every failure degrades to ``GeoLocation.unknown()``.
- One ``httpx.AsyncClient`` is shared for the process and closed on shutdown.
"""

import ipaddress
import logging
from abc import ABC, abstractmethod

import httpx
from pydantic import BaseModel, ValidationError

from app.enums import UNKNOWN

__all__ = ["GeoLocation", "GeoLocator", "HttpGeoLocator", "NullGeoLocator", "is_private_address"]

logger = logging.getLogger(__name__)


class GeoLocation(BaseModel):
    country: str = UNKNOWN
    city: str = UNKNOWN
    country_code: str = UNKNOWN
    region: str = UNKNOWN
    latitude: float | None = None
    longitude: float | None = None

    @classmethod
    def unknown(cls) -> "GeoLocation":
        return cls()


class _GeoApiResponse(BaseModel):
    """Subset of the ipapi.co payload."""

    country_name: str | None = None
    country_code: str | None = None
    city: str | None = None
    region: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    error: bool = False


def is_private_address(ip: str | None) -> bool:
    if not ip or ip == "localhost":
        return True
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return True
    return address.is_private or address.is_loopback or address.is_link_local or address.is_reserved


class GeoLocator(ABC):
    @abstractmethod
    async def locate(self, ip: str | None) -> GeoLocation: ...

    async def aclose(self) -> None:
        return None


class NullGeoLocator(GeoLocator):
    """Used when lookups are disabled."""

    async def locate(self, ip: str | None) -> GeoLocation:
        return GeoLocation.unknown()


class HttpGeoLocator(GeoLocator):
    def __init__(self, url_template: str, timeout: float = 2.0, client: httpx.AsyncClient | None = None) -> None:
        self._url_template = url_template
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def locate(self, ip: str | None) -> GeoLocation:
        if is_private_address(ip):
            return GeoLocation.unknown()

        try:
            response = await self._client.get(self._url_template.format(ip=ip))
            response.raise_for_status()
            payload = _GeoApiResponse.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError):
            logger.warning(f"Failed to get geolocation for IP: {ip}", exc_info=True)
            return GeoLocation.unknown()

        if payload.error:
            logger.warning(f"Geolocation API returned an error for IP: {ip}")
            return GeoLocation.unknown()

        return GeoLocation(
            country=payload.country_name or UNKNOWN,
            city=payload.city or UNKNOWN,
            country_code=payload.country_code or UNKNOWN,
            region=payload.region or UNKNOWN,
            latitude=payload.latitude,
            longitude=payload.longitude,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
