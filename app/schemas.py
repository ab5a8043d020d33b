"""Pydantic schemas for request/response validation and internal read models.

Schema Hierarchy
=================
::
    LinkCreate (Input)
    ├─ url: str (validated URL)
    ├─ custom_code: str | None (alphabet + reserved word checks)
    ├─ password / expires_at / click_limit / title
    LinkUpdate (Input)
    ├─ short_code / expires_at / clear_expiration / is_active
    PasswordVerify (Input)
    └─ password: str

    LinkProjection (Read model, hot path, also the Redis cache payload)
    ClickTrackingData (Raw click capture handed to ingestion)

    LinkResponse / LinkStatusResponse / ClickEventResponse /
    ClickPage / ReferrerCount / ClickAnalytics / CleanupResponse /
    HealthResponse (Outputs)

How to Use
===========
**Step 1 — Input validation**::
    @router.post("/api/shorten")
    async def shorten_url(payload: LinkCreate): ...

**Step 2 — Gating on the projection**::
    projection = LinkProjection.model_validate(row)
    reason = projection.denial_reason(now)

Key Behaviours
===============
- URL validation uses the validators library.
- Custom codes use the codec alphabet, the configured length bounds and a
  reserved word denylist.
- Naive datetimes are treated as UTC everywhere.
- Models are configured for ORM attribute mapping.

Classes:
    See the hierarchy above.
"""

import datetime

import validators
from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from app.codec import validate_custom_code
from app.config import get_settings
from app.enums import DenialReason, HealthStatus

__all__ = [
    "as_utc",
    "LinkCreate",
    "LinkUpdate",
    "PasswordVerify",
    "LinkProjection",
    "ClickTrackingData",
    "LinkResponse",
    "LinkStatusResponse",
    "ClickEventResponse",
    "ClickPage",
    "ReferrerCount",
    "ClickAnalytics",
    "CleanupResponse",
    "HealthResponse",
]


def as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    """Normalise to UTC; naive values are taken as UTC (SQLite hands them back without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def _check_custom_code(value: str) -> str:
    settings = get_settings()
    # InvalidArgumentError is a ValueError, so pydantic reports it as a 422
    return validate_custom_code(value, settings.CUSTOM_CODE_MIN_LENGTH, settings.CUSTOM_CODE_MAX_LENGTH)


# ============================================================================
# INPUTS
# ============================================================================


class LinkCreate(BaseModel):
    url: str
    custom_code: str | None = None
    password: str | None = Field(None, min_length=1, max_length=128)
    expires_at: datetime.datetime | None = None
    click_limit: int = Field(-1, ge=-1, description="-1 means unlimited")
    title: str | None = Field(None, max_length=255)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not validators.url(v):
            raise ValueError("Invalid URL provided")
        return v

    @field_validator("custom_code")
    @classmethod
    def validate_custom_code(cls, v: str | None) -> str | None:
        if v is not None:
            return _check_custom_code(v)
        return v

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return as_utc(v)


class LinkUpdate(BaseModel):
    short_code: str | None = None
    expires_at: datetime.datetime | None = None
    clear_expiration: bool = False
    is_active: bool | None = None

    @field_validator("short_code")
    @classmethod
    def validate_short_code(cls, v: str | None) -> str | None:
        if v is not None:
            return _check_custom_code(v)
        return v

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return as_utc(v)

    @model_validator(mode="after")
    def check_not_empty(self) -> "LinkUpdate":
        if (
            self.short_code is None
            and self.expires_at is None
            and not self.clear_expiration
            and self.is_active is None
        ):
            raise ValueError("At least one field must be provided")
        if self.expires_at is not None and self.clear_expiration:
            raise ValueError("expires_at and clear_expiration are mutually exclusive")
        return self


class PasswordVerify(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


# ============================================================================
# READ MODELS
# ============================================================================


class LinkProjection(BaseModel):
    """Minimal link state needed to gate a redirect."""

    id: int
    short_code: str
    original_url: str
    is_active: bool
    expires_at: datetime.datetime | None = None
    is_password_protected: bool = False
    click_limit: int = -1
    total_clicks: int = 0

    model_config = {"from_attributes": True}

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return as_utc(v)

    @property
    def has_click_limit(self) -> bool:
        return self.click_limit >= 0

    def is_expired(self, now: datetime.datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_click_limit_reached(self) -> bool:
        return self.has_click_limit and self.total_clicks >= self.click_limit

    def denial_reason(self, now: datetime.datetime) -> DenialReason | None:
        if self.is_expired(now):
            return DenialReason.EXPIRED
        if not self.is_active:
            return DenialReason.INACTIVE
        if self.is_click_limit_reached():
            return DenialReason.LIMIT_REACHED
        return None


class ClickTrackingData(BaseModel):
    """Raw request metadata captured on the redirect path."""

    ip_address: str
    session_id: str
    user_agent: str = "Unknown"
    referrer: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None


# ============================================================================
# OUTPUTS
# ============================================================================


class LinkResponse(BaseModel):
    id: int
    short_code: str
    original_url: str
    short_url: str
    is_active: bool
    expires_at: datetime.datetime | None
    click_limit: int
    total_clicks: int
    is_password_protected: bool
    title: str | None = None
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = {"from_attributes": True}


class LinkStatusResponse(BaseModel):
    short_code: str
    is_valid: bool
    is_active: bool
    is_click_limit_reached: bool
    is_password_protected: bool


class ClickEventResponse(BaseModel):
    id: str
    short_link_id: int
    clicked_at: datetime.datetime
    ip_address: str
    session_id: str
    user_agent: str
    referrer: str | None = None
    referrer_domain: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None
    country: str | None = None
    city: str | None = None
    browser: str | None = None
    operating_system: str | None = None
    device: str | None = None
    device_type: str | None = None
    traffic_source: str | None = None

    model_config = {"from_attributes": True}

    @field_validator("clicked_at")
    @classmethod
    def _assume_utc(cls, v: datetime.datetime) -> datetime.datetime:
        return as_utc(v)


class ClickPage(BaseModel):
    items: list[ClickEventResponse]
    total_count: int
    page: int
    size: int

    @computed_field
    @property
    def total_pages(self) -> int:
        return (self.total_count + self.size - 1) // self.size


class ReferrerCount(BaseModel):
    domain: str
    clicks: int


class ClickAnalytics(BaseModel):
    """Aggregated view over the click events of one link."""

    short_link_id: int
    start_date: datetime.datetime | None = None
    end_date: datetime.datetime | None = None
    total_clicks: int = 0
    unique_visitors: int = 0
    first_click_at: datetime.datetime | None = None
    last_click_at: datetime.datetime | None = None
    clicks_by_country: dict[str, int] = Field(default_factory=dict)
    clicks_by_device_type: dict[str, int] = Field(default_factory=dict)
    clicks_by_traffic_source: dict[str, int] = Field(default_factory=dict)
    clicks_by_browser: dict[str, int] = Field(default_factory=dict)
    clicks_by_operating_system: dict[str, int] = Field(default_factory=dict)
    top_referrers: list[ReferrerCount] = Field(default_factory=list)
    daily_clicks: dict[datetime.date, int] = Field(default_factory=dict)
    hourly_clicks: dict[int, int] = Field(default_factory=dict)
    generated_at: datetime.datetime


class CleanupResponse(BaseModel):
    cutoff: datetime.datetime
    deleted: int


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
