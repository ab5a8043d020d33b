"""SQLAlchemy ORM models for short links and click events.

Data Model Layout
=================
::
    short_links table
    ├─ id (SERIAL PRIMARY KEY)                 codec input
    ├─ short_code (VARCHAR(50) UNIQUE, INDEXED, NULL until assigned)
    ├─ original_url (TEXT NOT NULL)
    ├─ is_active (BOOLEAN DEFAULT TRUE)
    ├─ expires_at (TIMESTAMPTZ NULL)
    ├─ click_limit (INTEGER DEFAULT -1)        negative = unlimited
    ├─ total_clicks (INTEGER DEFAULT 0)
    ├─ is_password_protected (BOOLEAN)
    ├─ password_hash (VARCHAR(255) NULL)       bcrypt
    ├─ owner_type / owner_id / title
    ├─ created_at (TIMESTAMPTZ, DEFAULT NOW())
    └─ updated_at (TIMESTAMPTZ, DEFAULT NOW(), ON UPDATE)

    click_events table (append only)
    ├─ id (VARCHAR(36) PRIMARY KEY, uuid4)
    ├─ short_link_id (INTEGER, INDEXED)
    ├─ clicked_at (TIMESTAMPTZ, INDEXED)
    ├─ ip_address / session_id / user_agent          raw capture
    ├─ referrer / utm_source .. utm_content          raw capture
    └─ country / city / browser / operating_system /
       device / device_type / referrer_domain /
       traffic_source                                enrichment

How to Use
===========
**Query the hot-path projection**::
    stmt = select(*PROJECTION_COLUMNS).where(ShortLink.short_code == "Ab3xQ9")

**Insert a click**::
    session.add(ClickEvent(short_link_id=1, ip_address="203.0.113.9", ...))
    await session.commit()

Key Behaviours
===============
- short_code is indexed for fast lookups during redirects.
- click_events has no foreign key so inserts never cascade.
- clicked_at is set in Python so ordering never depends on insert order.

Classes:
    ShortLink:  One shortening mapping with lifecycle flags.
    ClickEvent:  One immutable record per successful resolution.
"""

import datetime
import uuid

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base

__all__ = ["ShortLink", "ClickEvent", "PROJECTION_COLUMNS", "UNLIMITED_CLICKS", "utcnow"]

UNLIMITED_CLICKS = -1


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class ShortLink(Base):
    __tablename__ = "short_links"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code: Mapped[str | None] = mapped_column(String(50), unique=True, index=True, nullable=True)
    original_url: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    click_limit: Mapped[int] = mapped_column(Integer, default=UNLIMITED_CLICKS, nullable=False)
    total_clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_password_protected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_type: Mapped[str] = mapped_column(String(20), default="anonymous", nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<ShortLink(id={self.id}, short_code='{self.short_code}', "
            f"active={self.is_active}, clicks={self.total_clicks})>"
        )


class ClickEvent(Base):
    __tablename__ = "click_events"
    __table_args__ = (Index("ix_click_events_link_clicked_at", "short_link_id", "clicked_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    short_link_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    clicked_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True, nullable=False
    )

    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    utm_source: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_term: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_content: Mapped[str | None] = mapped_column(String(255), nullable=True)

    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    browser: Mapped[str | None] = mapped_column(String(100), nullable=True)
    operating_system: Mapped[str | None] = mapped_column(String(100), nullable=True)
    device: Mapped[str | None] = mapped_column(String(100), nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    referrer_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    traffic_source: Mapped[str | None] = mapped_column(String(20), nullable=True)

    def __repr__(self) -> str:
        return f"<ClickEvent(id={self.id}, short_link_id={self.short_link_id}, clicked_at={self.clicked_at})>"


PROJECTION_COLUMNS = (
    ShortLink.id,
    ShortLink.short_code,
    ShortLink.original_url,
    ShortLink.is_active,
    ShortLink.expires_at,
    ShortLink.is_password_protected,
    ShortLink.click_limit,
    ShortLink.total_clicks,
)
