from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from guildmaster.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Guild(Base):
    __tablename__ = "guilds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # role name -> {"permissions": [...], "description": ...}
    custom_roles: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    # user id -> role name
    member_roles: Mapped[dict[str, str]] = mapped_column(JSON, default=dict, nullable=False)

    plan: Mapped[str] = mapped_column(String(16), default="free", nullable=False)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(128), index=True, nullable=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    stripe_price_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    stripe_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pro_trial_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    last_stripe_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
