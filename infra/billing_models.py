"""SQLAlchemy models linking application users to billing provider records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Index, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingAccount(Base):
    """Stripe customer and subscription of an application user."""

    __tablename__ = "billing_accounts"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    user_id: str = Column(String(128), unique=True, nullable=False, index=True)
    email: Optional[str] = Column(String(255))
    stripe_customer_id: Optional[str] = Column(String(64), unique=True)
    stripe_subscription_id: Optional[str] = Column(String(64))
    created_at: datetime = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: datetime = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class UsageRecord(Base):
    """Words consumed by a user, summed per billing period."""

    __tablename__ = "billing_usage_records"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    user_id: str = Column(String(128), nullable=False)
    words: int = Column(Integer, nullable=False)
    recorded_at: datetime = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("ix_billing_usage_user_recorded", "user_id", "recorded_at"),)


class UserSession(Base):
    """Login session issued by the auth gateway; the cookie carries ``session_id``."""

    __tablename__ = "user_sessions"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    session_id: str = Column(String(255), unique=True, nullable=False, index=True)
    user_id: str = Column(String(128), nullable=False, index=True)
    email: Optional[str] = Column(String(255))
    expires_at: datetime = Column(DateTime(timezone=True), nullable=False)
    created_at: datetime = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_activity: datetime = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    revoked_at: Optional[datetime] = Column(DateTime(timezone=True))

    __table_args__ = (Index("ix_user_sessions_expires_at", "expires_at"),)


BillingBase = Base

__all__ = ["BillingAccount", "BillingBase", "UsageRecord", "UserSession"]
