"""SQLModel data models for subscription documents relayed from payment webhooks."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlmodel import Field, SQLModel


def _utcnow_naive() -> datetime:
    """Return current UTC time as a naive datetime for SQLite compatibility.

    SQLite stores datetimes without timezone info; naive UTC values keep
    comparisons consistent across the ORM.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Subscription(SQLModel, table=True):
    """One document per application user, keyed by the user id."""

    __tablename__ = "subscriptions"

    user_id: str = Field(primary_key=True, max_length=128)
    tier: str = Field(default="free", max_length=32)
    stripe_customer_id: Optional[str] = Field(default=None, index=True, max_length=128)
    stripe_subscription_id: Optional[str] = Field(default=None, max_length=128)
    status: Optional[str] = Field(default=None, max_length=32)
    is_active: bool = Field(default=False)
    subscription_start: Optional[datetime] = Field(default=None)
    subscription_end: Optional[datetime] = Field(default=None)
    cancel_at_period_end: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=_utcnow_naive)

    def to_document(self) -> dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "userId": self.user_id,
            "tier": self.tier,
            "stripeCustomerId": self.stripe_customer_id,
            "stripeSubscriptionId": self.stripe_subscription_id,
            "status": self.status,
            "isActive": self.is_active,
            "subscriptionStart": _iso(self.subscription_start),
            "subscriptionEnd": _iso(self.subscription_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "updatedAt": _iso(self.updated_at),
        }


class ProcessedEvent(SQLModel, table=True):
    """Webhook event ids already applied; guarantees at-most-once transitions."""

    __tablename__ = "processed_webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=128)
    received_at: datetime = Field(default_factory=_utcnow_naive)
