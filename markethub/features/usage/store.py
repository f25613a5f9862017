"""
markethub/features/usage/store.py

Usage store: the single `user_usage` row per user.

Reads never fail for unknown users (a zero-initialised free record is
returned); writes are INSERT ... ON CONFLICT (user_id) merges so a user
never has two rows.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from markethub.core.database import dialect_insert, get_db_session, user_usage
from markethub.features.tiers.catalog import normalize_tier
from markethub.features.usage.periods import as_utc
from markethub.models.usage import Category, TierSource, UsageRecord


# Columns callers may write through upsert_usage_record
WRITABLE_FIELDS = {
    "tier",
    "tier_source",
    "subscribed",
    "period_start",
    "stripe_customer_id",
    "stripe_subscription_id",
    "subscription_end_date",
    "coupon_applied",
    "coupon_applied_at",
} | {category.column for category in Category}


def _tier_source(value: Optional[str]) -> TierSource:
    try:
        return TierSource(value)
    except ValueError:
        return TierSource.DEFAULT


def default_record(user_id: str, now: Optional[datetime] = None) -> UsageRecord:
    """Zero-initialised free-tier record for a user without a row."""
    return UsageRecord(user_id=user_id, period_start=as_utc(now), persisted=False)


def row_to_record(row) -> UsageRecord:
    return UsageRecord(
        user_id=row.user_id,
        tier=normalize_tier(row.tier),
        tier_source=_tier_source(row.tier_source),
        subscribed=bool(row.subscribed),
        products_count=max(0, row.products_count or 0),
        images_count=max(0, row.images_count or 0),
        copies_count=max(0, row.copies_count or 0),
        content_marketing_count=max(0, row.content_marketing_count or 0),
        period_start=as_utc(row.period_start),
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        subscription_end_date=as_utc(row.subscription_end_date) if row.subscription_end_date else None,
        coupon_applied=row.coupon_applied,
        coupon_applied_at=as_utc(row.coupon_applied_at) if row.coupon_applied_at else None,
    )


def _serialize(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown usage fields: {', '.join(sorted(unknown))}")
    values = {}
    for key, value in fields.items():
        if hasattr(value, "value") and key in ("tier", "tier_source"):
            value = value.value
        elif isinstance(value, datetime):
            value = as_utc(value)
        values[key] = value
    return values


def load_usage_row(session: Session, user_id: str, *, for_update: bool = False):
    query = select(user_usage).where(user_usage.c.user_id == user_id)
    if for_update:
        query = query.with_for_update()
    return session.execute(query).first()


def ensure_usage_record(session: Session, user_id: str, now: Optional[datetime] = None) -> None:
    """Insert the default row for user_id if none exists (no-op otherwise)."""
    stmt = dialect_insert(session, user_usage).values(
        user_id=user_id,
        tier="free",
        tier_source=TierSource.DEFAULT.value,
        subscribed=False,
        period_start=as_utc(now),
    )
    session.execute(stmt.on_conflict_do_nothing(index_elements=["user_id"]))


def upsert_in_session(session: Session, user_id: str, fields: Dict[str, Any], now: Optional[datetime] = None) -> None:
    """Merge `fields` into the user's row inside an existing transaction."""
    values = _serialize(fields)
    insert_values = {
        "user_id": user_id,
        "tier": "free",
        "tier_source": TierSource.DEFAULT.value,
        "subscribed": False,
        "period_start": as_utc(now),
    }
    insert_values.update(values)
    stmt = dialect_insert(session, user_usage).values(**insert_values)
    update_values = dict(values)
    update_values["updated_at"] = as_utc(now)
    session.execute(
        stmt.on_conflict_do_update(index_elements=["user_id"], set_=update_values)
    )


def get_usage_record(user_id: str, now: Optional[datetime] = None) -> UsageRecord:
    """Stored record for user_id, or a default free record if none exists."""
    with get_db_session() as session:
        row = load_usage_row(session, user_id)
    if not row:
        return default_record(user_id, now)
    return row_to_record(row)


def upsert_usage_record(user_id: str, now: Optional[datetime] = None, **fields: Any) -> UsageRecord:
    """
    Create or merge the user's row in one statement and return the stored record.

    Fields not named keep their stored value (counters are never reset here
    unless passed explicitly).
    """
    with get_db_session() as session:
        upsert_in_session(session, user_id, fields, now)
        row = load_usage_row(session, user_id)
    return row_to_record(row)


def find_user_by_customer(stripe_customer_id: str) -> Optional[str]:
    """user_id linked to a Stripe customer, if the resolver has recorded one."""
    with get_db_session() as session:
        row = session.execute(
            select(user_usage.c.user_id).where(user_usage.c.stripe_customer_id == stripe_customer_id)
        ).first()
    return row.user_id if row else None


def reset_period(session: Session, user_id: str, now: datetime, boundary: Optional[datetime] = None) -> bool:
    """
    Zero every counter and move period_start to `now`.

    With `boundary`, only rows whose period_start is still before it are reset,
    so a roll already applied by a concurrent writer is not repeated.
    """
    current = as_utc(now)
    values: Dict[str, Any] = {category.column: 0 for category in Category}
    values["period_start"] = current
    values["updated_at"] = current
    stmt = update(user_usage).where(user_usage.c.user_id == user_id)
    if boundary is not None:
        stmt = stmt.where(user_usage.c.period_start < as_utc(boundary))
    return session.execute(stmt.values(**values)).rowcount == 1
