"""
markethub/features/usage/service.py

Quota gate and atomic increment.

- can_use / remaining: read-only helpers for quota display
- check_and_increment: the only entry point for metered actions

check_and_increment runs in one transaction: ensure row, lock row, roll the
period if due, then a guarded UPDATE that only increments while the counter
(or the combined pool) is below the limit. Concurrent callers for the same
user never push a counter past its limit.
"""

from datetime import datetime
from typing import Optional, Tuple, Union

from sqlalchemy import update

from markethub.core.database import get_db_session, user_usage
from markethub.core.errors import ValidationError
from markethub.core.logging import log_event
from markethub.core.tracing import start_span
from markethub.features.tiers.catalog import UNLIMITED, TierCatalog, TierPolicy, get_catalog
from markethub.features.usage.periods import as_utc, next_period_start, roll_if_needed
from markethub.features.usage.store import (
    ensure_usage_record,
    get_usage_record,
    load_usage_row,
    reset_period,
    row_to_record,
)
from markethub.models.usage import Category, IncrementResult, UsageRecord


def coerce_category(value: Union[Category, str]) -> Category:
    """Category from its value; unknown categories are a caller error."""
    if isinstance(value, Category):
        return value
    try:
        return Category(value)
    except ValueError:
        allowed = ", ".join(c.value for c in Category)
        raise ValidationError(
            f"Unknown usage category: {value}",
            details={"category": value, "allowed": allowed},
        )


def _used_against_limit(record: UsageRecord, policy: TierPolicy, category: Category) -> int:
    # Combined pools compare the sum of all counters against the limit
    if policy.combined:
        return record.total_used()
    return record.count_for(category)


def _evaluate(
    user_id: str,
    category: Union[Category, str],
    now: Optional[datetime],
    catalog: Optional[TierCatalog],
) -> Tuple[Category, TierPolicy, int, int]:
    cat = coerce_category(category)
    current = as_utc(now)
    record = get_usage_record(user_id, current)
    policy = (catalog or get_catalog()).policy_for(record.tier)
    record = roll_if_needed(record, policy.cadence, current)
    return cat, policy, _used_against_limit(record, policy, cat), policy.limit_for(cat)


def can_use(
    user_id: str,
    category: Union[Category, str],
    now: Optional[datetime] = None,
    catalog: Optional[TierCatalog] = None,
) -> bool:
    """
    True when the user may perform one more action in `category`.

    Display only: metered actions must go through check_and_increment.
    """
    _, _, used, limit = _evaluate(user_id, category, now, catalog)
    if limit == UNLIMITED:
        return True
    return used < limit


def remaining(
    user_id: str,
    category: Union[Category, str],
    now: Optional[datetime] = None,
    catalog: Optional[TierCatalog] = None,
) -> Optional[int]:
    """Actions left this period; None when the category is unlimited."""
    _, _, used, limit = _evaluate(user_id, category, now, catalog)
    if limit == UNLIMITED:
        return None
    return max(0, limit - used)


def _guarded_increment(session, user_id: str, policy: TierPolicy, category: Category) -> bool:
    column = user_usage.c[category.column]
    stmt = (
        update(user_usage)
        .where(user_usage.c.user_id == user_id)
        .values({category.column: column + 1})
    )
    limit = policy.limit_for(category)
    if limit != UNLIMITED:
        if policy.combined:
            pool = sum(user_usage.c[c.column] for c in Category)
            stmt = stmt.where(pool < limit)
        else:
            stmt = stmt.where(column < limit)
    return session.execute(stmt).rowcount == 1


def check_and_increment(
    user_id: str,
    category: Union[Category, str],
    now: Optional[datetime] = None,
    catalog: Optional[TierCatalog] = None,
) -> IncrementResult:
    """
    Atomically check the quota for `category` and consume one unit if allowed.

    Args:
        user_id: Metered user
        category: products | images | copies | content_marketing
        now: Fixed timestamp (defaults to now, UTC)
        catalog: Tier catalog override (defaults to the configured one)

    Returns:
        IncrementResult; when allowed is False nothing was incremented
        (a due period roll is still persisted)

    Raises:
        ValidationError: Unknown category
    """
    cat = coerce_category(category)
    current = as_utc(now)
    active = catalog or get_catalog()

    with start_span("usage.check_and_increment", {"user_id": user_id, "category": cat.value}) as span:
        with get_db_session() as session:
            # The insert takes the write lock first so concurrent SQLite writers queue
            ensure_usage_record(session, user_id, current)
            record = row_to_record(load_usage_row(session, user_id, for_update=True))
            policy = active.policy_for(record.tier)

            rolled = roll_if_needed(record, policy.cadence, current)
            if rolled is not record:
                reset_period(
                    session, user_id, current, boundary=next_period_start(record.period_start, policy.cadence)
                )
                log_event(
                    "info",
                    "usage.period_rolled",
                    user_id=user_id,
                    category=cat.value,
                    extra={"cadence": policy.cadence.value, "previous_start": record.period_start.isoformat()},
                )
                record = rolled

            allowed = _guarded_increment(session, user_id, policy, cat)

        used = _used_against_limit(record, policy, cat) + (1 if allowed else 0)
        limit = policy.limit_for(cat)
        if limit == UNLIMITED:
            result = IncrementResult(
                allowed=allowed, category=cat, tier=policy.tier, used=used, limit=None, remaining=None,
            )
        else:
            result = IncrementResult(
                allowed=allowed,
                category=cat,
                tier=policy.tier,
                used=used,
                limit=limit,
                remaining=max(0, limit - used),
            )

        if span is not None:
            span.set_attribute("usage.allowed", allowed)
            span.set_attribute("usage.used", used)

    log_event(
        "info" if allowed else "warning",
        "usage.increment" if allowed else "usage.denied",
        user_id=user_id,
        category=cat.value,
        extra={"tier": policy.tier.value, "used": used, "limit": result.limit},
    )
    return result
