"""
Monthly conversation usage and plan limits.

A conversation counts against the month in which its first automated SMS was
sent (``Lead.sms_started_at``). Months are calendar months in the billing time
zone, converted to UTC for querying.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from callback_closer.config.settings import Settings, settings
from callback_closer.db import base_crud
from callback_closer.db.models import Business, SubscriptionStatus

logger = logging.getLogger(__name__)

TIER_FREE = "free"
TIER_STARTER = "starter"
TIER_PRO = "pro"

TIER_LIMITS = {
    TIER_FREE: 0,
    TIER_STARTER: 200,
    TIER_PRO: 1000,
}


@dataclass
class ConversationUsage:
    """Usage snapshot for one business and billing month."""
    tier: str
    used: int
    limit: int
    remaining: int
    period_start: datetime
    period_end: datetime
    time_zone: str

    @property
    def limit_reached(self) -> bool:
        return is_usage_limit_reached(self)


def resolve_plan_tier(business: Business, config: Optional[Settings] = None) -> str:
    """Pick the tier from the subscription status and Stripe price id."""
    config = config or settings
    if business.subscription_status != SubscriptionStatus.ACTIVE:
        return TIER_FREE
    if config.stripe_price_starter and business.stripe_price_id == config.stripe_price_starter:
        return TIER_STARTER
    if config.stripe_price_pro and business.stripe_price_id == config.stripe_price_pro:
        return TIER_PRO
    return TIER_FREE


def month_window_utc(now: Optional[datetime] = None, time_zone: Optional[str] = None) -> Tuple[datetime, datetime]:
    """
    UTC bounds of the calendar month containing ``now`` in ``time_zone``.

    Args:
        now: Reference instant; naive values are treated as UTC
        time_zone: IANA zone name, defaults to ``BILLING_TIME_ZONE``

    Returns:
        (start, end) as aware UTC datetimes, end exclusive
    """
    zone = ZoneInfo(time_zone or settings.billing_time_zone)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    local_now = now.astimezone(zone)
    start_local = datetime(local_now.year, local_now.month, 1, tzinfo=zone)
    if local_now.month == 12:
        end_local = datetime(local_now.year + 1, 1, 1, tzinfo=zone)
    else:
        end_local = datetime(local_now.year, local_now.month + 1, 1, tzinfo=zone)

    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def get_conversation_usage(
    db: Session,
    business: Business,
    now: Optional[datetime] = None,
    config: Optional[Settings] = None,
) -> ConversationUsage:
    """Count conversations started by the business in the current billing month."""
    config = config or settings
    tier = resolve_plan_tier(business, config)
    limit = TIER_LIMITS[tier]
    period_start, period_end = month_window_utc(now, config.billing_time_zone)

    # Stored timestamps are naive UTC
    used = base_crud.count_leads_started_between(
        db,
        business.id,
        period_start.replace(tzinfo=None),
        period_end.replace(tzinfo=None),
    )

    return ConversationUsage(
        tier=tier,
        used=used,
        limit=limit,
        remaining=max(limit - used, 0),
        period_start=period_start,
        period_end=period_end,
        time_zone=config.billing_time_zone,
    )


def is_usage_limit_reached(usage: ConversationUsage) -> bool:
    return usage.limit <= 0 or usage.used >= usage.limit


def describe_usage_limit(usage: ConversationUsage) -> str:
    return f"{usage.tier} {usage.used}/{usage.limit} used ({usage.remaining} remaining)"


def usage_limit_owner_message(usage: ConversationUsage, app_name: Optional[str] = None) -> str:
    app_name = app_name or settings.app_name
    return (
        f"{app_name}: Monthly conversation limit reached ({usage.used}/{usage.limit}). "
        "Missed call was recorded, but automated SMS follow-up was not sent."
    )
