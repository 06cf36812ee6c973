"""
Stripe subscription events mirrored onto businesses.

Stripe is the source of truth for subscription status; this module only copies
status, price and ids onto the matching business so usage gating can read them
locally.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from callback_closer.db import base_crud
from callback_closer.db.models import Business, SubscriptionStatus

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}


def map_stripe_subscription_status(status: Optional[str]) -> SubscriptionStatus:
    if status in ("active", "trialing"):
        return SubscriptionStatus.ACTIVE
    if status in ("past_due", "unpaid"):
        return SubscriptionStatus.PAST_DUE
    if status == "canceled":
        return SubscriptionStatus.CANCELED
    return SubscriptionStatus.INACTIVE


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _parse_business_id(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        logger.warning(f"Ignoring malformed businessId in Stripe payload: {value}")
        return None


def _first_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return _object_id((items[0] or {}).get("price"))


def apply_subscription(db: Session, subscription: Dict[str, Any]) -> Optional[Business]:
    """
    Copy a Stripe subscription onto its business.

    The business is found by ``metadata.businessId`` first, then by customer id.

    Returns:
        Updated business, or None if no business matches
    """
    customer_id = _object_id(subscription.get("customer"))
    business_id = _parse_business_id((subscription.get("metadata") or {}).get("businessId"))

    business = base_crud.get_business(db, business_id) if business_id else None
    if business is None and customer_id:
        business = base_crud.get_business_by_stripe_customer(db, customer_id)

    if business is None:
        logger.warning(f"No business for Stripe subscription {subscription.get('id')} (customer={customer_id})")
        return None

    return base_crud.update_business_billing(
        db,
        business,
        subscription_status=map_stripe_subscription_status(subscription.get("status")),
        stripe_customer_id=customer_id or business.stripe_customer_id,
        stripe_subscription_id=subscription.get("id"),
        stripe_price_id=_first_price_id(subscription),
    )


def apply_checkout_completed(db: Session, session: Dict[str, Any]) -> Optional[Business]:
    """
    Link a completed checkout to its business.

    Only ids are recorded here; status and price arrive with the
    ``customer.subscription.*`` events that Stripe sends for the same checkout.
    """
    business_id = _parse_business_id(
        (session.get("metadata") or {}).get("businessId") or session.get("client_reference_id")
    )
    if not business_id:
        logger.warning("checkout.session.completed without businessId; skipping")
        return None

    business = base_crud.get_business(db, business_id)
    if business is None:
        logger.warning(f"checkout.session.completed: no business found for {business_id}")
        return None

    fields = {}
    customer_id = _object_id(session.get("customer"))
    subscription_id = _object_id(session.get("subscription"))
    if customer_id:
        fields["stripe_customer_id"] = customer_id
    if subscription_id:
        fields["stripe_subscription_id"] = subscription_id

    return base_crud.update_business_billing(db, business, **fields)


def apply_invoice_status(db: Session, invoice: Dict[str, Any], status: SubscriptionStatus) -> Optional[Business]:
    customer_id = _object_id(invoice.get("customer"))
    if not customer_id:
        return None
    business = base_crud.get_business_by_stripe_customer(db, customer_id)
    if business is None:
        logger.warning(f"Invoice event for unknown Stripe customer {customer_id}")
        return None
    return base_crud.update_business_billing(db, business, subscription_status=status)


def handle_stripe_event(db: Session, event: Dict[str, Any]) -> None:
    """
    Dispatch a verified Stripe event.

    Args:
        db: Database session
        event: Parsed event JSON
    """
    event_type = event.get("type", "")
    data_object = (event.get("data") or {}).get("object") or {}

    logger.info(f"Processing Stripe event type={event_type} id={event.get('id')}")

    if event_type == "checkout.session.completed":
        apply_checkout_completed(db, data_object)
    elif event_type in SUBSCRIPTION_EVENTS:
        apply_subscription(db, data_object)
    elif event_type == "invoice.payment_failed":
        apply_invoice_status(db, data_object, SubscriptionStatus.PAST_DUE)
    elif event_type == "invoice.payment_succeeded":
        apply_invoice_status(db, data_object, SubscriptionStatus.ACTIVE)
    else:
        logger.debug(f"Unhandled Stripe event type={event_type}; ignoring")
