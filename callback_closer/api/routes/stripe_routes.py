"""
API route for Stripe subscription webhooks.
"""

import json
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from callback_closer.config.settings import settings
from callback_closer.db.database import get_db
from callback_closer.services.billing_service import handle_stripe_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/stripe", tags=["stripe"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    """
    Stripe webhook endpoint.

    Verifies the signature with STRIPE_WEBHOOK_SECRET, then mirrors
    subscription state onto the business. Processing errors return 500 so
    Stripe retries the delivery.
    """
    if not stripe_signature or not settings.stripe_webhook_secret:
        return JSONResponse(content={"error": "Missing Stripe webhook configuration"}, status_code=400)

    payload = (await request.body()).decode("utf-8")

    try:
        stripe.Webhook.construct_event(
            payload=payload,
            sig_header=stripe_signature,
            secret=settings.stripe_webhook_secret,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe signature verification failed: {e}")
        return JSONResponse(content={"error": "Invalid Stripe signature"}, status_code=400)
    except ValueError as e:
        logger.warning(f"Invalid Stripe webhook payload: {e}")
        return JSONResponse(content={"error": "Invalid payload"}, status_code=400)

    try:
        handle_stripe_event(db, json.loads(payload))
    except Exception as e:
        logger.error(f"Stripe webhook handler error: {e}")
        db.rollback()
        return JSONResponse(content={"error": "Webhook processing failed"}, status_code=500)

    return {"received": True}
