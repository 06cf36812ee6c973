import hashlib
import hmac
import json
import time

from callback_closer.db.models import Business, SubscriptionStatus

WEBHOOK_PATH = "/api/v1/stripe/webhook"
WEBHOOK_SECRET = "whsec_test"


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def post_event(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event)
    return client.post(
        WEBHOOK_PATH,
        content=payload,
        headers={"Stripe-Signature": sign(payload, secret), "Content-Type": "application/json"},
    )


def event(event_type, data_object):
    return {"id": "evt_1", "object": "event", "type": event_type, "data": {"object": data_object}}


def reload(db_session, business):
    db_session.expire_all()
    return db_session.query(Business).filter(Business.id == business.id).one()


def test_subscription_update_activates_business(client, make_business, db_session):
    business = make_business(subscription_status=SubscriptionStatus.INACTIVE, stripe_price_id=None)

    response = post_event(client, event("customer.subscription.updated", {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": "active",
        "metadata": {"businessId": str(business.id)},
        "items": {"data": [{"price": {"id": "price_pro"}}]},
    }))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    business = reload(db_session, business)
    assert business.subscription_status == SubscriptionStatus.ACTIVE
    assert business.stripe_price_id == "price_pro"
    assert business.stripe_customer_id == "cus_1"
    assert business.stripe_subscription_id == "sub_1"


def test_subscription_deleted_found_by_customer(client, make_business, db_session):
    business = make_business(stripe_customer_id="cus_2")

    post_event(client, event("customer.subscription.deleted", {
        "id": "sub_2",
        "object": "subscription",
        "customer": "cus_2",
        "status": "canceled",
        "items": {"data": []},
    }))

    assert reload(db_session, business).subscription_status == SubscriptionStatus.CANCELED


def test_subscription_with_unknown_business_id_falls_back_to_customer(client, make_business, db_session):
    business = make_business(stripe_customer_id="cus_7", subscription_status=SubscriptionStatus.INACTIVE)

    post_event(client, event("customer.subscription.updated", {
        "id": "sub_7",
        "object": "subscription",
        "customer": "cus_7",
        "status": "active",
        "metadata": {"businessId": "00000000-0000-0000-0000-000000000099"},
        "items": {"data": [{"price": "price_starter"}]},
    }))

    business = reload(db_session, business)
    assert business.subscription_status == SubscriptionStatus.ACTIVE
    assert business.stripe_price_id == "price_starter"


def test_invoice_payment_failed_marks_past_due(client, make_business, db_session):
    business = make_business(stripe_customer_id="cus_3")

    post_event(client, event("invoice.payment_failed", {"id": "in_1", "object": "invoice", "customer": "cus_3"}))

    assert reload(db_session, business).subscription_status == SubscriptionStatus.PAST_DUE


def test_checkout_links_customer(client, make_business, db_session):
    business = make_business(subscription_status=SubscriptionStatus.INACTIVE)

    post_event(client, event("checkout.session.completed", {
        "id": "cs_1",
        "object": "checkout.session",
        "client_reference_id": str(business.id),
        "customer": "cus_4",
        "subscription": "sub_4",
    }))

    business = reload(db_session, business)
    assert business.stripe_customer_id == "cus_4"
    assert business.stripe_subscription_id == "sub_4"
    assert business.subscription_status == SubscriptionStatus.INACTIVE


def test_unhandled_event_is_acknowledged(client):
    response = post_event(client, event("customer.created", {"id": "cus_5", "object": "customer"}))
    assert response.status_code == 200


def test_bad_signature_is_rejected(client, make_business, db_session):
    business = make_business(stripe_customer_id="cus_6")

    response = post_event(
        client,
        event("invoice.payment_failed", {"id": "in_2", "object": "invoice", "customer": "cus_6"}),
        secret="whsec_other",
    )

    assert response.status_code == 400
    assert reload(db_session, business).subscription_status == SubscriptionStatus.ACTIVE


def test_missing_signature_is_rejected(client):
    response = client.post(WEBHOOK_PATH, content="{}", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
