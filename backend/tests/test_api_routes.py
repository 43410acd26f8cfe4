from __future__ import annotations

from datetime import timedelta

from conftest import auth_headers, checkout_completed, sign, stripe_event
from sqlmodel import select

from fundify.enums import BillingInterval, SubscriptionStatus
from fundify.models import MembershipTier, ProcessedEvent, Subscription, utc_now

API = "/api/v1"


def _webhook(client, payload: str, signature: str | None = None):
    return client.post(
        f"{API}/stripe/webhook",
        content=payload.encode(),
        headers={
            "Stripe-Signature": signature or sign(payload),
            "Content-Type": "application/json",
        },
    )


def test_health_check(client):
    r = client.get(f"{API}/utils/health-check/")
    assert r.status_code == 200
    assert r.json() is True


def test_requires_valid_token(client):
    r = client.get(f"{API}/subscriptions/me")
    assert r.status_code in (401, 403)

    r = client.get(f"{API}/subscriptions/me", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401
    assert r.json() == {"code": 401000, "message": "Could not validate credentials", "data": None}


def test_tier_lifecycle(client, db, make_user, make_subscription):
    creator = make_user()
    headers = auth_headers(creator)

    r = client.post(
        f"{API}/tiers",
        headers=headers,
        json={
            "name": "Backstage",
            "price": "9.99",
            "interval": "monthly",
            "perks": ["Monthly Q&A", "  "],
            "max_subscribers": 2,
            "position": 1,
        },
    )
    assert r.status_code == 200
    body = r.json()
    assert body["code"] == 0
    tier = body["data"]
    assert tier["price"] == "9.99"
    assert tier["perks"] == ["Monthly Q&A"]
    assert tier["spots_left"] == 2
    tier_id = tier["id"]

    r = client.post(
        f"{API}/tiers",
        headers=headers,
        json={"name": "Fan", "price": "3.00", "position": 0},
    )
    assert r.status_code == 200

    r = client.get(f"{API}/tiers/creator/{creator.id}")
    assert [t["name"] for t in r.json()["data"]] == ["Fan", "Backstage"]

    r = client.patch(f"{API}/tiers/{tier_id}", headers=headers, json={"price": "11.00"})
    assert r.status_code == 200
    assert r.json()["data"]["price"] == "11.00"

    # other creators cannot edit
    r = client.patch(
        f"{API}/tiers/{tier_id}", headers=auth_headers(make_user()), json={"name": "Mine"}
    )
    assert r.status_code == 403

    stored = db.get(MembershipTier, tier_id)
    make_subscription(make_user(), stored)
    make_subscription(make_user(), stored)

    r = client.patch(f"{API}/tiers/{tier_id}", headers=headers, json={"max_subscribers": 1})
    assert r.status_code == 400
    assert r.json()["code"] == 400202

    r = client.patch(f"{API}/tiers/{tier_id}", headers=headers, json={"interval": "yearly"})
    assert r.status_code == 400
    assert r.json()["code"] == 400203

    r = client.patch(
        f"{API}/tiers/{tier_id}", headers=headers, json={"name": "VIP", "description": None}
    )
    assert r.status_code == 200
    assert r.json()["data"]["name"] == "VIP"
    assert r.json()["data"]["spots_left"] == 0

    r = client.delete(f"{API}/tiers/{tier_id}", headers=headers)
    assert r.json()["data"] == {"deleted": False, "is_active": False}
    db.expire_all()
    assert db.get(MembershipTier, tier_id).is_active is False

    r = client.get(f"{API}/tiers/creator/{creator.id}")
    assert [t["name"] for t in r.json()["data"]] == ["Fan"]


def test_delete_unused_tier(client, db, make_user, make_tier):
    creator = make_user()
    tier = make_tier(creator)

    r = client.delete(f"{API}/tiers/{tier.id}", headers=auth_headers(creator))

    assert r.json()["data"]["deleted"] is True
    r = client.get(f"{API}/tiers/{tier.id}")
    assert r.status_code == 404
    assert r.json()["code"] == 404101


def test_tier_validation_error(client, make_user):
    r = client.post(
        f"{API}/tiers",
        headers=auth_headers(make_user()),
        json={"name": "Free", "price": "0", "interval": "weekly"},
    )
    assert r.status_code == 422
    body = r.json()
    assert body["code"] == 422000
    assert {tuple(e["loc"])[-1] for e in body["data"]["errors"]} == {"price", "interval"}


def test_checkout_webhook_cancel_flow(client, db, fake_stripe, make_user, make_tier):
    subscriber = make_user()
    creator = make_user()
    tier = make_tier(creator, max_subscribers=1)
    headers = auth_headers(subscriber)

    r = client.post(f"{API}/subscriptions", headers=headers, json={"tier_id": tier.id})
    assert r.status_code == 200
    checkout = r.json()["data"]
    assert checkout["url"].startswith("https://checkout.stripe.test/")
    subscription_id = checkout["subscription_id"]

    r = client.get(f"{API}/subscriptions/me", headers=headers)
    assert r.json()["data"]["data"][0]["status"] == "pending"

    completed = stripe_event(
        "checkout.session.completed",
        {
            "id": checkout["session_id"],
            "subscription": "sub_flow",
            "customer": f"cus_{subscriber.id}",
            "metadata": {
                "subscription_id": str(subscription_id),
                "subscriber_id": str(subscriber.id),
                "creator_id": str(creator.id),
                "tier_id": str(tier.id),
            },
        },
        event_id="evt_flow_1",
    )
    r = _webhook(client, completed)
    assert r.status_code == 200
    assert r.json()["data"]["outcome"] == "applied"

    r = _webhook(client, completed)
    assert r.json()["data"]["duplicate"] is True

    r = client.get(f"{API}/subscriptions/{subscription_id}", headers=headers)
    sub = r.json()["data"]
    assert sub["status"] == "active"
    assert sub["tier"]["id"] == tier.id
    assert sub["next_billing_date"] is not None

    # creator can read it too, strangers cannot
    assert client.get(
        f"{API}/subscriptions/{subscription_id}", headers=auth_headers(creator)
    ).status_code == 200
    assert client.get(
        f"{API}/subscriptions/{subscription_id}", headers=auth_headers(make_user())
    ).status_code == 403

    r = client.get(f"{API}/subscriptions/access/{creator.id}", headers=headers)
    assert r.json()["data"]["has_access"] is True

    # tier is full now
    r = client.post(
        f"{API}/subscriptions", headers=auth_headers(make_user()), json={"tier_id": tier.id}
    )
    assert r.status_code == 409
    assert r.json() == {
        "code": 409201,
        "message": "This tier is full. Please try another tier.",
        "data": None,
    }

    r = client.post(f"{API}/subscriptions/{subscription_id}/pause", headers=headers)
    assert r.json()["data"]["status"] == "paused"
    r = client.get(f"{API}/subscriptions/access/{creator.id}", headers=headers)
    assert r.json()["data"]["has_access"] is False
    r = client.post(f"{API}/subscriptions/{subscription_id}/resume", headers=headers)
    assert r.json()["data"]["status"] == "active"

    r = client.post(f"{API}/subscriptions/{subscription_id}/cancel", headers=headers)
    cancelled = r.json()["data"]
    assert cancelled["status"] == "cancelled"
    assert cancelled["end_date"] == sub["next_billing_date"]

    # seat released at once, access kept until the period ends
    db.expire_all()
    assert db.get(MembershipTier, tier.id).current_subscribers == 0
    r = client.get(f"{API}/subscriptions/access/{creator.id}", headers=headers)
    assert r.json()["data"]["has_access"] is True
    assert r.json()["data"]["status"] == "cancelled"

    r = client.post(f"{API}/subscriptions/{subscription_id}/resume", headers=headers)
    assert r.status_code == 409
    assert r.json()["code"] == 409101

    deleted = stripe_event("customer.subscription.deleted", {"id": "sub_flow"})
    assert _webhook(client, deleted).json()["data"]["outcome"] == "noop"
    db.expire_all()
    assert db.get(MembershipTier, tier.id).current_subscribers == 0


def test_webhook_rejections(client, db):
    payload = stripe_event("invoice.paid", {"id": "in_1"}, event_id="evt_reject")

    r = _webhook(client, payload, signature="t=1,v1=deadbeef")
    assert r.status_code == 400
    assert r.json()["code"] == 400300

    r = _webhook(client, "{broken")
    assert r.status_code == 200
    assert r.json()["data"]["rejected"] == "malformed_payload"

    assert db.exec(select(ProcessedEvent)).all() == []


def test_subscribers_with_monthly_revenue(client, make_user, make_tier, make_subscription):
    creator = make_user()
    monthly = make_tier(creator, price="10.00")
    yearly = make_tier(creator, price="120.00", interval=BillingInterval.yearly)
    make_subscription(make_user(name="A"), monthly)
    make_subscription(make_user(name="B"), yearly)
    make_subscription(make_user(name="C"), monthly, status=SubscriptionStatus.paused)
    make_subscription(
        make_user(name="D"),
        monthly,
        status=SubscriptionStatus.cancelled,
        end_date=utc_now() + timedelta(days=3),
    )

    r = client.get(f"{API}/subscriptions/subscribers", headers=auth_headers(creator))

    data = r.json()["data"]
    assert data["stats"] == {"total_subscribers": 2, "monthly_revenue": "20.00"}
    assert sorted(s["name"] for s in data["data"]) == ["A", "B"]


def test_my_subscriptions_lists_newest_first(client, make_user, make_tier, make_subscription):
    subscriber = make_user()
    old = make_subscription(
        subscriber,
        make_tier(make_user()),
        status=SubscriptionStatus.expired,
        created_at=utc_now() - timedelta(days=40),
    )
    new = make_subscription(subscriber, make_tier(make_user()))

    r = client.get(f"{API}/subscriptions/me", headers=auth_headers(subscriber))

    body = r.json()["data"]
    assert body["count"] == 2
    assert [s["id"] for s in body["data"]] == [new.id, old.id]
    assert body["data"][0]["tier"]["price"] == "10.00"


def test_stripe_portal_and_config(client, fake_stripe, make_user):
    r = client.get(f"{API}/stripe/config")
    assert r.json()["data"] == {"publishable_key": "pk_test_123", "currency": "usd"}

    no_customer = make_user()
    r = client.post(f"{API}/stripe/portal-session", headers=auth_headers(no_customer))
    assert r.status_code == 400
    assert r.json()["code"] == 400205

    customer = make_user(stripe_customer_id="cus_portal")
    r = client.post(
        f"{API}/stripe/portal-session",
        headers=auth_headers(customer),
        json={"return_url": "https://app.example.com/billing"},
    )
    assert r.json()["data"]["url"] == "https://billing.stripe.test/cus_portal"
    assert fake_stripe.portal_sessions[0]["return_url"] == "https://app.example.com/billing"


def test_cancel_requires_ownership(client, db, make_user, make_tier, make_subscription):
    subscriber = make_user()
    sub = make_subscription(subscriber, make_tier(make_user()))

    r = client.post(
        f"{API}/subscriptions/{sub.id}/cancel", headers=auth_headers(make_user())
    )
    assert r.status_code == 403

    r = client.post(f"{API}/subscriptions/424242/cancel", headers=auth_headers(subscriber))
    assert r.status_code == 404
    assert r.json()["code"] == 404102

    db.expire_all()
    stored = db.exec(select(Subscription).where(Subscription.id == sub.id)).one()
    assert stored.status == SubscriptionStatus.active


def test_full_tier_at_confirmation_is_shown_to_subscriber(
    client, fake_stripe, make_user, make_tier, make_subscription
):
    tier = make_tier(make_user(), max_subscribers=1)
    make_subscription(make_user(), tier, stripe_subscription_id="sub_first")
    subscriber = make_user()
    pending = make_subscription(
        subscriber, tier, status=SubscriptionStatus.pending, checkout_session_id="cs_second"
    )
    completed = stripe_event(
        "checkout.session.completed", checkout_completed(pending, "sub_second")
    )

    r = _webhook(client, completed)
    assert r.status_code == 200
    assert r.json()["data"]["outcome"] == "failed"

    r = client.get(f"{API}/subscriptions/me", headers=auth_headers(subscriber))
    sub = r.json()["data"]["data"][0]
    assert sub["id"] == pending.id
    assert sub["status"] == "pending"
    assert sub["failure_code"] == 409201
    assert sub["failure_reason"] == "This tier is full. Please try another tier."
