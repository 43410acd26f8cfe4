from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlmodel import select

from fundify.api.errors import (
    CapacityExceeded,
    Conflict,
    NotFound,
    UpstreamError,
    ValidationFailed,
)
from fundify.core.config import settings
from fundify.enums import BillingInterval, SubscriptionStatus
from fundify.models import Subscription, ensure_utc
from fundify.services.checkout import start_checkout

NOW = datetime(2026, 7, 1, 8, 0, tzinfo=timezone.utc)


def test_start_checkout_creates_pending_row(db, fake_stripe, make_user, make_tier):
    subscriber = make_user(name="Ada")
    tier = make_tier(make_user(), price="12.50", interval=BillingInterval.yearly)

    handle = start_checkout(db, subscriber, tier.id, stripe_service=fake_stripe, now=NOW)

    sub = db.get(Subscription, handle.subscription_id)
    assert sub.status == SubscriptionStatus.pending
    assert sub.checkout_session_id == handle.session_id
    assert sub.stripe_customer_id == f"cus_{subscriber.id}"
    assert ensure_utc(sub.checkout_expires_at) == NOW + timedelta(
        minutes=settings.CHECKOUT_SESSION_TTL_MINUTES
    )
    assert handle.url.endswith(handle.session_id)

    call = fake_stripe.checkouts[0]
    assert call["subscription_id"] == sub.id
    assert call["creator_id"] == tier.creator_id
    assert call["price"] == Decimal("12.50")
    assert call["interval"] == BillingInterval.yearly
    db.refresh(tier)
    assert tier.current_subscribers == 0


def test_customer_created_once_and_reused(db, fake_stripe, make_user, make_tier):
    subscriber = make_user()
    first_tier = make_tier(make_user())
    second_tier = make_tier(make_user())

    start_checkout(db, subscriber, first_tier.id, stripe_service=fake_stripe)
    start_checkout(db, subscriber, second_tier.id, stripe_service=fake_stripe)

    db.refresh(subscriber)
    assert subscriber.stripe_customer_id == f"cus_{subscriber.id}"
    assert len(fake_stripe.customers) == 1
    assert len(fake_stripe.checkouts) == 2


def test_upstream_failure_leaves_no_pending_row(db, fake_stripe, make_user, make_tier):
    subscriber = make_user()
    tier = make_tier(make_user())
    fake_stripe.fail_checkout = True

    with pytest.raises(UpstreamError):
        start_checkout(db, subscriber, tier.id, stripe_service=fake_stripe)

    rows = db.exec(select(Subscription).where(Subscription.subscriber_id == subscriber.id)).all()
    assert rows == []


def test_preconditions(db, fake_stripe, make_user, make_tier, make_subscription):
    subscriber = make_user()
    creator = make_user()

    with pytest.raises(NotFound):
        start_checkout(db, subscriber, 987654321, stripe_service=fake_stripe)

    inactive = make_tier(creator, is_active=False)
    with pytest.raises(ValidationFailed) as exc:
        start_checkout(db, subscriber, inactive.id, stripe_service=fake_stripe)
    assert exc.value.code == 400201

    full = make_tier(make_user(), max_subscribers=1, current_subscribers=1)
    with pytest.raises(CapacityExceeded) as exc:
        start_checkout(db, subscriber, full.id, stripe_service=fake_stripe)
    assert exc.value.message == "This tier is full. Please try another tier."

    own = make_tier(subscriber)
    with pytest.raises(ValidationFailed):
        start_checkout(db, subscriber, own.id, stripe_service=fake_stripe)

    gold = make_tier(creator, name="Gold")
    silver = make_tier(creator, name="Silver")
    make_subscription(subscriber, gold, status=SubscriptionStatus.paused)
    with pytest.raises(Conflict):
        start_checkout(db, subscriber, silver.id, stripe_service=fake_stripe)

    assert fake_stripe.checkouts == []
