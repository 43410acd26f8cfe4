from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
from collections.abc import Callable, Generator
from decimal import Decimal
from typing import Any
from uuid import uuid4

os.environ.setdefault("PROJECT_NAME", "fundify-test")
os.environ.setdefault("POSTGRES_SERVER", "localhost")
os.environ.setdefault("POSTGRES_USER", "postgres")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_123")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine, delete  # noqa: E402

from fundify.api.deps import get_db  # noqa: E402
from fundify.api.errors import UpstreamError  # noqa: E402
from fundify.core.config import settings  # noqa: E402
from fundify.core.security import create_access_token  # noqa: E402
from fundify.enums import BillingInterval, SubscriptionStatus  # noqa: E402
from fundify.main import app  # noqa: E402
from fundify.models import (  # noqa: E402
    MembershipTier,
    ProcessedEvent,
    Subscription,
    User,
    utc_now,
)
from fundify.services import stripe_service as stripe_service_module  # noqa: E402
from fundify.services.stripe_service import CheckoutSession, StripeService  # noqa: E402

WEBHOOK_SECRET = settings.STRIPE_WEBHOOK_SECRET or ""


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        session.rollback()
        # Clean tables after each test (children first).
        session.exec(delete(ProcessedEvent))
        session.exec(delete(Subscription))
        session.exec(delete(MembershipTier))
        session.exec(delete(User))
        session.commit()


@pytest.fixture(scope="function")
def client(engine) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


class FakeStripeService(StripeService):
    """Real signature verification, recorded API calls."""

    def __init__(self) -> None:
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.customers: list[dict[str, Any]] = []
        self.checkouts: list[dict[str, Any]] = []
        self.portal_sessions: list[dict[str, Any]] = []
        self.cancelled_subscriptions: list[str] = []
        self.fail_checkout = False
        self.fail_cancel = False

    def create_customer(self, *, user_id: int, email: str, name: str | None) -> str:
        self.customers.append({"user_id": user_id, "email": email, "name": name})
        return f"cus_{user_id}"

    def create_checkout_session(self, **kwargs: Any) -> CheckoutSession:
        if self.fail_checkout:
            raise UpstreamError(code=502001, message="Payment provider error")
        self.checkouts.append(kwargs)
        session_id = f"cs_test_{len(self.checkouts)}_{uuid4().hex[:8]}"
        return CheckoutSession(
            session_id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            expires_at=kwargs["expires_at"],
        )

    def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        self.portal_sessions.append({"customer_id": customer_id, "return_url": return_url})
        return f"https://billing.stripe.test/{customer_id}"

    def cancel_subscription(self, stripe_subscription_id: str) -> None:
        if self.fail_cancel:
            raise UpstreamError(code=502001, message="Payment provider error")
        self.cancelled_subscriptions.append(stripe_subscription_id)


@pytest.fixture
def fake_stripe(monkeypatch) -> FakeStripeService:
    fake = FakeStripeService()
    monkeypatch.setattr(stripe_service_module, "_stripe_service", fake)
    return fake


@pytest.fixture
def make_user(db) -> Callable[..., User]:
    def _make(name: str | None = None, stripe_customer_id: str | None = None) -> User:
        user = User(
            email=f"{uuid4().hex[:12]}@example.com",
            name=name,
            stripe_customer_id=stripe_customer_id,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_tier(db) -> Callable[..., MembershipTier]:
    def _make(
        creator: User,
        *,
        price: str = "10.00",
        interval: BillingInterval = BillingInterval.monthly,
        max_subscribers: int | None = None,
        current_subscribers: int = 0,
        is_active: bool = True,
        name: str = "Supporter",
        position: int = 0,
    ) -> MembershipTier:
        tier = MembershipTier(
            creator_id=creator.id,
            name=name,
            price=Decimal(price),
            interval=interval,
            perks=["Early access"],
            max_subscribers=max_subscribers,
            current_subscribers=current_subscribers,
            is_active=is_active,
            position=position,
        )
        db.add(tier)
        db.commit()
        db.refresh(tier)
        return tier

    return _make


@pytest.fixture
def make_subscription(db) -> Callable[..., Subscription]:
    """Insert a subscription row directly; seat-holding rows also take a tier slot."""

    def _make(
        subscriber: User,
        tier: MembershipTier,
        *,
        status: SubscriptionStatus = SubscriptionStatus.active,
        stripe_subscription_id: str | None = None,
        next_billing_date=None,
        end_date=None,
        **fields: Any,
    ) -> Subscription:
        now = utc_now()
        sub = Subscription(
            subscriber_id=subscriber.id,
            creator_id=tier.creator_id,
            tier_id=tier.id,
            status=status,
            stripe_subscription_id=stripe_subscription_id,
            start_date=now if status != SubscriptionStatus.pending else None,
            next_billing_date=next_billing_date,
            billing_anchor_day=next_billing_date.day if next_billing_date else None,
            end_date=end_date,
            **fields,
        )
        db.add(sub)
        if status.holds_seat:
            fresh = db.get(MembershipTier, tier.id)
            fresh.current_subscribers += 1
            db.add(fresh)
        db.commit()
        db.refresh(sub)
        return sub

    return _make


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header: t=<ts>,v1=HMAC_SHA256(secret, "<ts>.<payload>")"""
    ts = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def stripe_event(event_type: str, obj: dict[str, Any], event_id: str | None = None) -> str:
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    )


def checkout_completed(sub: Subscription, stripe_subscription_id: str) -> dict[str, Any]:
    return {
        "id": sub.checkout_session_id or f"cs_{sub.id}",
        "object": "checkout.session",
        "customer": "cus_test",
        "subscription": stripe_subscription_id,
        "metadata": {
            "subscription_id": str(sub.id),
            "subscriber_id": str(sub.subscriber_id),
            "creator_id": str(sub.creator_id),
            "tier_id": str(sub.tier_id),
        },
    }
