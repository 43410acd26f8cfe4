"""
结账发起

start_checkout 只做前置校验、创建 pending 订阅和 Stripe 结账会话，
不等待支付完成；激活总是由 checkout.session.completed 事件驱动
（见 services.reconciler.activate_from_checkout）。

名额检查在这里只是预检：发起与完成之间名额可能被占满，
权威检查是确认时 tier_registry.reserve_slot 的条件更新。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlmodel import Session

from fundify import crud
from fundify.api.errors import (
    ValidationFailed,
    already_subscribed,
    tier_full,
    tier_inactive,
    tier_not_found,
)
from fundify.core.config import settings
from fundify.core.db import unit_of_work
from fundify.enums import SubscriptionStatus
from fundify.models import Subscription, User, utc_now
from fundify.services.stripe_service import StripeService, get_stripe_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutHandle:
    subscription_id: int
    session_id: str
    url: str | None
    expires_at: datetime | None


def _ensure_customer(session: Session, subscriber: User, stripe_service: StripeService) -> str:
    # 客户 ID 单独提交，后续结账失败也能复用
    if subscriber.stripe_customer_id:
        return subscriber.stripe_customer_id
    customer_id = stripe_service.create_customer(
        user_id=subscriber.id, email=subscriber.email, name=subscriber.name
    )
    with unit_of_work(session):
        crud.set_stripe_customer_id(
            session=session, user_id=subscriber.id, customer_id=customer_id
        )
    logger.info(f"Created Stripe customer {customer_id} for user {subscriber.id}")
    return customer_id


def start_checkout(
    session: Session,
    subscriber: User,
    tier_id: int,
    stripe_service: StripeService | None = None,
    now: datetime | None = None,
) -> CheckoutHandle:
    """
    发起订阅结账

    Raises:
        NotFound: 档位不存在
        ValidationFailed: 档位已下架，或订阅自己的档位
        CapacityExceeded: 档位已满（预检）
        Conflict: 已有该创作者的生效中订阅
        UpstreamError: Stripe 调用失败（不会留下 pending 记录）
    """
    stripe_service = stripe_service or get_stripe_service()
    now = now or utc_now()

    tier = crud.get_tier(session=session, tier_id=tier_id)
    if not tier:
        raise tier_not_found()
    if not tier.is_active:
        raise tier_inactive()
    if tier.creator_id == subscriber.id:
        raise ValidationFailed(code=400204, message="You cannot subscribe to your own tier")
    if tier.max_subscribers is not None and tier.current_subscribers >= tier.max_subscribers:
        raise tier_full()
    if crud.find_open_for_pair(
        session=session, subscriber_id=subscriber.id, creator_id=tier.creator_id
    ):
        raise already_subscribed()

    customer_id = _ensure_customer(session, subscriber, stripe_service)

    expires_at = now + timedelta(minutes=settings.CHECKOUT_SESSION_TTL_MINUTES)
    with unit_of_work(session):
        sub = Subscription(
            subscriber_id=subscriber.id,
            creator_id=tier.creator_id,
            tier_id=tier.id,
            status=SubscriptionStatus.pending,
            stripe_customer_id=customer_id,
            created_at=now,
            updated_at=now,
        )
        session.add(sub)
        session.flush()

        checkout = stripe_service.create_checkout_session(
            customer_id=customer_id,
            subscription_id=sub.id,
            subscriber_id=subscriber.id,
            creator_id=tier.creator_id,
            tier_id=tier.id,
            tier_name=tier.name,
            tier_description=tier.description,
            price=tier.price,
            interval=tier.interval,
            expires_at=expires_at,
        )
        sub.checkout_session_id = checkout.session_id
        sub.checkout_expires_at = checkout.expires_at
        session.add(sub)
        subscription_id = sub.id

    logger.info(
        f"Checkout {checkout.session_id} started: subscription {subscription_id}, "
        f"subscriber {subscriber.id}, tier {tier_id}"
    )
    return CheckoutHandle(
        subscription_id=subscription_id,
        session_id=checkout.session_id,
        url=checkout.url,
        expires_at=checkout.expires_at,
    )
