"""订阅 CRUD 操作（读侧查询与待支付记录清理）"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import and_, delete, or_
from sqlmodel import Session, col, select

from fundify.enums import SEAT_HOLDING_STATUSES, BillingInterval, SubscriptionStatus
from fundify.models import MembershipTier, Subscription, User, ensure_utc, utc_now


def get(*, session: Session, subscription_id: int) -> Subscription | None:
    return session.get(Subscription, subscription_id)


def list_for_subscriber(
    *, session: Session, subscriber_id: int
) -> list[tuple[Subscription, MembershipTier]]:
    """订阅者的全部订阅（含 pending），按创建时间倒序"""
    stmt = (
        select(Subscription, MembershipTier)
        .join(MembershipTier, col(MembershipTier.id) == Subscription.tier_id)
        .where(Subscription.subscriber_id == subscriber_id)
        .order_by(col(Subscription.created_at).desc())
    )
    return list(session.exec(stmt).all())


def list_active_for_creator(
    *, session: Session, creator_id: int
) -> list[tuple[Subscription, MembershipTier, User]]:
    """创作者的生效中订阅者"""
    stmt = (
        select(Subscription, MembershipTier, User)
        .join(MembershipTier, col(MembershipTier.id) == Subscription.tier_id)
        .join(User, col(User.id) == Subscription.subscriber_id)
        .where(Subscription.creator_id == creator_id)
        .where(Subscription.status == SubscriptionStatus.active)
        .order_by(col(Subscription.start_date).desc())
    )
    return list(session.exec(stmt).all())


def monthly_revenue(tiers: list[MembershipTier]) -> Decimal:
    """按月折算的收入：年付档位按 price / 12 计入，结果保留两位小数"""
    total = Decimal("0")
    for tier in tiers:
        price = Decimal(tier.price)
        if BillingInterval(tier.interval) == BillingInterval.yearly:
            price = price / 12
        total += price
    return total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def find_open_for_pair(
    *, session: Session, subscriber_id: int, creator_id: int
) -> Subscription | None:
    """订阅者与创作者之间 active / paused 的订阅（至多一条）"""
    stmt = (
        select(Subscription)
        .where(Subscription.subscriber_id == subscriber_id)
        .where(Subscription.creator_id == creator_id)
        .where(col(Subscription.status).in_(SEAT_HOLDING_STATUSES))
    )
    return session.exec(stmt).first()


def find_access_grant(
    *, session: Session, subscriber_id: int, creator_id: int, now: datetime | None = None
) -> Subscription | None:
    """
    查找授予内容访问权限的订阅

    active，或已取消但 end_date 尚未到达（取消后保留到当期结束）。
    暂停期间没有访问权限。
    """
    now = now or utc_now()
    stmt = (
        select(Subscription)
        .where(Subscription.subscriber_id == subscriber_id)
        .where(Subscription.creator_id == creator_id)
        .where(
            or_(
                Subscription.status == SubscriptionStatus.active,
                and_(
                    Subscription.status == SubscriptionStatus.cancelled,
                    col(Subscription.end_date) > now,
                ),
            )
        )
        .order_by(col(Subscription.created_at).desc())
    )
    return session.exec(stmt).first()


def has_access(
    *, session: Session, subscriber_id: int, creator_id: int, now: datetime | None = None
) -> bool:
    grant = find_access_grant(
        session=session, subscriber_id=subscriber_id, creator_id=creator_id, now=now
    )
    return grant is not None


def delete_abandoned_pending(
    *, session: Session, retention: timedelta, now: datetime | None = None
) -> int:
    """
    删除被放弃的待支付订阅

    条件：状态为 pending、尚未关联 Stripe 订阅，并且结账会话已过期
    或创建时间早于保留窗口。待支付记录从未占用名额，删除时无需释放。

    Returns:
        删除的记录数
    """
    now = ensure_utc(now) or utc_now()
    stmt = (
        delete(Subscription)
        .where(col(Subscription.status) == SubscriptionStatus.pending)
        .where(col(Subscription.stripe_subscription_id).is_(None))
        .where(
            or_(
                col(Subscription.checkout_expires_at) < now,
                col(Subscription.created_at) < now - retention,
            )
        )
        .execution_options(synchronize_session=False)
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    session.commit()
    return result.rowcount


def list_failed_checkouts(*, session: Session, limit: int = 100) -> list[Subscription]:
    """确认失败、仍关联着 Stripe 订阅的 pending 记录（需要到 Stripe 取消）"""
    stmt = (
        select(Subscription)
        .where(Subscription.status == SubscriptionStatus.pending)
        .where(col(Subscription.failure_code).is_not(None))
        .where(col(Subscription.stripe_subscription_id).is_not(None))
        .order_by(col(Subscription.updated_at))
        .limit(limit)
    )
    return list(session.exec(stmt).all())
