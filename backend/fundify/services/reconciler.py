"""
订阅生命周期协调器

本地订阅记录与 Stripe 状态之间的唯一写入口：
- Stripe 事件处理函数（由 event_gateway 在去重后调用，不提交事务）
- 用户命令：取消 / 暂停 / 恢复（自行提交事务）

所有处理都先对订阅行加排他锁（SELECT ... FOR UPDATE），
同一订阅上的 Stripe 事件与用户命令串行执行。
终态（cancelled / expired）不再响应任何异步事件，只有新的结账会创建新记录。
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from fundify.api.errors import (
    AppError,
    ValidationFailed,
    already_subscribed,
    illegal_transition,
    not_owner,
    subscription_not_found,
    tier_not_found,
)
from fundify.core.db import unit_of_work
from fundify.enums import EventOutcome, StripeEventType, SubscriptionStatus
from fundify.models import MembershipTier, ProcessedEvent, Subscription, ensure_utc, utc_now
from fundify.services.billing import add_interval, next_billing_date, renewal_anchor
from fundify.services.tier_registry import release_slot, reserve_slot

logger = logging.getLogger(__name__)

EventHandler = Callable[[Session, dict[str, Any], datetime], EventOutcome]
FailureHandler = Callable[[Session, dict[str, Any], AppError, datetime], None]

# Stripe 订阅状态 -> 本地状态
_STRIPE_EXPIRED_STATUSES = {"past_due", "unpaid", "incomplete_expired"}
_STRIPE_CANCELLED_STATUSES = {"canceled"}
_STRIPE_LIVE_STATUSES = {"active", "trialing"}


def _status(sub: Subscription) -> SubscriptionStatus:
    return SubscriptionStatus(sub.status)


def _lock(session: Session, *conditions: Any) -> Subscription | None:
    stmt = select(Subscription).where(*conditions).with_for_update()
    return session.exec(stmt).first()


def _lock_by_id(session: Session, subscription_id: int) -> Subscription | None:
    return _lock(session, Subscription.id == subscription_id)


def _lock_by_stripe_id(session: Session, stripe_subscription_id: str) -> Subscription | None:
    return _lock(session, Subscription.stripe_subscription_id == stripe_subscription_id)


def _metadata_int(obj: dict[str, Any], key: str) -> int | None:
    metadata = obj.get("metadata") or {}
    value = metadata.get(key) if isinstance(metadata, dict) else None
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    # 2025 年之后的 API 版本把订阅 ID 移到了 parent.subscription_details 下
    sub_id = invoice.get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")
    if not sub_id:
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") or {}
        sub_id = details.get("subscription")
    return str(sub_id) if sub_id else None


def _checkout_subscription_id(checkout: dict[str, Any]) -> str | None:
    sub_id = checkout.get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")
    return str(sub_id) if sub_id else None


def _lock_checkout_row(session: Session, checkout: dict[str, Any]) -> Subscription | None:
    # 先按 metadata 中的本地 ID，再按结账会话 ID
    local_id = _metadata_int(checkout, "subscription_id")
    sub = _lock_by_id(session, local_id) if local_id is not None else None
    if sub is None and checkout.get("id"):
        sub = _lock(session, Subscription.checkout_session_id == checkout["id"])
    return sub


def _ended_at_processor(
    session: Session, stripe_subscription_id: str
) -> SubscriptionStatus | None:
    """
    在事件记录中查找该 Stripe 订阅已经结束的证据

    deleted / updated 事件可能先于 checkout.session.completed 到达，
    当时找不到本地记录，只留下了记录。以最近一条有状态的事件为准。
    """
    stmt = (
        select(ProcessedEvent)
        .where(ProcessedEvent.object_id == stripe_subscription_id)
        .where(
            col(ProcessedEvent.event_type).in_(
                (
                    StripeEventType.subscription_deleted.value,
                    StripeEventType.subscription_updated.value,
                )
            )
        )
        .order_by(col(ProcessedEvent.created_at).desc())
    )
    for event in session.exec(stmt).all():
        if event.event_type == StripeEventType.subscription_deleted.value:
            return SubscriptionStatus.cancelled
        obj = ((event.payload or {}).get("data") or {}).get("object") or {}
        stripe_status = str(obj.get("status") or "")
        if stripe_status in _STRIPE_EXPIRED_STATUSES:
            return SubscriptionStatus.expired
        if stripe_status in _STRIPE_CANCELLED_STATUSES:
            return SubscriptionStatus.cancelled
        if stripe_status:
            return None
    return None


def _terminate(
    session: Session,
    sub: Subscription,
    status: SubscriptionStatus,
    now: datetime,
    *,
    end_date: datetime | None = None,
) -> None:
    """进入终态并立即释放名额"""
    sub.status = status
    sub.end_date = end_date or now
    if status == SubscriptionStatus.cancelled:
        sub.cancelled_at = now
    sub.at_risk = False
    sub.updated_at = now
    session.add(sub)
    release_slot(session, sub.tier_id)


# ============================================================
# Stripe 事件处理
# ============================================================


def _materialize_from_metadata(
    session: Session, checkout: dict[str, Any], now: datetime
) -> Subscription | None:
    # 待支付记录已被清理但 Stripe 仍完成了结账：按 metadata 重建
    subscriber_id = _metadata_int(checkout, "subscriber_id")
    creator_id = _metadata_int(checkout, "creator_id")
    tier_id = _metadata_int(checkout, "tier_id")
    if subscriber_id is None or creator_id is None or tier_id is None:
        return None
    tier = session.get(MembershipTier, tier_id)
    if tier is None or tier.creator_id != creator_id:
        return None
    sub = Subscription(
        subscriber_id=subscriber_id,
        creator_id=creator_id,
        tier_id=tier_id,
        status=SubscriptionStatus.pending,
        checkout_session_id=checkout.get("id"),
        created_at=now,
        updated_at=now,
    )
    session.add(sub)
    session.flush()
    logger.warning(
        f"Checkout {checkout.get('id')} completed without a pending row, "
        f"materialized subscription {sub.id} from metadata"
    )
    return sub


def activate_from_checkout(
    session: Session, checkout: dict[str, Any], now: datetime
) -> EventOutcome:
    """
    checkout.session.completed: pending -> active

    关联外部订阅 ID，按档位周期计算下次扣费时间，并占用名额。

    Raises:
        ValidationFailed: 事件缺少订阅 ID 或无法关联到本地记录
        CapacityExceeded: 确认时档位已满
        Conflict: 该订阅者与创作者之间已有生效中的订阅
    """
    stripe_subscription_id = _checkout_subscription_id(checkout)
    if not stripe_subscription_id:
        raise ValidationFailed(code=400401, message="Checkout session has no subscription")

    sub = _lock_checkout_row(session, checkout)
    if sub is None:
        if _lock_by_stripe_id(session, stripe_subscription_id) is not None:
            return EventOutcome.noop
        sub = _materialize_from_metadata(session, checkout, now)
        if sub is None:
            raise ValidationFailed(
                code=400402, message="Checkout session does not match any subscription"
            )

    status = _status(sub)
    if status != SubscriptionStatus.pending:
        logger.info(f"Subscription {sub.id} already {status.value}, checkout completion ignored")
        return EventOutcome.noop

    tier = session.get(MembershipTier, sub.tier_id)
    if tier is None:
        raise tier_not_found()

    sub.stripe_subscription_id = stripe_subscription_id
    sub.stripe_customer_id = checkout.get("customer") or sub.stripe_customer_id
    sub.start_date = now
    sub.updated_at = now

    ended = _ended_at_processor(session, stripe_subscription_id)
    if ended is not None:
        # Stripe 已结束该订阅：直接进入终态，不占名额
        sub.status = ended
        sub.end_date = now
        if ended == SubscriptionStatus.cancelled:
            sub.cancelled_at = now
        session.add(sub)
        logger.warning(
            f"Subscription {sub.id} completed after stripe {stripe_subscription_id} "
            f"had already ended, closed as {ended.value}"
        )
        return EventOutcome.applied

    reserve_slot(session, sub.tier_id)

    sub.status = SubscriptionStatus.active
    sub.billing_anchor_day = now.day
    sub.next_billing_date = add_interval(now, tier.interval, now.day)
    session.add(sub)
    try:
        session.flush()
    except IntegrityError as e:
        raise already_subscribed() from e

    logger.info(f"Subscription {sub.id} activated (stripe={stripe_subscription_id})")
    return EventOutcome.applied


def discard_expired_checkout(
    session: Session, checkout: dict[str, Any], now: datetime
) -> EventOutcome:
    """checkout.session.expired: 删除仍未确认的 pending 记录"""
    sub = _lock_checkout_row(session, checkout)
    if sub is None:
        return EventOutcome.ignored
    if _status(sub) != SubscriptionStatus.pending or sub.stripe_subscription_id:
        return EventOutcome.noop
    session.delete(sub)
    logger.info(f"Pending subscription {sub.id} discarded, checkout expired")
    return EventOutcome.applied


def record_checkout_failure(
    session: Session, checkout: dict[str, Any], error: AppError, now: datetime
) -> None:
    """
    确认结账失败（如档位已满）后，把失败原因写到 pending 记录上

    在业务事务回滚之后、与失败事件记录同一个事务中调用。
    订阅者通过订阅列表看到失败原因；同时记下 Stripe 订阅 ID，
    清理任务据此取消这笔已付款但未生效的 Stripe 订阅。
    """
    stripe_subscription_id = _checkout_subscription_id(checkout)
    sub = _lock_checkout_row(session, checkout)
    if sub is None:
        if stripe_subscription_id:
            if _lock_by_stripe_id(session, stripe_subscription_id) is not None:
                return
        sub = _materialize_from_metadata(session, checkout, now)
        if sub is None:
            return
    if _status(sub) != SubscriptionStatus.pending:
        return

    if (
        stripe_subscription_id
        and sub.stripe_subscription_id is None
        and _lock_by_stripe_id(session, stripe_subscription_id) is None
    ):
        sub.stripe_subscription_id = stripe_subscription_id
    sub.stripe_customer_id = checkout.get("customer") or sub.stripe_customer_id
    sub.failure_code = error.code
    sub.failure_reason = error.message[:255]
    sub.updated_at = now
    session.add(sub)
    logger.warning(
        f"Subscription {sub.id} could not be activated: {error.message} "
        f"(stripe={sub.stripe_subscription_id})"
    )


def close_failed_checkout(
    session: Session, subscription_id: int, now: datetime | None = None
) -> Subscription | None:
    """
    Stripe 订阅取消后，把确认失败的 pending 记录关闭为 cancelled

    该记录从未占用名额，不释放名额。自行提交事务。
    """
    now = now or utc_now()
    with unit_of_work(session):
        sub = _lock_by_id(session, subscription_id)
        if sub is None or _status(sub) != SubscriptionStatus.pending or sub.failure_code is None:
            return None
        sub.status = SubscriptionStatus.cancelled
        sub.end_date = now
        sub.cancelled_at = now
        sub.updated_at = now
        session.add(sub)
    session.refresh(sub)
    logger.info(f"Failed checkout {sub.id} closed (stripe={sub.stripe_subscription_id})")
    return sub


def _processor_pause(session: Session, sub: Subscription, now: datetime) -> EventOutcome:
    if _status(sub) != SubscriptionStatus.active:
        return EventOutcome.noop
    sub.status = SubscriptionStatus.paused
    sub.paused_by_processor = True
    sub.updated_at = now
    session.add(sub)
    logger.info(f"Subscription {sub.id} paused by processor")
    return EventOutcome.applied


def _processor_resume(session: Session, sub: Subscription, now: datetime) -> EventOutcome:
    # 用户自己暂停的订阅只能由用户恢复
    if _status(sub) != SubscriptionStatus.paused or not sub.paused_by_processor:
        return EventOutcome.noop
    sub.status = SubscriptionStatus.active
    sub.paused_by_processor = False
    sub.updated_at = now
    session.add(sub)
    logger.info(f"Subscription {sub.id} resumed by processor")
    return EventOutcome.applied


def apply_subscription_updated(
    session: Session, stripe_sub: dict[str, Any], now: datetime
) -> EventOutcome:
    """
    customer.subscription.updated

    - past_due / unpaid -> expired（释放名额）
    - canceled -> cancelled（释放名额）
    - paused -> paused（记为 Stripe 发起的暂停）
    - active / trialing -> 解除 Stripe 发起的暂停；用户自己的暂停保持不变
    """
    sub = _lock_by_stripe_id(session, str(stripe_sub.get("id") or ""))
    if sub is None:
        return EventOutcome.ignored
    if not _status(sub).holds_seat:
        # 终态，或确认失败、等待清理的 pending 记录
        return EventOutcome.noop

    stripe_status = str(stripe_sub.get("status") or "")
    if stripe_status in _STRIPE_EXPIRED_STATUSES:
        _terminate(session, sub, SubscriptionStatus.expired, now)
        logger.info(f"Subscription {sub.id} expired (stripe status {stripe_status})")
        return EventOutcome.applied
    if stripe_status in _STRIPE_CANCELLED_STATUSES:
        _terminate(session, sub, SubscriptionStatus.cancelled, now)
        logger.info(f"Subscription {sub.id} cancelled by processor update")
        return EventOutcome.applied
    if stripe_status == "paused":
        return _processor_pause(session, sub, now)
    if stripe_status in _STRIPE_LIVE_STATUSES:
        return _processor_resume(session, sub, now)
    return EventOutcome.noop


def apply_subscription_paused(
    session: Session, stripe_sub: dict[str, Any], now: datetime
) -> EventOutcome:
    """customer.subscription.paused: active -> paused"""
    sub = _lock_by_stripe_id(session, str(stripe_sub.get("id") or ""))
    if sub is None:
        return EventOutcome.ignored
    return _processor_pause(session, sub, now)


def apply_subscription_resumed(
    session: Session, stripe_sub: dict[str, Any], now: datetime
) -> EventOutcome:
    """customer.subscription.resumed: 解除 Stripe 发起的暂停"""
    sub = _lock_by_stripe_id(session, str(stripe_sub.get("id") or ""))
    if sub is None:
        return EventOutcome.ignored
    return _processor_resume(session, sub, now)


def apply_subscription_deleted(
    session: Session, stripe_sub: dict[str, Any], now: datetime
) -> EventOutcome:
    """customer.subscription.deleted: active/paused -> cancelled，立即释放名额"""
    sub = _lock_by_stripe_id(session, str(stripe_sub.get("id") or ""))
    if sub is None:
        return EventOutcome.ignored
    if not _status(sub).holds_seat:
        # 用户已在本地取消，名额已释放过
        return EventOutcome.noop
    _terminate(session, sub, SubscriptionStatus.cancelled, now)
    logger.info(f"Subscription {sub.id} cancelled (deleted at processor)")
    return EventOutcome.applied


def apply_invoice_paid(
    session: Session, invoice: dict[str, Any], now: datetime
) -> EventOutcome:
    """
    invoice.paid / invoice.payment_succeeded: 续费成功

    推进一个计费周期并清除扣款失败标记。首张发票（subscription_create）
    的扣费日期已在结账确认时计算，只清除标记。
    同一张发票的两个事件只生效一次。
    """
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        return EventOutcome.ignored
    sub = _lock_by_stripe_id(session, stripe_subscription_id)
    if sub is None:
        return EventOutcome.ignored
    if not _status(sub).holds_seat:
        logger.info(f"Invoice {invoice.get('id')} paid for {_status(sub).value} subscription {sub.id}, ignored")
        return EventOutcome.noop

    invoice_id = invoice.get("id")
    if invoice_id and invoice_id == sub.last_paid_invoice_id:
        return EventOutcome.noop

    if invoice.get("billing_reason") != "subscription_create":
        tier = session.get(MembershipTier, sub.tier_id)
        if tier is None:
            raise tier_not_found()
        sub.billing_anchor_day = renewal_anchor(
            sub.next_billing_date, sub.billing_anchor_day, now
        )
        sub.next_billing_date = next_billing_date(
            sub.next_billing_date, tier.interval, sub.billing_anchor_day, now=now
        )
    sub.at_risk = False
    sub.payment_failed_at = None
    sub.failed_payment_count = 0
    sub.last_paid_invoice_id = invoice_id
    sub.updated_at = now
    session.add(sub)
    logger.info(f"Subscription {sub.id} renewed, next billing {sub.next_billing_date}")
    return EventOutcome.applied


def apply_invoice_failed(
    session: Session, invoice: dict[str, Any], now: datetime
) -> EventOutcome:
    """
    invoice.payment_failed: 标记为有风险，不改变状态也不释放名额

    Stripe 会按自己的策略重试；最终失败时通过 subscription.updated
    （past_due / unpaid）或 subscription.deleted 通知。
    """
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        return EventOutcome.ignored
    sub = _lock_by_stripe_id(session, stripe_subscription_id)
    if sub is None:
        return EventOutcome.ignored
    if _status(sub) != SubscriptionStatus.active:
        return EventOutcome.noop

    sub.at_risk = True
    sub.payment_failed_at = now
    sub.failed_payment_count += 1
    sub.updated_at = now
    session.add(sub)
    logger.warning(
        f"Payment failed for subscription {sub.id} "
        f"(invoice={invoice.get('id')}, attempts={sub.failed_payment_count})"
    )
    return EventOutcome.applied


EVENT_HANDLERS: dict[StripeEventType, EventHandler] = {
    StripeEventType.checkout_completed: activate_from_checkout,
    StripeEventType.checkout_expired: discard_expired_checkout,
    StripeEventType.subscription_updated: apply_subscription_updated,
    StripeEventType.subscription_deleted: apply_subscription_deleted,
    StripeEventType.subscription_paused: apply_subscription_paused,
    StripeEventType.subscription_resumed: apply_subscription_resumed,
    StripeEventType.invoice_paid: apply_invoice_paid,
    StripeEventType.invoice_payment_succeeded: apply_invoice_paid,
    StripeEventType.invoice_payment_failed: apply_invoice_failed,
}

# 业务处理失败后（事务已回滚）在记录失败事件的事务中调用
FAILURE_HANDLERS: dict[StripeEventType, FailureHandler] = {
    StripeEventType.checkout_completed: record_checkout_failure,
}


# ============================================================
# 用户命令
# ============================================================


def _load_for_subscriber(session: Session, subscription_id: int, actor_id: int) -> Subscription:
    sub = _lock_by_id(session, subscription_id)
    if sub is None:
        raise subscription_not_found()
    if sub.subscriber_id != actor_id:
        raise not_owner()
    return sub


def cancel_subscription(
    session: Session, subscription_id: int, actor_id: int, now: datetime | None = None
) -> Subscription:
    """
    用户取消订阅

    访问权限保留到当期结束（end_date = next_billing_date），
    但名额立即释放，新的订阅者可以马上使用。重复取消是无操作。
    """
    now = now or utc_now()
    with unit_of_work(session):
        sub = _load_for_subscriber(session, subscription_id, actor_id)
        status = _status(sub)
        if status.is_terminal:
            return sub
        if status == SubscriptionStatus.pending:
            raise illegal_transition(status.value, "cancel")
        _terminate(
            session,
            sub,
            SubscriptionStatus.cancelled,
            now,
            end_date=ensure_utc(sub.next_billing_date) or now,
        )
        logger.info(f"Subscription {sub.id} cancelled by subscriber, access until {sub.end_date}")
    session.refresh(sub)
    return sub


def pause_subscription(
    session: Session, subscription_id: int, actor_id: int, now: datetime | None = None
) -> Subscription:
    """
    用户暂停订阅：active -> paused，名额保留

    对 Stripe 发起的暂停再次暂停时，改记为用户暂停（Stripe 恢复时不再自动解除）。
    """
    now = now or utc_now()
    with unit_of_work(session):
        sub = _load_for_subscriber(session, subscription_id, actor_id)
        status = _status(sub)
        if status == SubscriptionStatus.paused and not sub.paused_by_processor:
            return sub
        if status not in (SubscriptionStatus.active, SubscriptionStatus.paused):
            raise illegal_transition(status.value, "pause")
        sub.status = SubscriptionStatus.paused
        sub.paused_by_processor = False
        sub.updated_at = now
        session.add(sub)
    session.refresh(sub)
    return sub


def resume_subscription(
    session: Session, subscription_id: int, actor_id: int, now: datetime | None = None
) -> Subscription:
    """用户恢复订阅：paused -> active"""
    now = now or utc_now()
    with unit_of_work(session):
        sub = _load_for_subscriber(session, subscription_id, actor_id)
        status = _status(sub)
        if status == SubscriptionStatus.active:
            return sub
        if status != SubscriptionStatus.paused:
            raise illegal_transition(status.value, "resume")
        sub.status = SubscriptionStatus.active
        sub.paused_by_processor = False
        sub.updated_at = now
        session.add(sub)
    session.refresh(sub)
    return sub
