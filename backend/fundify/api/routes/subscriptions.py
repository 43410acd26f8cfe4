"""
订阅路由模块

- POST /subscriptions                       发起结账（创建 pending 订阅）
- GET  /subscriptions/me                    我的订阅
- GET  /subscriptions/subscribers           我的订阅者（创作者视角，含收入统计）
- GET  /subscriptions/access/{creator_id}   是否有某创作者的内容访问权限
- GET  /subscriptions/{subscription_id}     订阅详情（订阅者或创作者）
- POST /subscriptions/{subscription_id}/cancel | pause | resume

状态变化只通过 services.reconciler 完成。
"""
from __future__ import annotations

from fastapi import APIRouter

from fundify import crud
from fundify.api.deps import CurrentUser, SessionDep
from fundify.api.errors import not_owner, subscription_not_found
from fundify.api.schemas import (
    AccessData,
    ApiEnvelope,
    CheckoutData,
    CheckoutRequest,
    SubscriberData,
    SubscribersData,
    SubscriberStats,
    SubscriptionData,
    SubscriptionsData,
    TierSummary,
)
from fundify.models import MembershipTier, Subscription, ensure_utc
from fundify.services import reconciler
from fundify.services.checkout import start_checkout

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _tier_summary(tier: MembershipTier) -> TierSummary:
    return TierSummary(id=tier.id, name=tier.name, price=tier.price, interval=tier.interval)


def to_subscription_data(
    sub: Subscription, tier: MembershipTier | None = None
) -> SubscriptionData:
    return SubscriptionData(
        id=sub.id,
        subscriber_id=sub.subscriber_id,
        creator_id=sub.creator_id,
        tier_id=sub.tier_id,
        status=sub.status,
        start_date=ensure_utc(sub.start_date),
        next_billing_date=ensure_utc(sub.next_billing_date),
        end_date=ensure_utc(sub.end_date),
        cancelled_at=ensure_utc(sub.cancelled_at),
        at_risk=sub.at_risk,
        failure_code=sub.failure_code,
        failure_reason=sub.failure_reason,
        created_at=ensure_utc(sub.created_at),
        tier=_tier_summary(tier) if tier else None,
    )


@router.post("", response_model=ApiEnvelope)
def create_subscription(
    session: SessionDep, current_user: CurrentUser, body: CheckoutRequest
) -> ApiEnvelope:
    """
    发起订阅结账

    返回 Stripe 结账页地址；订阅在 Stripe 通知支付完成后才生效。
    """
    handle = start_checkout(session, current_user, body.tier_id)
    return ApiEnvelope(
        data=CheckoutData(
            subscription_id=handle.subscription_id,
            session_id=handle.session_id,
            url=handle.url,
            expires_at=handle.expires_at,
        )
    )


@router.get("/me", response_model=ApiEnvelope)
def my_subscriptions(session: SessionDep, current_user: CurrentUser) -> ApiEnvelope:
    rows = crud.list_for_subscriber(session=session, subscriber_id=current_user.id)
    data = [to_subscription_data(sub, tier) for sub, tier in rows]
    return ApiEnvelope(data=SubscriptionsData(data=data, count=len(data)))


@router.get("/subscribers", response_model=ApiEnvelope)
def my_subscribers(session: SessionDep, current_user: CurrentUser) -> ApiEnvelope:
    """
    创作者的生效中订阅者

    monthly_revenue 按月折算：年付档位计 price / 12。
    """
    rows = crud.list_active_for_creator(session=session, creator_id=current_user.id)
    data = [
        SubscriberData(
            subscription_id=sub.id,
            subscriber_id=user.id,
            name=user.name,
            email=user.email,
            tier=_tier_summary(tier),
            start_date=ensure_utc(sub.start_date),
            next_billing_date=ensure_utc(sub.next_billing_date),
            at_risk=sub.at_risk,
        )
        for sub, tier, user in rows
    ]
    stats = SubscriberStats(
        total_subscribers=len(data),
        monthly_revenue=crud.monthly_revenue([tier for _, tier, _ in rows]),
    )
    return ApiEnvelope(data=SubscribersData(data=data, stats=stats))


@router.get("/access/{creator_id}", response_model=ApiEnvelope)
def check_access(session: SessionDep, current_user: CurrentUser, creator_id: int) -> ApiEnvelope:
    grant = crud.find_access_grant(
        session=session, subscriber_id=current_user.id, creator_id=creator_id
    )
    if not grant:
        return ApiEnvelope(data=AccessData(creator_id=creator_id, has_access=False))
    return ApiEnvelope(
        data=AccessData(
            creator_id=creator_id,
            has_access=True,
            subscription_id=grant.id,
            status=grant.status,
            access_until=ensure_utc(grant.end_date or grant.next_billing_date),
        )
    )


@router.get("/{subscription_id}", response_model=ApiEnvelope)
def get_subscription(
    session: SessionDep, current_user: CurrentUser, subscription_id: int
) -> ApiEnvelope:
    sub = crud.get_subscription(session=session, subscription_id=subscription_id)
    if not sub:
        raise subscription_not_found()
    if current_user.id not in (sub.subscriber_id, sub.creator_id):
        raise not_owner()
    tier = crud.get_tier(session=session, tier_id=sub.tier_id)
    return ApiEnvelope(data=to_subscription_data(sub, tier))


@router.post("/{subscription_id}/cancel", response_model=ApiEnvelope)
def cancel_subscription(
    session: SessionDep, current_user: CurrentUser, subscription_id: int
) -> ApiEnvelope:
    """取消订阅：访问权限保留到当期结束，名额立即释放"""
    sub = reconciler.cancel_subscription(session, subscription_id, current_user.id)
    return ApiEnvelope(data=to_subscription_data(sub))


@router.post("/{subscription_id}/pause", response_model=ApiEnvelope)
def pause_subscription(
    session: SessionDep, current_user: CurrentUser, subscription_id: int
) -> ApiEnvelope:
    sub = reconciler.pause_subscription(session, subscription_id, current_user.id)
    return ApiEnvelope(data=to_subscription_data(sub))


@router.post("/{subscription_id}/resume", response_model=ApiEnvelope)
def resume_subscription(
    session: SessionDep, current_user: CurrentUser, subscription_id: int
) -> ApiEnvelope:
    sub = reconciler.resume_subscription(session, subscription_id, current_user.id)
    return ApiEnvelope(data=to_subscription_data(sub))
