"""
会员档位 CRUD 操作

名额计数（current_subscribers）不在这里修改，见 services.tier_registry。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlmodel import Session, col, func, select

from fundify.api.errors import ValidationFailed, not_owner, tier_not_found
from fundify.enums import BillingInterval
from fundify.models import MembershipTier, Subscription, utc_now

# 档位已有订阅后不能再修改的字段（已有订阅的条款不变）
_LOCKED_FIELDS = ("price", "interval")


def get(*, session: Session, tier_id: int) -> MembershipTier | None:
    return session.get(MembershipTier, tier_id)


def get_owned(*, session: Session, tier_id: int, creator_id: int) -> MembershipTier:
    """获取创作者自己的档位，不存在或不属于该创作者时抛错"""
    tier = session.get(MembershipTier, tier_id)
    if not tier:
        raise tier_not_found()
    if tier.creator_id != creator_id:
        raise not_owner()
    return tier


def list_creator_tiers(
    *, session: Session, creator_id: int, include_inactive: bool = False
) -> list[MembershipTier]:
    """创作者的档位列表，按展示顺序和价格排序"""
    stmt = select(MembershipTier).where(MembershipTier.creator_id == creator_id)
    if not include_inactive:
        stmt = stmt.where(col(MembershipTier.is_active).is_(True))
    stmt = stmt.order_by(col(MembershipTier.position), col(MembershipTier.price))
    return list(session.exec(stmt).all())


def has_subscriptions(*, session: Session, tier_id: int) -> bool:
    """是否有任何订阅记录（包括已结束的）引用过该档位"""
    stmt = select(func.count()).select_from(Subscription).where(Subscription.tier_id == tier_id)
    return session.exec(stmt).one() > 0


def create(
    *,
    session: Session,
    creator_id: int,
    name: str,
    price: Decimal,
    interval: BillingInterval,
    description: str | None = None,
    perks: list[str] | None = None,
    max_subscribers: int | None = None,
    position: int = 0,
) -> MembershipTier:
    tier = MembershipTier(
        creator_id=creator_id,
        name=name,
        description=description,
        price=price,
        interval=interval,
        perks=perks or [],
        max_subscribers=max_subscribers,
        position=position,
    )
    session.add(tier)
    session.commit()
    session.refresh(tier)
    return tier


def update(*, session: Session, tier: MembershipTier, changes: dict[str, Any]) -> MembershipTier:
    """
    更新档位

    Raises:
        ValidationFailed: 名额上限低于当前订阅数；已有订阅时修改价格或周期
    """
    if "max_subscribers" in changes:
        new_max = changes["max_subscribers"]
        if new_max is not None and new_max < tier.current_subscribers:
            raise ValidationFailed(
                code=400202,
                message=(
                    f"max_subscribers cannot be lower than the current "
                    f"subscriber count ({tier.current_subscribers})"
                ),
            )

    locked = [
        f for f in _LOCKED_FIELDS if f in changes and changes[f] != getattr(tier, f)
    ]
    if locked and has_subscriptions(session=session, tier_id=tier.id):
        raise ValidationFailed(
            code=400203,
            message=f"Cannot change {', '.join(locked)} of a tier that has subscriptions",
        )

    for key, value in changes.items():
        setattr(tier, key, value)
    tier.updated_at = utc_now()
    session.add(tier)
    session.commit()
    session.refresh(tier)
    return tier


def delete_or_deactivate(*, session: Session, tier: MembershipTier) -> bool:
    """
    删除档位

    从未被订阅过的档位物理删除；否则只下架（is_active = False），
    保留历史订阅的关联。

    Returns:
        是否为物理删除
    """
    if has_subscriptions(session=session, tier_id=tier.id):
        tier.is_active = False
        tier.updated_at = utc_now()
        session.add(tier)
        session.commit()
        return False
    session.delete(tier)
    session.commit()
    return True
