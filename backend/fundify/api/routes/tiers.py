"""
会员档位路由模块

- POST   /tiers                       创建档位（调用者为创作者）
- GET    /tiers/creator/{creator_id}  创作者的在售档位
- GET    /tiers/{tier_id}             档位详情
- PATCH  /tiers/{tier_id}             更新档位（仅创作者本人）
- DELETE /tiers/{tier_id}             删除或下架档位（仅创作者本人）
"""
from __future__ import annotations

from fastapi import APIRouter

from fundify import crud
from fundify.api.deps import CurrentUser, SessionDep
from fundify.api.errors import tier_not_found
from fundify.api.schemas import (
    ApiEnvelope,
    TierCreateRequest,
    TierData,
    TierDeleteData,
    TierUpdateRequest,
)
from fundify.models import MembershipTier

router = APIRouter(prefix="/tiers", tags=["tiers"])

# 请求中显式传 null 时，这些字段保持不变（其余字段 null 有含义，如不限名额）
_NON_NULLABLE = {"name", "price", "interval", "perks", "position", "is_active"}


def to_tier_data(tier: MembershipTier) -> TierData:
    spots_left = None
    if tier.max_subscribers is not None:
        spots_left = max(tier.max_subscribers - tier.current_subscribers, 0)
    return TierData(
        id=tier.id,
        creator_id=tier.creator_id,
        name=tier.name,
        description=tier.description,
        price=tier.price,
        interval=tier.interval,
        perks=tier.perks or [],
        max_subscribers=tier.max_subscribers,
        current_subscribers=tier.current_subscribers,
        spots_left=spots_left,
        position=tier.position,
        is_active=tier.is_active,
        created_at=tier.created_at,
    )


@router.post("", response_model=ApiEnvelope)
def create_tier(
    session: SessionDep, current_user: CurrentUser, body: TierCreateRequest
) -> ApiEnvelope:
    tier = crud.create_tier(
        session=session,
        creator_id=current_user.id,
        name=body.name,
        description=body.description,
        price=body.price,
        interval=body.interval,
        perks=body.perks,
        max_subscribers=body.max_subscribers,
        position=body.position,
    )
    return ApiEnvelope(data=to_tier_data(tier))


@router.get("/creator/{creator_id}", response_model=ApiEnvelope)
def list_creator_tiers(session: SessionDep, creator_id: int) -> ApiEnvelope:
    """创作者的在售档位，按 position、price 排序（公开接口）"""
    tiers = crud.list_creator_tiers(session=session, creator_id=creator_id)
    return ApiEnvelope(data=[to_tier_data(t) for t in tiers])


@router.get("/{tier_id}", response_model=ApiEnvelope)
def get_tier(session: SessionDep, tier_id: int) -> ApiEnvelope:
    tier = crud.get_tier(session=session, tier_id=tier_id)
    if not tier:
        raise tier_not_found()
    return ApiEnvelope(data=to_tier_data(tier))


@router.patch("/{tier_id}", response_model=ApiEnvelope)
def update_tier(
    session: SessionDep, current_user: CurrentUser, tier_id: int, body: TierUpdateRequest
) -> ApiEnvelope:
    tier = crud.get_owned_tier(session=session, tier_id=tier_id, creator_id=current_user.id)
    changes = {
        k: v
        for k, v in body.model_dump(exclude_unset=True).items()
        if not (v is None and k in _NON_NULLABLE)
    }
    tier = crud.update_tier(session=session, tier=tier, changes=changes)
    return ApiEnvelope(data=to_tier_data(tier))


@router.delete("/{tier_id}", response_model=ApiEnvelope)
def delete_tier(session: SessionDep, current_user: CurrentUser, tier_id: int) -> ApiEnvelope:
    """从未被订阅的档位物理删除，否则仅下架"""
    tier = crud.get_owned_tier(session=session, tier_id=tier_id, creator_id=current_user.id)
    deleted = crud.delete_or_deactivate_tier(session=session, tier=tier)
    return ApiEnvelope(data=TierDeleteData(deleted=deleted, is_active=False))
