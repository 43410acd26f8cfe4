"""
API 请求/响应数据模型（Schema）

这些模型不是数据库表，只用于 API 数据交换。
金额统一用 Decimal，序列化为字符串，避免浮点误差。
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator

from fundify.enums import BillingInterval, SubscriptionStatus

# ============================================================
# 通用
# ============================================================


class TokenPayload(BaseModel):
    """JWT 载荷，sub 为用户 ID"""
    sub: str | None = None


class ApiEnvelope(BaseModel):
    """
    API 统一响应格式

    - code: 0 表示成功，非 0 为业务错误码
    - message: 成功时为 "success"
    - data: 业务数据

    示例响应：
        {"code": 0, "message": "success", "data": {...}}
        {"code": 409201, "message": "This tier is full. Please try another tier.", "data": None}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


# ============================================================
# 档位
# ============================================================


def _validate_perks(v: list[str] | None) -> list[str] | None:
    if v is None:
        return v
    perks = [p.strip() for p in v if p and p.strip()]
    if any(len(p) > 255 for p in perks):
        raise ValueError("each perk must be at most 255 characters")
    return perks


class TierCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=5000)
    price: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    interval: BillingInterval = BillingInterval.monthly
    perks: list[str] = Field(default_factory=list, max_length=50)
    max_subscribers: int | None = Field(default=None, ge=1)
    position: int = Field(default=0, ge=0)

    check_perks = field_validator("perks")(_validate_perks)


class TierUpdateRequest(BaseModel):
    """只更新请求中出现的字段"""
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=5000)
    price: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    interval: BillingInterval | None = None
    perks: list[str] | None = Field(default=None, max_length=50)
    max_subscribers: int | None = Field(default=None, ge=1)
    position: int | None = Field(default=None, ge=0)
    is_active: bool | None = None

    check_perks = field_validator("perks")(_validate_perks)


class TierData(BaseModel):
    id: int
    creator_id: int
    name: str
    description: str | None = None
    price: Decimal
    interval: BillingInterval
    perks: list[str] = []
    max_subscribers: int | None = None
    current_subscribers: int
    spots_left: int | None = None  # None 表示不限名额
    position: int
    is_active: bool
    created_at: datetime


class TierSummary(BaseModel):
    id: int
    name: str
    price: Decimal
    interval: BillingInterval


class TierDeleteData(BaseModel):
    deleted: bool  # True: 物理删除；False: 已有订阅，仅下架
    is_active: bool


# ============================================================
# 订阅
# ============================================================


class CheckoutRequest(BaseModel):
    tier_id: int


class CheckoutData(BaseModel):
    subscription_id: int
    session_id: str
    url: str | None = None
    expires_at: datetime | None = None


class SubscriptionData(BaseModel):
    id: int
    subscriber_id: int
    creator_id: int
    tier_id: int
    status: SubscriptionStatus
    start_date: datetime | None = None
    next_billing_date: datetime | None = None
    end_date: datetime | None = None
    cancelled_at: datetime | None = None
    at_risk: bool = False
    failure_code: int | None = None
    failure_reason: str | None = None
    created_at: datetime
    tier: TierSummary | None = None


class SubscriptionsData(BaseModel):
    data: list[SubscriptionData]
    count: int


class SubscriberData(BaseModel):
    subscription_id: int
    subscriber_id: int
    name: str | None = None
    email: str
    tier: TierSummary
    start_date: datetime | None = None
    next_billing_date: datetime | None = None
    at_risk: bool = False


class SubscriberStats(BaseModel):
    total_subscribers: int
    monthly_revenue: Decimal


class SubscribersData(BaseModel):
    data: list[SubscriberData]
    stats: SubscriberStats


class AccessData(BaseModel):
    creator_id: int
    has_access: bool
    subscription_id: int | None = None
    status: SubscriptionStatus | None = None
    access_until: datetime | None = None


# ============================================================
# Stripe
# ============================================================


class PortalSessionRequest(BaseModel):
    return_url: str | None = Field(default=None, max_length=1024)


class PortalSessionData(BaseModel):
    url: str


class StripeConfigData(BaseModel):
    publishable_key: str | None = None
    currency: str


class WebhookAckData(BaseModel):
    received: bool
    event_id: str | None = None
    outcome: str | None = None
    duplicate: bool = False
    rejected: str | None = None
