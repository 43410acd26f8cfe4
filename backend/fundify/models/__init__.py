"""
数据库模型定义模块

模型按功能拆分：
- user.py: 用户（订阅者 / 创作者）
- tier.py: 会员档位
- subscription.py: 订阅记录
- stripe_event.py: Stripe 事件去重表
"""
from sqlmodel import SQLModel

from fundify.enums import BillingInterval, EventOutcome, SubscriptionStatus

from .base import ensure_utc, utc_now
from .stripe_event import ProcessedEvent
from .subscription import Subscription
from .tier import MembershipTier
from .user import User

__all__ = [
    "SQLModel",
    "utc_now",
    "ensure_utc",
    "User",
    "MembershipTier",
    "Subscription",
    "ProcessedEvent",
    "BillingInterval",
    "EventOutcome",
    "SubscriptionStatus",
]
