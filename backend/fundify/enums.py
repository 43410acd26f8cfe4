"""
枚举类型定义模块

所有枚举都继承自 str 和 Enum，既可以直接作为字符串存库，又具有枚举的特性。
"""
from enum import Enum


class BillingInterval(str, Enum):
    """
    计费周期

    - monthly: 按自然月
    - yearly: 按自然年
    """
    monthly = "monthly"
    yearly = "yearly"


class SubscriptionStatus(str, Enum):
    """
    订阅状态

    - pending: 已发起结账，等待 Stripe 确认
    - active: 生效中
    - paused: 已暂停（用户或 Stripe 发起，名额保留）
    - cancelled: 已取消（终态）
    - expired: 因欠费过期（终态）

    合法转换：
        pending -> active
        active <-> paused
        active/paused -> cancelled | expired
        pending -> cancelled（确认结账失败，Stripe 订阅已由清理任务取消）
    """
    pending = "pending"
    active = "active"
    paused = "paused"
    cancelled = "cancelled"
    expired = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.cancelled, SubscriptionStatus.expired)

    @property
    def holds_seat(self) -> bool:
        """是否占用档位名额"""
        return self in (SubscriptionStatus.active, SubscriptionStatus.paused)


# 占用名额的状态集合（与部分唯一索引的 WHERE 条件一致）
SEAT_HOLDING_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.paused)


class StripeEventType(str, Enum):
    """
    需要处理的 Stripe Webhook 事件类型

    其他类型会被记录并确认，但不做业务处理。
    """
    checkout_completed = "checkout.session.completed"
    checkout_expired = "checkout.session.expired"
    subscription_updated = "customer.subscription.updated"
    subscription_deleted = "customer.subscription.deleted"
    subscription_paused = "customer.subscription.paused"
    subscription_resumed = "customer.subscription.resumed"
    invoice_paid = "invoice.paid"
    invoice_payment_succeeded = "invoice.payment_succeeded"
    invoice_payment_failed = "invoice.payment_failed"


class EventOutcome(str, Enum):
    """
    事件处理结果（记录在 processed_events.outcome）

    - applied: 产生了状态变化
    - noop: 合法但无需变化（重复、终态、顺序错乱等）
    - ignored: 不支持的事件类型，或找不到对应订阅
    - failed: 业务错误（已回滚，仅记录以便排查）
    """
    applied = "applied"
    noop = "noop"
    ignored = "ignored"
    failed = "failed"
