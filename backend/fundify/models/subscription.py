"""
订阅模型模块

订阅记录是本地的权威数据：订阅者、创作者、档位三者的关系以及状态机。
终态记录（cancelled / expired）永不物理删除，用于历史和报表；
只有从未确认的 pending 记录会被清理任务删除。
"""
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    text,
)
from sqlmodel import Field, SQLModel

from fundify.core.snowflake import generate_id
from fundify.enums import SubscriptionStatus

from .base import utc_now

# 与 enums.SEAT_HOLDING_STATUSES 保持一致
_OPEN_STATUS_PREDICATE = text("status IN ('active', 'paused')")


class Subscription(SQLModel, table=True):
    """
    订阅记录模型

    字段说明：
    - subscriber_id / creator_id: 订阅者与创作者（均为 users.id）
    - tier_id: 档位，创建后不再变更（换档 = 取消旧订阅 + 新建订阅）
    - status: 状态（见 enums.SubscriptionStatus）
    - start_date: 生效时间（确认结账时写入）
    - next_billing_date: 下次扣费时间
    - billing_anchor_day: 计费锚定日（1-31），月份天数不足时按月末计算，
      之后的月份恢复到锚定日
    - end_date: 访问截止时间（用户取消时为当期结束时间）
    - cancelled_at: 取消时间
    - paused_by_processor: 暂停由 Stripe 发起（Stripe 恢复时自动解除）；
      用户自己暂停时为 False，只能由用户恢复
    - at_risk / payment_failed_at / failed_payment_count: 扣款失败标记，
      仅供运营查看，Stripe 自己负责重试
    - last_paid_invoice_id: 最近一次已入账的发票（Stripe 对同一张发票会发送
      invoice.paid 和 invoice.payment_succeeded 两个事件）
    - stripe_subscription_id: Stripe 订阅 ID（结账完成前为空）
    - stripe_customer_id: Stripe 客户 ID
    - checkout_session_id / checkout_expires_at: 待支付结账会话
    - failure_code / failure_reason: 确认结账失败（如档位已满）的错误码和原因，
      订阅者可在订阅列表中看到；对应的 Stripe 订阅由清理任务取消

    (subscriber_id, creator_id) 在 active/paused 状态下唯一，由部分唯一索引保证。
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_open_pair",
            "subscriber_id",
            "creator_id",
            unique=True,
            postgresql_where=_OPEN_STATUS_PREDICATE,
            sqlite_where=_OPEN_STATUS_PREDICATE,
        ),
        Index("ix_subscriptions_creator_status", "creator_id", "status"),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    subscriber_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )
    creator_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    )
    tier_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("membership_tiers.id"), index=True, nullable=False
        )
    )

    status: SubscriptionStatus = Field(sa_column=Column(String(16), nullable=False))

    start_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    next_billing_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    billing_anchor_day: int | None = Field(
        default=None, sa_column=Column(SmallInteger, nullable=True)
    )
    end_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    cancelled_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    paused_by_processor: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=text("false"))
    )
    at_risk: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=text("false"))
    )
    payment_failed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    failed_payment_count: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, server_default="0")
    )
    last_paid_invoice_id: str | None = Field(
        default=None, sa_column=Column(String(64), nullable=True)
    )

    stripe_subscription_id: str | None = Field(
        default=None, sa_column=Column(String(64), unique=True, nullable=True)
    )
    stripe_customer_id: str | None = Field(
        default=None, sa_column=Column(String(64), nullable=True)
    )
    checkout_session_id: str | None = Field(
        default=None, sa_column=Column(String(128), unique=True, nullable=True)
    )
    checkout_expires_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    failure_code: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    failure_reason: str | None = Field(
        default=None, sa_column=Column(String(255), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
