"""
会员档位模型模块
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlmodel import Field, SQLModel

from fundify.core.snowflake import generate_id
from fundify.enums import BillingInterval

from .base import utc_now


class MembershipTier(SQLModel, table=True):
    """
    会员档位模型

    每个档位属于一个创作者，定义价格、计费周期和可选的名额上限。

    字段说明：
    - max_subscribers: 名额上限（None 表示不限）
    - current_subscribers: 当前占用名额数（active + paused 的订阅），
      只通过 services.tier_registry 中的条件更新修改
    - is_active: 软下架标记；曾有订阅的档位不能物理删除
    - position: 展示顺序

    数据库约束保证名额计数不为负且不超过上限。
    """
    __tablename__ = "membership_tiers"
    __table_args__ = (
        CheckConstraint("current_subscribers >= 0", name="ck_membership_tiers_count_non_negative"),
        CheckConstraint(
            "max_subscribers IS NULL OR current_subscribers <= max_subscribers",
            name="ck_membership_tiers_count_within_capacity",
        ),
        CheckConstraint("price > 0", name="ck_membership_tiers_price_positive"),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    creator_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )

    name: str = Field(sa_column=Column(String(128), nullable=False))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    price: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    interval: BillingInterval = Field(sa_column=Column(String(16), nullable=False))
    perks: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    max_subscribers: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    current_subscribers: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, server_default="0")
    )

    position: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default="0"))
    is_active: bool = Field(
        default=True, sa_column=Column(Boolean, nullable=False, server_default=text("true"))
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
