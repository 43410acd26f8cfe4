"""
用户模型模块

用户（订阅者和创作者共用）由平台的账号服务创建，本服务只读取，
并在首次结账时写入 Stripe 客户 ID。
"""
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, String
from sqlmodel import Field, SQLModel

from fundify.core.snowflake import generate_id

from .base import utc_now


class User(SQLModel, table=True):
    """
    用户模型

    字段说明：
    - id: 主键（Snowflake ID）
    - email: 邮箱，创建 Stripe 客户时使用
    - name: 显示名称
    - stripe_customer_id: Stripe 客户 ID（首次结账时创建，之后复用）
    """
    __tablename__ = "users"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    email: str = Field(sa_column=Column(String(255), unique=True, index=True, nullable=False))
    name: str | None = Field(default=None, max_length=128)
    stripe_customer_id: str | None = Field(
        default=None, sa_column=Column(String(64), unique=True, nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
