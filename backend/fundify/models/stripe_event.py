"""
Stripe 事件去重表模块
"""
from datetime import datetime

from sqlalchemy import JSON, BigInteger, Column, DateTime, String
from sqlmodel import Field, SQLModel

from fundify.core.snowflake import generate_id
from fundify.enums import EventOutcome

from .base import utc_now


class ProcessedEvent(SQLModel, table=True):
    """
    已处理的 Stripe Webhook 事件

    每个事件 ID 在产生任何副作用之前写入（与副作用同一个事务），
    重复投递的事件因 event_id 唯一约束直接短路。只追加，不更新也不删除。

    字段说明：
    - event_id: Stripe 事件 ID（evt_...，唯一）
    - event_type: 事件类型
    - object_id: 事件对象 ID（data.object.id，如 sub_... / cs_... / in_...），
      用于查找先于本地记录到达的事件
    - outcome: 处理结果（见 enums.EventOutcome）
    - error: 业务失败原因
    - payload: 事件原文（JSON）
    """
    __tablename__ = "processed_events"

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    event_id: str = Field(sa_column=Column(String(255), unique=True, index=True, nullable=False))
    event_type: str = Field(sa_column=Column(String(64), nullable=False))
    object_id: str | None = Field(
        default=None, sa_column=Column(String(255), index=True, nullable=True)
    )
    outcome: EventOutcome = Field(sa_column=Column(String(16), nullable=False))
    error: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    payload: dict | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
