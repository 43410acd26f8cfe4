"""
数据库连接模块

管理数据库引擎和会话的创建。

重要提示：
- 数据库表结构通过 Alembic 迁移管理，不要在这里创建表
- 确保在使用前导入所有模型（fundify.models），否则关系可能无法正确初始化
"""
import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlmodel import Session, create_engine

from fundify.api.errors import store_unavailable
from fundify.core.config import settings

logger = logging.getLogger(__name__)

engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """
    单个逻辑操作的事务边界

    正常结束时提交；任何异常都整体回滚，不会留下部分生效的副作用
    （例如名额已占用但订阅未激活）。数据库连接类错误转换为
    TransientStoreFailure，由调用方决定是否重试。

    使用示例：
        with unit_of_work(session):
            reserve_slot(session, tier_id)
            sub.status = SubscriptionStatus.active
    """
    try:
        yield session
        session.commit()
    except OperationalError as exc:
        session.rollback()
        logger.error(f"Database unavailable, transaction rolled back: {exc}")
        raise store_unavailable() from exc
    except Exception:
        session.rollback()
        raise
