"""
档位名额登记

名额计数只通过单条条件 UPDATE 修改，不做"先读后写"：
两个并发确认同时读到剩余 1 个名额时，只有一个 UPDATE 命中行。
计数器存在数据库中，多个无状态 worker 进程之间同样成立。

两个函数都不提交事务，调用方（reconciler）在同一事务里同时修改订阅行，
任何一步失败整体回滚。
"""
import logging

from sqlalchemy import case, or_, update
from sqlmodel import Session

from fundify.api.errors import tier_full, tier_not_found
from fundify.models import MembershipTier, utc_now

logger = logging.getLogger(__name__)


def reserve_slot(session: Session, tier_id: int) -> None:
    """
    占用一个名额

    Raises:
        CapacityExceeded: 档位已满
        NotFound: 档位不存在
    """
    stmt = (
        update(MembershipTier)
        .where(MembershipTier.id == tier_id)
        .where(
            or_(
                MembershipTier.max_subscribers.is_(None),
                MembershipTier.current_subscribers < MembershipTier.max_subscribers,
            )
        )
        .values(
            current_subscribers=MembershipTier.current_subscribers + 1,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    if result.rowcount == 1:
        return

    if session.get(MembershipTier, tier_id) is None:
        raise tier_not_found()
    logger.info(f"Tier {tier_id} is full, slot reservation rejected")
    raise tier_full()


def release_slot(session: Session, tier_id: int) -> None:
    """
    释放一个名额

    无条件执行；计数在 0 处截断（正常流程不会触发）。
    """
    stmt = (
        update(MembershipTier)
        .where(MembershipTier.id == tier_id)
        .values(
            current_subscribers=case(
                (MembershipTier.current_subscribers > 0, MembershipTier.current_subscribers - 1),
                else_=0,
            ),
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    if result.rowcount == 0:
        logger.warning(f"release_slot: tier {tier_id} not found")
