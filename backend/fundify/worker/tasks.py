"""
定时任务逻辑
"""

import logging
from datetime import datetime, timedelta
from uuid import uuid4

from sqlmodel import Session

from fundify import crud
from fundify.api.errors import UpstreamError
from fundify.core.config import settings
from fundify.core.db import engine
from fundify.core.redis import acquire_lock, get_redis, release_lock
from fundify.models import utc_now
from fundify.services.reconciler import close_failed_checkout
from fundify.services.stripe_service import StripeService, get_stripe_service

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "subscriptions:pending_sweep:lock"
SWEEP_LOCK_TTL_SECONDS = 60 * 10


def cancel_failed_checkouts(
    session: Session, stripe_service: StripeService, now: datetime | None = None
) -> int:
    """
    取消确认失败的结账留下的 Stripe 订阅，并关闭本地记录

    Stripe 调用失败的记录保持不变，下次清理时重试。

    Returns:
        关闭的记录数
    """
    now = now or utc_now()
    closed = 0
    for sub in crud.list_failed_checkouts(session=session):
        try:
            stripe_service.cancel_subscription(sub.stripe_subscription_id)
        except UpstreamError as e:
            logger.warning(
                f"Cancel stripe subscription {sub.stripe_subscription_id} "
                f"for failed checkout {sub.id} failed: {e.message}"
            )
            continue
        if close_failed_checkout(session, sub.id, now=now) is not None:
            closed += 1
    return closed


def sweep_abandoned_checkouts(now: datetime | None = None) -> int:
    """
    清理 pending 订阅

    - 确认失败的结账：到 Stripe 取消订阅，本地记录关闭为 cancelled
    - 被放弃的结账：删除

    多个调度进程同时触发时，只有拿到 Redis 锁的进程执行。

    Returns:
        处理的记录数（未拿到锁时为 0）
    """
    now = now or utc_now()
    redis_client = get_redis()
    lock_value = str(uuid4())
    if not acquire_lock(
        redis_client, SWEEP_LOCK_KEY, lock_value, expire_seconds=SWEEP_LOCK_TTL_SECONDS
    ):
        logger.info("Pending sweep already running, skip this run.")
        return 0

    try:
        with Session(engine) as session:
            closed = cancel_failed_checkouts(session, get_stripe_service(), now=now)
            deleted = crud.delete_abandoned_pending(
                session=session,
                retention=timedelta(hours=settings.PENDING_CHECKOUT_RETENTION_HOURS),
                now=now,
            )
        logger.info("Pending sweep finished: closed=%d deleted=%d", closed, deleted)
        return closed + deleted
    finally:
        release_lock(redis_client, SWEEP_LOCK_KEY, lock_value)
