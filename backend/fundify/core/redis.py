"""
Redis 连接与分布式锁

后台清理任务可能在多个进程中同时被调度，通过 Redis 锁保证同一时间只有
一个进程执行。业务数据的一致性不依赖这里的锁（由数据库事务和行锁保证）。
"""
from __future__ import annotations

import logging
from functools import lru_cache

import redis

from fundify.core.config import settings

logger = logging.getLogger(__name__)

# 只有持有者（值匹配）才能删除锁
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    """获取 Redis 客户端实例（单例）"""
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
    )


def acquire_lock(client: redis.Redis, key: str, value: str, *, expire_seconds: int) -> bool:
    """
    获取分布式锁（SET NX EX）

    Returns:
        是否获取成功；Redis 不可用时视为未获取
    """
    try:
        return bool(client.set(key, value, ex=expire_seconds, nx=True))
    except redis.RedisError as e:
        logger.error(f"Failed to acquire lock {key}: {e}")
        return False


def release_lock(client: redis.Redis, key: str, value: str) -> bool:
    """释放分布式锁，值不匹配时不删除"""
    try:
        return client.eval(_RELEASE_SCRIPT, 1, key, value) == 1
    except redis.RedisError as e:
        logger.error(f"Failed to release lock {key}: {e}")
        return False
