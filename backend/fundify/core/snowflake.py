"""
Snowflake ID 生成器

所有表的主键都使用 64 位 Snowflake ID，多个 worker 进程各自生成也不会冲突：
- 41 位：毫秒时间戳（相对 _EPOCH_MS）
- 10 位：节点 ID（SNOWFLAKE_NODE_ID，每个进程不同）
- 12 位：同一毫秒内的序列号
"""
from __future__ import annotations

import threading
import time

from fundify.core.config import settings

# 2024-01-01T00:00:00Z
_EPOCH_MS = 1704067200000
_MAX_BACKWARD_DRIFT_MS = 5000


class Snowflake:
    def __init__(self, *, node_id: int) -> None:
        if not (0 <= node_id <= 1023):
            raise ValueError("SNOWFLAKE_NODE_ID must be in [0, 1023]")
        self._node_id = node_id
        self._lock = threading.Lock()
        self._last_ts = -1
        self._seq = 0

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    @classmethod
    def _wait_until(cls, target_ms: int) -> int:
        ts = cls._now_ms()
        while ts < target_ms:
            time.sleep(0.001)
            ts = cls._now_ms()
        return ts

    def next_id(self) -> int:
        """
        生成下一个 ID（线程安全）

        时钟小幅回拨（5 秒内）时等待时间追上；回拨过大直接报错，
        避免生成重复主键。
        """
        with self._lock:
            ts = self._now_ms()
            if ts < self._last_ts:
                drift = self._last_ts - ts
                if drift > _MAX_BACKWARD_DRIFT_MS:
                    raise RuntimeError(
                        f"Clock moved backwards by {drift}ms. "
                        "Refusing to generate IDs to prevent duplicates."
                    )
                ts = self._wait_until(self._last_ts)

            if ts == self._last_ts:
                self._seq = (self._seq + 1) & 0xFFF
                if self._seq == 0:
                    ts = self._wait_until(self._last_ts + 1)
            else:
                self._seq = 0

            self._last_ts = ts
            return ((ts - _EPOCH_MS) << 22) | (self._node_id << 12) | self._seq


_GENERATOR: Snowflake | None = None


def generate_id() -> int:
    """生成唯一 ID（进程内单例生成器）"""
    global _GENERATOR
    if _GENERATOR is None:
        _GENERATOR = Snowflake(node_id=settings.SNOWFLAKE_NODE_ID)
    return _GENERATOR.next_id()
