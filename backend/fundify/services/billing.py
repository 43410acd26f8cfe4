"""
计费日期计算

按自然月 / 自然年推进（不是固定天数），并记住计费锚定日：
锚定在 31 日的月订阅，1 月 31 日 -> 2 月 28 日 -> 3 月 31 日，
月份天数不足只影响当月，不会让锚定日逐月漂移。
"""
from __future__ import annotations

import calendar
from datetime import datetime

from fundify.enums import BillingInterval
from fundify.models.base import ensure_utc, utc_now


def _clamp_day(year: int, month: int, anchor_day: int) -> int:
    return min(anchor_day, calendar.monthrange(year, month)[1])


def add_interval(
    moment: datetime,
    interval: BillingInterval | str,
    anchor_day: int | None = None,
) -> datetime:
    """
    将时间推进一个计费周期

    Args:
        moment: 起始时间
        interval: 计费周期
        anchor_day: 计费锚定日（默认取 moment 的日期）

    Returns:
        推进后的时间（时分秒保持不变）
    """
    interval = BillingInterval(interval)
    day = anchor_day or moment.day
    if not 1 <= day <= 31:
        raise ValueError(f"anchor_day must be in [1, 31], got {day}")

    if interval == BillingInterval.monthly:
        year, month = divmod(moment.month, 12)
        year += moment.year
        month += 1
    else:
        year, month = moment.year + 1, moment.month

    return moment.replace(year=year, month=month, day=_clamp_day(year, month, day))


def renewal_anchor(
    current: datetime | None,
    anchor_day: int | None,
    now: datetime,
) -> int:
    """
    续费使用的锚定日

    按期（或当天稍晚）续费保持原锚定日；迟到超过一天的续费
    （Stripe 重试扣款成功）以付款日重新锚定。
    """
    current = ensure_utc(current)
    now = ensure_utc(now) or utc_now()
    if current is None or current.date() < now.date():
        return now.day
    return anchor_day or current.day


def next_billing_date(
    current: datetime | None,
    interval: BillingInterval | str,
    anchor_day: int | None = None,
    now: datetime | None = None,
) -> datetime:
    """
    计算下一次扣费时间

    nextBillingDate = max(now, current) 推进一个周期，日期取 renewal_anchor。
    """
    now = ensure_utc(now) or utc_now()
    current = ensure_utc(current)
    base = current if current is not None and current > now else now
    return add_interval(base, interval, renewal_anchor(current, anchor_day, now))
