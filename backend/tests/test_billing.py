from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fundify.enums import BillingInterval
from fundify.services.billing import add_interval, next_billing_date, renewal_anchor


def _dt(year: int, month: int, day: int, hour: int = 12) -> datetime:
    return datetime(year, month, day, hour, 0, tzinfo=timezone.utc)


def test_monthly_anchor_31_keeps_anchor_through_short_months():
    jan = _dt(2026, 1, 31)
    feb = add_interval(jan, BillingInterval.monthly, 31)
    mar = add_interval(feb, BillingInterval.monthly, 31)
    apr = add_interval(mar, BillingInterval.monthly, 31)
    may = add_interval(apr, BillingInterval.monthly, 31)

    assert feb == _dt(2026, 2, 28)
    assert mar == _dt(2026, 3, 31)
    assert apr == _dt(2026, 4, 30)
    assert may == _dt(2026, 5, 31)


def test_monthly_leap_year_and_december_rollover():
    assert add_interval(_dt(2028, 1, 30), "monthly") == _dt(2028, 2, 29)
    assert add_interval(_dt(2026, 12, 15), "monthly") == _dt(2027, 1, 15)


def test_yearly_from_leap_day():
    assert add_interval(_dt(2028, 2, 29), BillingInterval.yearly, 29) == _dt(2029, 2, 28)
    assert add_interval(_dt(2029, 2, 28), BillingInterval.yearly, 29) == _dt(2030, 2, 28)
    assert add_interval(_dt(2031, 2, 28), BillingInterval.yearly, 29) == _dt(2032, 2, 29)


def test_add_interval_rejects_bad_anchor():
    with pytest.raises(ValueError):
        add_interval(_dt(2026, 1, 1), BillingInterval.monthly, 32)


def test_next_billing_date_advances_from_current_when_in_future():
    current = _dt(2026, 3, 31)
    now = _dt(2026, 3, 30)
    assert next_billing_date(current, BillingInterval.monthly, 31, now=now) == _dt(2026, 4, 30)


def test_next_billing_date_late_renewal_reanchors_on_payment_day():
    current = _dt(2026, 3, 10)
    now = current + timedelta(days=5)
    assert next_billing_date(current, BillingInterval.monthly, 10, now=now) == _dt(2026, 4, 15)
    assert next_billing_date(None, BillingInterval.yearly, now=now) == _dt(2027, 3, 15)


def test_next_billing_date_accepts_naive_values():
    current = datetime(2026, 5, 31, 12, 0)
    now = _dt(2026, 5, 1)
    assert next_billing_date(current, BillingInterval.monthly, 31, now=now) == _dt(2026, 6, 30)


def test_same_day_renewal_keeps_anchor():
    current = _dt(2026, 2, 28, hour=10)
    now = _dt(2026, 2, 28, hour=14)
    assert renewal_anchor(current, 31, now) == 31
    assert next_billing_date(current, BillingInterval.monthly, 31, now=now) == _dt(2026, 3, 31, 14)
    assert renewal_anchor(current, 31, _dt(2026, 3, 2)) == 2
