"""
测试 date_range 参数解析与天数倍率
"""
from datetime import date

import pytest

from metaads.exceptions import DateRangeError
from metaads.utils.date_range import (
    PRESETS,
    date_range_label,
    day_count,
    day_multiplier,
    iter_days,
    resolve_date_range,
)

TODAY = date(2025, 3, 15)


class TestResolveDateRange:
    """测试预设和自定义范围解析"""

    def test_default_is_trailing_seven_days(self):
        """默认最近7天，含今天"""
        resolved = resolve_date_range(None, today=TODAY)
        assert resolved.since == date(2025, 3, 9)
        assert resolved.until == TODAY
        assert day_count(resolved) == 7

    @pytest.mark.parametrize("preset,since,until", [
        ("today", date(2025, 3, 15), date(2025, 3, 15)),
        ("yesterday", date(2025, 3, 14), date(2025, 3, 14)),
        ("last_14_days", date(2025, 3, 2), date(2025, 3, 15)),
        ("last_30_days", date(2025, 2, 14), date(2025, 3, 15)),
        ("this_month", date(2025, 3, 1), date(2025, 3, 15)),
        ("last_month", date(2025, 2, 1), date(2025, 2, 28)),
    ])
    def test_presets(self, preset, since, until):
        resolved = resolve_date_range(preset, today=TODAY)
        assert (resolved.since, resolved.until) == (since, until)

    def test_every_preset_resolves(self):
        for preset in PRESETS:
            resolved = resolve_date_range(preset, today=TODAY)
            assert resolved.since <= resolved.until

    def test_last_month_across_year(self):
        resolved = resolve_date_range("last_month", today=date(2025, 1, 10))
        assert resolved.since == date(2024, 12, 1)
        assert resolved.until == date(2024, 12, 31)

    def test_custom_range(self):
        resolved = resolve_date_range("2025-01-01,2025-01-07")
        assert resolved.since == date(2025, 1, 1)
        assert resolved.until == date(2025, 1, 7)
        assert resolved.as_param() == "2025-01-01,2025-01-07"
        assert resolved.to_graph() == {"since": "2025-01-01", "until": "2025-01-07"}

    @pytest.mark.parametrize("value", [
        "last_week",
        "2025-01-07,2025-01-01",
        "2025-13-01,2025-13-02",
        "2025-01-01,2025-01-02,2025-01-03",
    ])
    def test_invalid_values(self, value):
        """未知预设、倒序或格式错误"""
        with pytest.raises(DateRangeError):
            resolve_date_range(value, today=TODAY)

    def test_iter_days(self):
        resolved = resolve_date_range("2025-02-27,2025-03-02")
        assert list(iter_days(resolved)) == [
            date(2025, 2, 27), date(2025, 2, 28), date(2025, 3, 1), date(2025, 3, 2),
        ]


class TestDayMultiplier:
    """测试示例数据的天数倍率"""

    def test_custom_week_equals_last_7_days(self):
        """7天自定义范围与 last_7_days 倍率相同"""
        assert day_multiplier("2025-01-01,2025-01-07") == 1.0
        assert day_multiplier("last_7_days") == 1.0

    @pytest.mark.parametrize("value,expected", [
        ("today", 1 / 7),
        ("yesterday", 1 / 7),
        ("last_14_days", 2.0),
        ("last_30_days", 30 / 7),
        ("last_90_days", 90 / 7),
        ("this_month", 30 / 7),
        ("last_month", 30 / 7),
    ])
    def test_presets(self, value, expected):
        assert day_multiplier(value) == pytest.approx(expected)

    def test_unknown_defaults_to_one(self):
        assert day_multiplier("lifetime") == 1.0
        assert day_multiplier(None) == 1.0
        assert day_multiplier("not-a-date,2025-01-01") == 1.0

    def test_custom_range_day_count(self):
        assert day_multiplier("2025-01-01,2025-01-14") == 2.0
        assert day_multiplier("2025-01-01,2025-01-01") == pytest.approx(1 / 7)


class TestLabels:
    def test_labels(self):
        assert date_range_label("last_30_days") == "Last 30 days"
        assert date_range_label("2025-01-01,2025-01-07") == "2025-01-01 ~ 2025-01-07"
        assert date_range_label(None) == "Last 7 days"
