"""
日期范围工具

date_range 参数支持两种形式：
- 预设：today, yesterday, last_7_days, last_14_days, last_30_days,
  last_90_days, this_month, last_month
- 自定义：YYYY-MM-DD,YYYY-MM-DD（含首尾两天）
"""
from datetime import date, datetime, timedelta
from typing import Dict, Iterator, Optional

from metaads.exceptions import DateRangeError
from metaads.schemas.ads import DateRange

DEFAULT_PRESET = "last_7_days"

PRESETS = (
    "today",
    "yesterday",
    "last_7_days",
    "last_14_days",
    "last_30_days",
    "last_90_days",
    "this_month",
    "last_month",
)

# 示例数据的天数倍率（以7天为基准）
PRESET_MULTIPLIERS: Dict[str, float] = {
    "today": 1 / 7,
    "yesterday": 1 / 7,
    "last_7_days": 1.0,
    "last_14_days": 2.0,
    "last_30_days": 30 / 7,
    "last_90_days": 90 / 7,
    "this_month": 30 / 7,
    "last_month": 30 / 7,
}

# 预设显示名称
PRESET_LABELS: Dict[str, str] = {
    "today": "Today",
    "yesterday": "Yesterday",
    "last_7_days": "Last 7 days",
    "last_14_days": "Last 14 days",
    "last_30_days": "Last 30 days",
    "last_90_days": "Last 90 days",
    "this_month": "This month",
    "last_month": "Last month",
}


def is_custom_range(value: Optional[str]) -> bool:
    return bool(value) and "," in value


def _parse_day(text: str) -> date:
    try:
        return datetime.strptime(text.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise DateRangeError(f"日期格式错误，应为 YYYY-MM-DD: {text!r}")


def parse_custom_range(value: str) -> DateRange:
    """解析 'YYYY-MM-DD,YYYY-MM-DD'"""
    parts = value.split(",")
    if len(parts) != 2:
        raise DateRangeError(f"自定义日期范围格式错误: {value!r}")
    since = _parse_day(parts[0])
    until = _parse_day(parts[1])
    if since > until:
        raise DateRangeError(f"开始日期不能晚于结束日期: {value!r}")
    return DateRange(since=since, until=until)


def trailing_days(days: int, today: Optional[date] = None) -> DateRange:
    """以今天为结束日的最近 N 天（含今天）"""
    today = today or date.today()
    return DateRange(since=today - timedelta(days=days - 1), until=today)


def resolve_date_range(value: Optional[str] = None, today: Optional[date] = None) -> DateRange:
    """
    将 date_range 参数解析为具体的起止日期

    参数:
        value: 预设名称或自定义范围；为空时默认最近7天
        today: 基准日期（测试用），默认当天

    返回:
        DateRange

    异常:
        DateRangeError: 未知预设或格式错误
    """
    today = today or date.today()
    value = (value or DEFAULT_PRESET).strip()

    if is_custom_range(value):
        return parse_custom_range(value)

    if value == "today":
        return DateRange(since=today, until=today)
    if value == "yesterday":
        yesterday = today - timedelta(days=1)
        return DateRange(since=yesterday, until=yesterday)
    if value == "last_7_days":
        return trailing_days(7, today)
    if value == "last_14_days":
        return trailing_days(14, today)
    if value == "last_30_days":
        return trailing_days(30, today)
    if value == "last_90_days":
        return trailing_days(90, today)
    if value == "this_month":
        return DateRange(since=today.replace(day=1), until=today)
    if value == "last_month":
        last_day = today.replace(day=1) - timedelta(days=1)
        return DateRange(since=last_day.replace(day=1), until=last_day)

    raise DateRangeError(
        f"未知的日期范围预设: {value!r}，可选值: {', '.join(PRESETS)} 或 YYYY-MM-DD,YYYY-MM-DD"
    )


def day_count(date_range: DateRange) -> int:
    """日期范围包含的天数（含首尾）"""
    return (date_range.until - date_range.since).days + 1


def iter_days(date_range: DateRange) -> Iterator[date]:
    current = date_range.since
    while current <= date_range.until:
        yield current
        current += timedelta(days=1)


def day_multiplier(value: Optional[str]) -> float:
    """
    示例数据的天数倍率

    自定义范围：天数 / 7；预设使用固定比例；无法识别时为1。
    纯函数，不依赖当前日期。
    """
    if not value:
        return 1.0
    if is_custom_range(value):
        try:
            return day_count(parse_custom_range(value)) / 7
        except DateRangeError:
            return 1.0
    return PRESET_MULTIPLIERS.get(value.strip(), 1.0)


def date_range_label(value: Optional[str]) -> str:
    """用于汇总卡片的期间描述"""
    if is_custom_range(value):
        try:
            resolved = parse_custom_range(value)
        except DateRangeError:
            return PRESET_LABELS[DEFAULT_PRESET]
        return f"{resolved.since.isoformat()} ~ {resolved.until.isoformat()}"
    return PRESET_LABELS.get((value or "").strip(), PRESET_LABELS[DEFAULT_PRESET])
