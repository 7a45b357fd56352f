"""
广告指标计算函数
CTR / CPC / CPM 一律由原始计数推导，分母为0时返回0
"""
from typing import Any, Optional

import numpy as np


def _finite_or_zero(value: float) -> float:
    if np.isinf(value) or np.isnan(value):
        return 0.0
    return float(value)


def calculate_ctr(clicks: float, impressions: float) -> float:
    """
    计算点击率 CTR（百分比，保留2位小数）

    公式：CTR = 点击 / 展示 × 100

    示例:
        >>> calculate_ctr(50, 2000)
        2.5
        >>> calculate_ctr(10, 0)
        0.0
    """
    if not impressions or impressions <= 0 or clicks is None:
        return 0.0
    return round(_finite_or_zero(clicks / impressions * 100), 2)


def calculate_cpc(spend: float, clicks: float) -> float:
    """
    计算单次点击成本 CPC

    公式：CPC = 花费 / 点击
    """
    if not clicks or clicks <= 0 or spend is None:
        return 0.0
    return _finite_or_zero(spend / clicks)


def calculate_cpm(spend: float, impressions: float) -> float:
    """
    计算千次展示成本 CPM

    公式：CPM = 花费 / 展示 × 1000
    """
    if not impressions or impressions <= 0 or spend is None:
        return 0.0
    return _finite_or_zero(spend / impressions * 1000)


def round_half_up(value: float) -> int:
    """四舍五入到整数（0.5 向上取整，与前端 Math.round 一致）"""
    return int(np.floor(value + 0.5))


def to_number(value: Any, default: float = 0.0) -> float:
    """将 Graph API 返回的字符串数值转为 float，非法值返回 default，负数截断为0"""
    if value is None or value == "":
        return default
    try:
        number = float(str(value).replace(",", ""))
    except (TypeError, ValueError):
        return default
    if np.isnan(number) or np.isinf(number):
        return default
    return max(number, 0.0)


def sum_action_values(actions: Any, action_type: Optional[str] = None) -> float:
    """
    汇总 Graph API 的 actions 列表

    conversions 字段的格式：
        [{"action_type": "offsite_conversion.fb_pixel_purchase", "value": "3"}, ...]
    也兼容直接返回数字/字符串的情况。
    """
    if actions is None:
        return 0.0
    if not isinstance(actions, list):
        return to_number(actions)
    total = 0.0
    for action in actions:
        if not isinstance(action, dict):
            continue
        if action_type and action.get("action_type") != action_type:
            continue
        total += to_number(action.get("value"))
    return total
