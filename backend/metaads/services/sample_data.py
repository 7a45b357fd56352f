"""
示例数据生成

当 Graph API 因权限不足（缺少 ads_read）拒绝请求时，用确定性的示例数据
替代，保证前端不为空。所有函数都是纯函数：同一 (实体ID, date_range)
总是得到完全相同的结果，数值随日期范围长度缩放。
"""
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

from metaads.schemas.ads import (
    Ad,
    AdAccount,
    AdSet,
    AccountSummary,
    Campaign,
    DailyInsight,
    DateRange,
    Insights,
)
from metaads.utils.date_range import date_range_label, day_multiplier, iter_days
from metaads.utils.metrics import round_half_up

SAMPLE_NOTES: Dict[str, str] = {
    "accounts": "Sample data - requires ads_read permission for real data",
    "campaigns": "Sample data - requires ads_read permission for real campaigns",
    "adsets": "Sample data - requires ads_read permission for real ad sets",
    "ads": "Sample data - requires ads_read permission for real ads",
    "insights": "Sample data - requires ads_read permission for real insights",
    "summary": "Sample data - requires ads_read permission for real metrics",
    "daily": "Sample daily data - requires ads_read permission for real insights",
}


@dataclass(frozen=True)
class SampleProfile:
    """某一层级示例指标的基准区间：值 = base + rand × spread（7天口径）"""
    default_seed: int
    impressions: tuple
    reach: tuple
    clicks: tuple
    spend: tuple
    conversions: tuple


SAMPLE_PROFILES: Dict[str, SampleProfile] = {
    "campaign": SampleProfile(
        default_seed=3000,
        impressions=(45000, 30000),
        reach=(24000, 15000),
        clicks=(1200, 900),
        spend=(75000, 45000),
        conversions=(45, 30),
    ),
    "adset": SampleProfile(
        default_seed=2000,
        impressions=(15000, 10000),
        reach=(8000, 5000),
        clicks=(400, 300),
        spend=(25000, 15000),
        conversions=(15, 10),
    ),
    "ad": SampleProfile(
        default_seed=1000,
        impressions=(5000, 8000),
        reach=(3000, 4000),
        clicks=(120, 200),
        spend=(8000, 12000),
        conversions=(5, 8),
    ),
}


def seed_from_id(entity_id: Optional[str], default: int) -> int:
    """
    取实体 ID 的后4位数字作为种子

    ID 过短、非数字或后4位为0时使用 default。
    """
    text = (entity_id or "").strip()
    if len(text) < 4:
        return default
    tail = text[-4:]
    if not tail.isdigit():
        return default
    return int(tail) or default


def seeded_random(seed: float) -> float:
    """确定性伪随机数：frac(sin(seed) × 10000)，范围 [0, 1)"""
    x = math.sin(seed) * 10000
    return x - math.floor(x)


def generate_insights_from_seed(seed: int, multiplier: float, kind: str = "adset") -> Insights:
    """由显式种子和天数倍率生成示例洞察"""
    profile = SAMPLE_PROFILES[kind]

    def magnitude(k: int, base_range: tuple) -> int:
        base, spread = base_range
        return round_half_up((base + seeded_random(seed * k) * spread) * multiplier)

    impressions = max(magnitude(1, profile.impressions), 1)
    reach = max(magnitude(2, profile.reach), 1)
    clicks = max(magnitude(3, profile.clicks), 0)
    spend = max(magnitude(4, profile.spend), 0)
    conversions = max(magnitude(5, profile.conversions), 0)

    return Insights(
        impressions=impressions,
        reach=reach,
        frequency=round(impressions / reach, 2),
        clicks=clicks,
        spend=float(spend),
        conversions=float(conversions),
        cost_per_conversion=(spend / conversions) if conversions else 0.0,
        is_sample=True,
    )


def generate_insights(entity_id: str, date_range: Optional[str], kind: str = "adset") -> Insights:
    """
    为广告系列/广告组/广告生成示例洞察

    参数:
        entity_id: 实体 ID（决定种子）
        date_range: 原始 date_range 参数（决定倍率）
        kind: campaign / adset / ad

    返回:
        is_sample=True 的 Insights
    """
    if kind not in SAMPLE_PROFILES:
        raise ValueError(f"不支持的示例数据层级: {kind!r}")
    seed = seed_from_id(entity_id, SAMPLE_PROFILES[kind].default_seed)
    return generate_insights_from_seed(seed, day_multiplier(date_range), kind)


def sample_summary(date_range: Optional[str]) -> AccountSummary:
    """账户汇总示例数据，比率指标与期间长度无关"""
    multiplier = day_multiplier(date_range)
    insights = Insights(
        impressions=round_half_up(125000 * multiplier),
        reach=round_half_up(85000 * multiplier),
        clicks=round_half_up(3250 * multiplier),
        spend=float(round_half_up(450000 * multiplier)),
        conversions=float(round_half_up(45 * multiplier)),
        is_sample=True,
    )
    return AccountSummary.from_insights(insights, period=date_range_label(date_range))


def sample_daily_insights(account_id: str, date_range: DateRange) -> List[DailyInsight]:
    """
    逐日示例数据

    周末表现按 0.7 折算；每天的波动（±20%）由账户种子和日期决定。
    """
    seed = seed_from_id(account_id, 1000)
    rows: List[DailyInsight] = []
    for day in iter_days(date_range):
        weekday_factor = 0.7 if day.weekday() >= 5 else 1.0
        random_factor = 0.8 + seeded_random(seed + day.toordinal()) * 0.4
        factor = weekday_factor * random_factor
        rows.append(DailyInsight(
            date_start=day.isoformat(),
            date_stop=day.isoformat(),
            impressions=round_half_up(18000 * factor),
            reach=round_half_up(12000 * factor),
            spend=float(round_half_up(64000 * factor)),
            clicks=round_half_up(460 * factor),
            conversions=float(round_half_up(6 * factor)),
            is_sample=True,
        ))
    return rows


def sample_ad_accounts() -> List[AdAccount]:
    return [
        AdAccount(
            id="act_123456789",
            name="Sample Ad Account",
            account_id="123456789",
            currency="KRW",
            timezone_name="Asia/Seoul",
            account_status=1,
        ),
        AdAccount(
            id="act_987654321",
            name="Test Account 2",
            account_id="987654321",
            currency="USD",
            timezone_name="America/Los_Angeles",
            account_status=1,
        ),
    ]


def sample_campaigns() -> List[Campaign]:
    return [
        Campaign(
            id="120330000123456789",
            name="Summer Sale Campaign",
            objective="OUTCOME_SALES",
            status="ACTIVE",
            daily_budget="50000",
            created_time="2025-10-01T10:00:00+0900",
        ),
        Campaign(
            id="120330000987654321",
            name="Brand Awareness Campaign",
            objective="OUTCOME_AWARENESS",
            status="ACTIVE",
            lifetime_budget="1000000",
            created_time="2025-10-15T14:30:00+0900",
        ),
        Campaign(
            id="120330000555666777",
            name="New Product Launch Campaign",
            objective="OUTCOME_TRAFFIC",
            status="PAUSED",
            daily_budget="30000",
            created_time="2025-10-20T09:15:00+0900",
        ),
    ]


def _base_id(parent_id: str, default: int) -> int:
    """取父级 ID 后9位生成子级 ID 前缀"""
    tail = (parent_id or "")[-9:]
    return int(tail) if tail.isdigit() else default


def sample_ad_sets(campaign_id: str) -> List[AdSet]:
    """每个广告系列生成三个广告组，ID 由广告系列 ID 派生"""
    base = _base_id(campaign_id, 2000)
    specs = [
        ("Audience A - Interests", "ACTIVE", "20000", "LINK_CLICKS", "LINK_CLICKS", 25, 45, "2025-10-15T09:00:00+0900"),
        ("Audience B - Behaviors", "ACTIVE", "15000", "OFFSITE_CONVERSIONS", "IMPRESSIONS", 30, 50, "2025-10-20T14:30:00+0900"),
        ("Retargeting Audience", "PAUSED", "10000", "OFFSITE_CONVERSIONS", "IMPRESSIONS", 18, 65, "2025-10-25T11:15:00+0900"),
    ]
    return [
        AdSet(
            id=f"12033000{base}{index}",
            name=name,
            campaign_id=campaign_id,
            status=status,
            daily_budget=budget,
            optimization_goal=goal,
            billing_event=billing,
            targeting={
                "age_min": age_min,
                "age_max": age_max,
                "genders": [1, 2],
                "geo_locations": {"countries": ["KR"]},
            },
            created_time=created,
        )
        for index, (name, status, budget, goal, billing, age_min, age_max, created) in enumerate(specs, start=1)
    ]


def sample_ads(ad_set_id: str) -> List[Ad]:
    """每个广告组生成三条广告，ID 由广告组 ID 派生"""
    base = _base_id(ad_set_id, 1000)
    return [
        Ad(
            id=f"12033000{base}01",
            name="Creative A - Image",
            adset_id=ad_set_id,
            status="ACTIVE",
            creative={
                "title": "Special discount!",
                "body": "Sign up now and get 30% off.",
                "image_url": "https://example.com/image1.jpg",
                "call_to_action_type": "LEARN_MORE",
            },
            created_time="2025-10-15T10:00:00+0900",
        ),
        Ad(
            id=f"12033000{base}02",
            name="Creative B - Video",
            adset_id=ad_set_id,
            status="ACTIVE",
            creative={
                "title": "Meet the new product",
                "body": "Change your everyday with new features.",
                "video_url": "https://example.com/video1.mp4",
                "call_to_action_type": "SHOP_NOW",
            },
            created_time="2025-10-18T16:20:00+0900",
        ),
        Ad(
            id=f"12033000{base}03",
            name="Creative C - Carousel",
            adset_id=ad_set_id,
            status="PAUSED",
            creative={
                "title": "Browse the collection",
                "body": "See several products at once.",
                "call_to_action_type": "VIEW_PRODUCT",
            },
            created_time="2025-10-22T13:45:00+0900",
        ),
    ]
