"""
广告数据Schema
账户 → 广告系列 → 广告组 → 广告，以及洞察指标
"""
from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from metaads.utils.metrics import (
    calculate_cpc,
    calculate_cpm,
    calculate_ctr,
    sum_action_values,
    to_number,
)


class GraphObject(BaseModel):
    """Graph API 返回对象的基类，保留未声明的字段"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class DateRange(BaseModel):
    """起止日期（含首尾）"""
    since: date
    until: date

    def to_graph(self) -> Dict[str, str]:
        """Graph API time_range 参数格式"""
        return {"since": self.since.isoformat(), "until": self.until.isoformat()}

    def as_param(self) -> str:
        """网关 date_range 参数格式"""
        return f"{self.since.isoformat()},{self.until.isoformat()}"


class AdAccount(GraphObject):
    """广告账户"""
    id: str
    name: Optional[str] = None
    account_id: Optional[str] = None
    currency: Optional[str] = None
    timezone_name: Optional[str] = None
    account_status: Optional[int] = None


class Campaign(GraphObject):
    """广告系列"""
    id: str
    name: Optional[str] = None
    objective: Optional[str] = None
    status: Optional[str] = None  # ACTIVE / PAUSED
    daily_budget: Optional[str] = None
    lifetime_budget: Optional[str] = None
    created_time: Optional[str] = None
    updated_time: Optional[str] = None


class GeoLocations(GraphObject):
    countries: List[str] = Field(default_factory=list)


class Targeting(GraphObject):
    """广告组定向"""
    age_min: Optional[int] = None
    age_max: Optional[int] = None
    genders: List[int] = Field(default_factory=list)
    geo_locations: Optional[GeoLocations] = None


class AdSet(GraphObject):
    """广告组"""
    id: str
    name: Optional[str] = None
    campaign_id: Optional[str] = None
    status: Optional[str] = None
    daily_budget: Optional[str] = None
    optimization_goal: Optional[str] = None
    billing_event: Optional[str] = None
    targeting: Optional[Targeting] = None
    created_time: Optional[str] = None


class Creative(GraphObject):
    """广告创意"""
    id: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    call_to_action_type: Optional[str] = None


class Ad(GraphObject):
    """广告"""
    id: str
    name: Optional[str] = None
    adset_id: Optional[str] = None
    status: Optional[str] = None
    creative: Optional[Creative] = None
    created_time: Optional[str] = None


class Insights(BaseModel):
    """
    洞察指标

    ctr / cpc / cpm 始终由 clicks、impressions、spend 推导，
    不使用上游返回的值。
    """
    impressions: int = Field(default=0, ge=0)
    reach: int = Field(default=0, ge=0)
    frequency: float = Field(default=0.0, ge=0)
    clicks: int = Field(default=0, ge=0)
    spend: float = Field(default=0.0, ge=0)
    conversions: float = Field(default=0.0, ge=0)
    cost_per_conversion: float = Field(default=0.0, ge=0)
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    date_start: Optional[str] = None
    date_stop: Optional[str] = None
    is_sample: bool = False

    @model_validator(mode="after")
    def _derive_rates(self) -> "Insights":
        self.ctr = calculate_ctr(self.clicks, self.impressions)
        self.cpc = calculate_cpc(self.spend, self.clicks)
        self.cpm = calculate_cpm(self.spend, self.impressions)
        return self

    @classmethod
    def from_graph(cls, row: Dict[str, Any], is_sample: bool = False) -> "Insights":
        """解析 Graph API insights 行（数值均为字符串）"""
        conversions = sum_action_values(row.get("conversions"))
        spend = to_number(row.get("spend"))
        cost_per_conversion = sum_action_values(row.get("cost_per_conversion"))
        if not cost_per_conversion and conversions:
            cost_per_conversion = spend / conversions
        return cls(
            impressions=int(to_number(row.get("impressions"))),
            reach=int(to_number(row.get("reach"))),
            frequency=to_number(row.get("frequency")),
            clicks=int(to_number(row.get("clicks"))),
            spend=spend,
            conversions=conversions,
            cost_per_conversion=cost_per_conversion,
            date_start=row.get("date_start"),
            date_stop=row.get("date_stop"),
            is_sample=is_sample,
        )

    @classmethod
    def combine(cls, rows: List["Insights"]) -> "Insights":
        """合并多行（如 time_increment=1 的逐日数据）为一行汇总"""
        if not rows:
            return cls()
        impressions = sum(r.impressions for r in rows)
        reach = sum(r.reach for r in rows)
        spend = sum(r.spend for r in rows)
        conversions = sum(r.conversions for r in rows)
        return cls(
            impressions=impressions,
            reach=reach,
            frequency=(impressions / reach) if reach else 0.0,
            clicks=sum(r.clicks for r in rows),
            spend=spend,
            conversions=conversions,
            cost_per_conversion=(spend / conversions) if conversions else 0.0,
            date_start=rows[0].date_start,
            date_stop=rows[-1].date_stop,
            is_sample=any(r.is_sample for r in rows),
        )


class DailyInsight(Insights):
    """按天的洞察指标，用于趋势图"""
    date_start: str
    date_stop: str


class Paging(BaseModel):
    cursors: Optional[Dict[str, str]] = None
    next: Optional[str] = None
    previous: Optional[str] = None


class InsightsPage(BaseModel):
    """一次 insights 调用的结果（可能带分页游标）"""
    data: List[Insights] = Field(default_factory=list)
    paging: Optional[Paging] = None


class AccountSummary(BaseModel):
    """账户汇总（仪表盘卡片）"""
    model_config = ConfigDict(populate_by_name=True)

    total_spend: float = Field(default=0.0, alias="totalSpend")
    total_impressions: int = Field(default=0, alias="totalImpressions")
    total_clicks: int = Field(default=0, alias="totalClicks")
    total_reach: int = Field(default=0, alias="totalReach")
    total_conversions: float = Field(default=0.0, alias="totalConversions")
    average_ctr: float = Field(default=0.0, alias="averageCTR")
    average_cpc: float = Field(default=0.0, alias="averageCPC")
    average_cpm: float = Field(default=0.0, alias="averageCPM")
    period: Optional[str] = None
    date_range: Optional[DateRange] = Field(default=None, alias="dateRange")

    @classmethod
    def from_insights(
        cls,
        insights: Insights,
        period: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> "AccountSummary":
        return cls(
            total_spend=insights.spend,
            total_impressions=insights.impressions,
            total_clicks=insights.clicks,
            total_reach=insights.reach,
            total_conversions=insights.conversions,
            average_ctr=insights.ctr,
            average_cpc=insights.cpc,
            average_cpm=insights.cpm,
            period=period,
            date_range=date_range,
        )


FetchStatus = Literal["ok", "sample", "error"]


class FetchResult(BaseModel):
    """
    单个实体的拉取结果

    - ok: 实时数据
    - sample: 权限不足，已用示例数据替代
    - error: 其他失败，未替代
    """
    entity_id: str
    level: str
    status: FetchStatus
    insights: Optional[Insights] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def has_value(self) -> bool:
        return self.insights is not None


class AggregationError(BaseModel):
    """聚合过程中被隔离的失败"""
    level: str
    entity_id: str
    operation: str
    kind: str
    message: str
    code: Optional[int] = None


class AccountAggregate(BaseModel):
    """一次 (账户, 日期范围) 聚合拉取的完整结果"""
    account_id: str
    date_range: DateRange
    date_range_param: str
    campaigns: List[Campaign] = Field(default_factory=list)
    ad_sets: List[AdSet] = Field(default_factory=list)
    ads: List[Ad] = Field(default_factory=list)
    adset_insights: Dict[str, Insights] = Field(default_factory=dict)
    ad_insights: Dict[str, Insights] = Field(default_factory=dict)
    daily_insights: List[DailyInsight] = Field(default_factory=list)
    summary: Optional[AccountSummary] = None
    errors: List[AggregationError] = Field(default_factory=list)
    is_sample: bool = False
    note: Optional[str] = None
    pass_id: Optional[int] = None

    def orphans(self) -> List[str]:
        """返回引用了本次未拉取到的父级实体的广告组/广告 ID"""
        campaign_ids = {c.id for c in self.campaigns}
        ad_set_ids = {s.id for s in self.ad_sets}
        missing = [s.id for s in self.ad_sets if s.campaign_id and s.campaign_id not in campaign_ids]
        missing.extend(a.id for a in self.ads if a.adset_id and a.adset_id not in ad_set_ids)
        return missing


class UserProfile(GraphObject):
    """Facebook 用户基本信息"""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    picture: Optional[Dict[str, Any]] = None


class TokenResponse(BaseModel):
    """OAuth 令牌交换结果"""
    access_token: str
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
