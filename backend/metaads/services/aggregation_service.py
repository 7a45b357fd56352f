"""
账户数据聚合拉取

给定 (账户, 日期范围)，依次拉取：
账户 → 广告系列 → 广告组(+洞察) → 广告(+洞察)，以及账户逐日数据和汇总。

失败语义：
- 广告系列列表失败：整次拉取失败，异常抛给调用方
- AuthError（令牌失效）：任何层级都直接中止
- 更深层的失败只影响对应实体：列表失败记为空列表，洞察失败按错误类型
  替换为示例数据（权限不足）或记为错误（限流/临时错误）
"""
import asyncio
import hashlib
import itertools
import logging
from collections import OrderedDict
from datetime import date
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from metaads.config import settings
from metaads.exceptions import AuthError, PermissionDeniedError, ProviderError
from metaads.logging_config import AlertLevel, log_alert
from metaads.schemas.ads import (
    AccountAggregate,
    AccountSummary,
    Ad,
    AdSet,
    AggregationError,
    Campaign,
    DailyInsight,
    DateRange,
    FetchResult,
    Insights,
)
from metaads.services.facebook_client import FacebookAdsClient
from metaads.services.sample_data import (
    SAMPLE_NOTES,
    generate_insights,
    sample_daily_insights,
    sample_summary,
)
from metaads.utils.date_range import date_range_label, resolve_date_range

logger = logging.getLogger(__name__)


async def _gather_or_cancel(*aws: Awaitable[Any]) -> List[Any]:
    """
    并发执行并按顺序返回结果

    任一任务失败时取消其余任务并等待它们结束，再抛出异常，
    中止的拉取不会在后台继续请求上游。
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class StaleAggregationError(Exception):
    """同一会话已经开始了更新的聚合拉取，本次结果作废"""

    def __init__(self, pass_id: int, latest_pass_id: Optional[int]):
        super().__init__(f"聚合拉取 #{pass_id} 已被 #{latest_pass_id} 取代")
        self.pass_id = pass_id
        self.latest_pass_id = latest_pass_id


class AggregationTracker:
    """
    为每个会话的聚合拉取分配递增序号

    只有最新一次拉取的结果会被采用，晚到的旧结果直接丢弃。
    """

    def __init__(self, max_sessions: int = 1000):
        self._counter = itertools.count(1)
        self._latest: "OrderedDict[str, int]" = OrderedDict()
        self.max_sessions = max_sessions

    @staticmethod
    def session_key(access_token: str) -> str:
        """由访问令牌派生会话键，不保存令牌本身"""
        return hashlib.sha256(access_token.encode("utf-8")).hexdigest()[:32]

    def begin(self, session_key: str) -> int:
        pass_id = next(self._counter)
        self._latest[session_key] = pass_id
        self._latest.move_to_end(session_key)
        while len(self._latest) > self.max_sessions:
            self._latest.popitem(last=False)
        return pass_id

    def latest(self, session_key: str) -> Optional[int]:
        return self._latest.get(session_key)

    def is_current(self, session_key: str, pass_id: int) -> bool:
        return self._latest.get(session_key) == pass_id


aggregation_tracker = AggregationTracker()


class _AggregationPass:
    """一次聚合拉取的上下文"""

    def __init__(self, account_id: str, date_range_param: str, resolved: DateRange, concurrency: int):
        self.account_id = account_id
        self.date_range_param = date_range_param
        self.resolved = resolved
        self.errors: List[AggregationError] = []
        self.used_sample = False
        # 每次拉取使用独立的信号量，绑定到当前事件循环
        self.semaphore = asyncio.Semaphore(concurrency)

    def record_error(self, level: str, entity_id: str, operation: str, error: Exception) -> None:
        if isinstance(error, ProviderError):
            kind, message, code = error.kind, error.message, error.code
        else:
            kind, message, code = "invalid_response", str(error), None
        self.errors.append(AggregationError(
            level=level,
            entity_id=entity_id,
            operation=operation,
            kind=kind,
            message=message,
            code=code,
        ))


class AccountAggregator:
    """账户数据聚合服务"""

    def __init__(
        self,
        client: FacebookAdsClient,
        concurrency: Optional[int] = None,
        fallback_on_transient: Optional[bool] = None,
    ):
        """
        Args:
            client: Graph API 客户端
            concurrency: 同时进行的上游请求数上限，1 表示完全串行
            fallback_on_transient: 限流/临时错误是否也用示例数据替代
        """
        self.client = client
        self.concurrency = max(1, concurrency or settings.AGGREGATION_CONCURRENCY)
        self.fallback_on_transient = (
            settings.SAMPLE_FALLBACK_ON_TRANSIENT if fallback_on_transient is None else fallback_on_transient
        )

    async def _call(self, ctx: "_AggregationPass", fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """单个上游请求受并发上限约束（只包裹叶子调用，避免嵌套等待死锁）"""
        async with ctx.semaphore:
            return await fn(*args, **kwargs)

    def _should_fallback(self, error: Exception) -> bool:
        if isinstance(error, PermissionDeniedError):
            return True
        return self.fallback_on_transient and isinstance(error, ProviderError)

    async def aggregate(
        self,
        account_id: str,
        date_range: Optional[str] = None,
        today: Optional[date] = None,
    ) -> AccountAggregate:
        """
        执行一次完整的聚合拉取

        Args:
            account_id: 广告账户 ID（带或不带 act_ 前缀）
            date_range: 预设名称或 YYYY-MM-DD,YYYY-MM-DD
            today: 基准日期（测试用）

        Returns:
            AccountAggregate

        Raises:
            DateRangeError: date_range 非法
            ProviderError: 广告系列列表获取失败，或任一层级出现 AuthError
        """
        resolved = resolve_date_range(date_range, today=today)
        ctx = _AggregationPass(account_id, date_range or resolved.as_param(), resolved, self.concurrency)

        logger.info(
            f"[Aggregation] 开始拉取账户 {account_id}，范围 {resolved.since} ~ {resolved.until}，"
            f"并发 {self.concurrency}"
        )

        try:
            campaigns: List[Campaign] = await self._call(ctx, self.client.list_campaigns, account_id)
        except ProviderError as e:
            if isinstance(e, AuthError):
                log_alert(
                    logger,
                    AlertLevel.P1_URGENT,
                    "聚合拉取中止",
                    f"广告系列列表获取失败：{e.message}",
                    context={"account_id": account_id, "error_code": e.code},
                    suggested_actions=["让用户重新登录 Facebook"],
                )
            else:
                logger.error(f"[Aggregation] 账户 {account_id} 广告系列列表获取失败 ({e.kind}): {e.message}")
            raise

        campaign_results, daily_insights, summary = await _gather_or_cancel(
            _gather_or_cancel(*[self._collect_campaign(ctx, campaign) for campaign in campaigns]),
            self._fetch_daily(ctx),
            self._fetch_summary(ctx),
        )

        aggregate = AccountAggregate(
            account_id=account_id,
            date_range=resolved,
            date_range_param=ctx.date_range_param,
            campaigns=campaigns,
            daily_insights=daily_insights,
            summary=summary,
        )
        for ad_set_results in campaign_results:
            for ad_set, ad_set_insights, ad_results in ad_set_results:
                aggregate.ad_sets.append(ad_set)
                if ad_set_insights.has_value:
                    aggregate.adset_insights[ad_set.id] = ad_set_insights.insights
                for ad, ad_insights in ad_results:
                    aggregate.ads.append(ad)
                    if ad_insights.has_value:
                        aggregate.ad_insights[ad.id] = ad_insights.insights

        aggregate.errors = ctx.errors
        aggregate.is_sample = ctx.used_sample
        if ctx.used_sample:
            aggregate.note = SAMPLE_NOTES["insights"]

        logger.info(
            f"[Aggregation] 账户 {account_id} 完成：{len(aggregate.campaigns)} 个广告系列，"
            f"{len(aggregate.ad_sets)} 个广告组，{len(aggregate.ads)} 条广告，"
            f"{len(ctx.errors)} 个失败"
        )
        return aggregate

    async def aggregate_latest(
        self,
        tracker: AggregationTracker,
        session_key: str,
        account_id: str,
        date_range: Optional[str] = None,
        today: Optional[date] = None,
    ) -> AccountAggregate:
        """
        带序号的聚合拉取

        完成时如果同一会话已开始更新的拉取，抛出 StaleAggregationError。
        """
        pass_id = tracker.begin(session_key)
        aggregate = await self.aggregate(account_id, date_range, today=today)
        aggregate.pass_id = pass_id
        if not tracker.is_current(session_key, pass_id):
            latest = tracker.latest(session_key)
            logger.info(f"[Aggregation] 丢弃过期结果 #{pass_id}（最新 #{latest}）")
            raise StaleAggregationError(pass_id, latest)
        return aggregate

    async def _collect_campaign(
        self, ctx: _AggregationPass, campaign: Campaign
    ) -> List[Tuple[AdSet, FetchResult, List[Tuple[Ad, FetchResult]]]]:
        try:
            ad_sets: List[AdSet] = await self._call(ctx, self.client.list_ad_sets, campaign.id)
        except AuthError:
            raise
        except (ProviderError, ValueError) as e:
            logger.warning(f"[Aggregation] 广告系列 {campaign.id} 的广告组获取失败，按0个处理: {e}")
            ctx.record_error("campaign", campaign.id, "list_ad_sets", e)
            return []

        return await _gather_or_cancel(*[self._collect_ad_set(ctx, ad_set) for ad_set in ad_sets])

    async def _collect_ad_set(
        self, ctx: _AggregationPass, ad_set: AdSet
    ) -> Tuple[AdSet, FetchResult, List[Tuple[Ad, FetchResult]]]:
        insights = await self._fetch_insights(ctx, ad_set.id, "adset")

        try:
            ads: List[Ad] = await self._call(ctx, self.client.list_ads, ad_set.id)
        except AuthError:
            raise
        except (ProviderError, ValueError) as e:
            logger.warning(f"[Aggregation] 广告组 {ad_set.id} 的广告获取失败，按0条处理: {e}")
            ctx.record_error("adset", ad_set.id, "list_ads", e)
            ads = []

        ad_insights = await _gather_or_cancel(*[self._fetch_insights(ctx, ad.id, "ad") for ad in ads])
        return ad_set, insights, list(zip(ads, ad_insights))

    async def _fetch_insights(self, ctx: _AggregationPass, entity_id: str, level: str) -> FetchResult:
        """拉取单个实体的洞察，失败时返回带标记的结果而不是抛出"""
        try:
            page = await self._call(ctx, self.client.get_insights, entity_id, level, ctx.resolved)
            return FetchResult(
                entity_id=entity_id,
                level=level,
                status="ok",
                insights=Insights.combine(page.data),
            )
        except AuthError:
            raise
        except (ProviderError, ValueError) as e:
            ctx.record_error(level, entity_id, "get_insights", e)
            if self._should_fallback(e):
                logger.warning(
                    f"[Aggregation] {level} {entity_id} 洞察回退为示例数据: {e}",
                    extra={"entity_id": entity_id, "level": level},
                )
                ctx.used_sample = True
                return FetchResult(
                    entity_id=entity_id,
                    level=level,
                    status="sample",
                    insights=generate_insights(entity_id, ctx.date_range_param, kind=level),
                    error=e.to_dict() if isinstance(e, ProviderError) else {"message": str(e)},
                )
            logger.warning(f"[Aggregation] {level} {entity_id} 洞察获取失败，未替代: {e}")
            return FetchResult(
                entity_id=entity_id,
                level=level,
                status="error",
                error=e.to_dict() if isinstance(e, ProviderError) else {"message": str(e)},
            )

    async def _fetch_daily(self, ctx: _AggregationPass) -> List[DailyInsight]:
        try:
            page = await self._call(
                ctx, self.client.get_insights, ctx.account_id, "account", ctx.resolved, time_increment=1
            )
        except AuthError:
            raise
        except (ProviderError, ValueError) as e:
            ctx.record_error("account", ctx.account_id, "get_daily_insights", e)
            if self._should_fallback(e):
                logger.warning(f"[Aggregation] 账户 {ctx.account_id} 逐日数据回退为示例数据: {e}")
                ctx.used_sample = True
                return sample_daily_insights(ctx.account_id, ctx.resolved)
            return []

        return [
            DailyInsight(**row.model_dump())
            for row in page.data
            if row.date_start and row.date_stop
        ]

    async def _fetch_summary(self, ctx: _AggregationPass) -> Optional[AccountSummary]:
        period = date_range_label(ctx.date_range_param)
        try:
            page = await self._call(ctx, self.client.get_insights, ctx.account_id, "account", ctx.resolved)
        except AuthError:
            raise
        except (ProviderError, ValueError) as e:
            ctx.record_error("account", ctx.account_id, "get_summary", e)
            if self._should_fallback(e):
                logger.warning(f"[Aggregation] 账户 {ctx.account_id} 汇总回退为示例数据: {e}")
                ctx.used_sample = True
                summary = sample_summary(ctx.date_range_param)
                summary.date_range = ctx.resolved
                return summary
            return None

        return AccountSummary.from_insights(Insights.combine(page.data), period=period, date_range=ctx.resolved)
