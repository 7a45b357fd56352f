"""
广告数据API
账户 / 广告系列 / 广告组 / 广告 及其洞察指标

权限不足（缺少 ads_read）时返回示例数据并附带 note；
令牌无效返回 401；其他上游错误返回 500（SAMPLE_FALLBACK_ON_TRANSIENT 开启时同样回退示例数据）。
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from metaads.api.deps import (
    api_error,
    get_ads_client,
    get_credentials,
    provider_http_error,
)
from metaads.config import settings
from metaads.exceptions import AuthError, PermissionDeniedError, ProviderError
from metaads.schemas.ads import AccountSummary, DailyInsight, Insights
from metaads.services.aggregation_service import (
    AccountAggregator,
    StaleAggregationError,
    aggregation_tracker,
)
from metaads.services.facebook_client import (
    INSIGHT_LEVELS,
    FacebookAdsClient,
    GraphCredentials,
    normalize_account_id,
)
from metaads.services.sample_data import (
    SAMPLE_NOTES,
    generate_insights,
    sample_ad_accounts,
    sample_ad_sets,
    sample_ads,
    sample_campaigns,
    sample_daily_insights,
    sample_summary,
)
from metaads.utils.date_range import DEFAULT_PRESET, date_range_label, resolve_date_range

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ads", tags=["ads"])


def _can_fallback(exc: ProviderError) -> bool:
    """权限不足总是回退；其他非令牌错误仅在配置开启时回退"""
    if isinstance(exc, AuthError):
        return False
    if isinstance(exc, PermissionDeniedError):
        return True
    return settings.SAMPLE_FALLBACK_ON_TRANSIENT


def _sample_response(data: Any, note_key: str, **extra: Any) -> Dict[str, Any]:
    return {"success": True, "data": data, **extra, "note": SAMPLE_NOTES[note_key]}


def _split(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


@router.get("/accounts")
async def list_accounts(client: FacebookAdsClient = Depends(get_ads_client)):
    """获取当前用户的广告账户"""
    if not await client.validate_token():
        raise api_error(status.HTTP_401_UNAUTHORIZED, "Invalid or expired access token")

    try:
        accounts = await client.list_ad_accounts()
    except ProviderError as e:
        if not _can_fallback(e):
            raise provider_http_error(e, "Failed to fetch ad accounts")
        logger.warning(f"广告账户获取失败，返回示例数据 ({e.kind}): {e.message}")
        accounts = sample_ad_accounts()
        return _sample_response(accounts, "accounts", count=len(accounts))

    return {"success": True, "data": accounts, "count": len(accounts)}


@router.get("/accounts/{account_id}/campaigns")
async def list_campaigns(
    account_id: str,
    date_range: str = Query(DEFAULT_PRESET, description="预设名称或 YYYY-MM-DD,YYYY-MM-DD"),
    client: FacebookAdsClient = Depends(get_ads_client),
):
    """获取广告账户下的广告系列"""
    resolve_date_range(date_range)  # 仅校验参数
    try:
        campaigns = await client.list_campaigns(account_id)
    except ProviderError as e:
        if not _can_fallback(e):
            raise provider_http_error(e, "Failed to fetch campaigns")
        logger.warning(f"账户 {account_id} 广告系列获取失败，返回示例数据 ({e.kind}): {e.message}")
        campaigns = sample_campaigns()
        return _sample_response(campaigns, "campaigns", count=len(campaigns), accountId=account_id)

    return {"success": True, "data": campaigns, "count": len(campaigns), "accountId": account_id}


@router.get("/accounts/{account_id}/insights")
async def get_account_insights(
    account_id: str,
    level: str = Query("campaign", description="account / campaign / adset / ad"),
    date_range: str = Query(DEFAULT_PRESET),
    fields: Optional[str] = Query(None, description="逗号分隔的指标字段"),
    breakdowns: Optional[str] = Query(None, description="逗号分隔的细分维度"),
    client: FacebookAdsClient = Depends(get_ads_client),
):
    """
    获取账户洞察（按 level 拆分）

    上游分页游标原样返回。
    """
    if level not in INSIGHT_LEVELS:
        raise api_error(
            status.HTTP_400_BAD_REQUEST,
            "Invalid level",
            f"level must be one of: {', '.join(INSIGHT_LEVELS)}",
        )
    resolved = resolve_date_range(date_range)

    try:
        page = await client.get_insights(
            normalize_account_id(account_id),
            level=level,
            date_range=resolved,
            fields=_split(fields),
            breakdowns=_split(breakdowns),
        )
    except ProviderError as e:
        raise provider_http_error(e, "Failed to fetch insights")

    return {
        "success": True,
        "data": page.data,
        "accountId": account_id,
        "dateRange": resolved,
        "paging": page.paging,
    }


@router.get("/accounts/{account_id}/summary")
async def get_account_summary(
    account_id: str,
    date_range: str = Query(DEFAULT_PRESET),
    client: FacebookAdsClient = Depends(get_ads_client),
):
    """账户汇总指标（仪表盘卡片）"""
    resolved = resolve_date_range(date_range)
    try:
        page = await client.get_insights(account_id, level="account", date_range=resolved)
    except ProviderError as e:
        if not _can_fallback(e):
            raise provider_http_error(e, "Failed to fetch account summary")
        logger.warning(f"账户 {account_id} 汇总获取失败，返回示例数据 ({e.kind}): {e.message}")
        summary = sample_summary(date_range)
        summary.date_range = resolved
        return _sample_response(summary.model_dump(by_alias=True, mode="json"), "summary")

    summary = AccountSummary.from_insights(
        Insights.combine(page.data),
        period=date_range_label(date_range),
        date_range=resolved,
    )
    return {"success": True, "data": summary.model_dump(by_alias=True, mode="json")}


@router.get("/accounts/{account_id}/insights/daily")
async def get_daily_insights(
    account_id: str,
    date_range: str = Query(DEFAULT_PRESET),
    client: FacebookAdsClient = Depends(get_ads_client),
):
    """账户逐日数据（趋势图）"""
    resolved = resolve_date_range(date_range)
    try:
        page = await client.get_insights(
            account_id, level="account", date_range=resolved, time_increment=1
        )
    except ProviderError as e:
        if not _can_fallback(e):
            raise provider_http_error(e, "Failed to fetch daily insights")
        logger.warning(f"账户 {account_id} 逐日数据获取失败，返回示例数据 ({e.kind}): {e.message}")
        return _sample_response(sample_daily_insights(account_id, resolved), "daily")

    rows = [DailyInsight(**row.model_dump()) for row in page.data if row.date_start and row.date_stop]
    return {"success": True, "data": rows}


@router.get("/accounts/{account_id}/aggregate")
async def aggregate_account(
    account_id: str,
    date_range: str = Query(DEFAULT_PRESET),
    credentials: GraphCredentials = Depends(get_credentials),
    client: FacebookAdsClient = Depends(get_ads_client),
):
    """
    一次拉取账户的完整层级数据

    广告系列 → 广告组(+洞察) → 广告(+洞察)，以及逐日数据和汇总。
    同一令牌发起了更新的拉取时，本次结果作废并返回 409。
    """
    aggregator = AccountAggregator(client)
    try:
        aggregate = await aggregator.aggregate_latest(
            aggregation_tracker,
            aggregation_tracker.session_key(credentials.access_token),
            account_id,
            date_range,
        )
    except StaleAggregationError as e:
        raise api_error(
            status.HTTP_409_CONFLICT,
            "Aggregation superseded by a newer request",
            {"passId": e.pass_id, "latestPassId": e.latest_pass_id},
        )
    except ProviderError as e:
        raise provider_http_error(e, "Failed to aggregate account data")

    response: Dict[str, Any] = {"success": True, "data": aggregate.model_dump(mode="json", by_alias=True)}
    if aggregate.note:
        response["note"] = aggregate.note
    return response


@router.get("/campaigns/{campaign_id}/adsets")
async def list_ad_sets(campaign_id: str, client: FacebookAdsClient = Depends(get_ads_client)):
    """获取广告系列下的广告组"""
    try:
        ad_sets = await client.list_ad_sets(campaign_id)
    except ProviderError as e:
        if not _can_fallback(e):
            raise provider_http_error(e, "Failed to fetch ad sets")
        logger.warning(f"广告系列 {campaign_id} 广告组获取失败，返回示例数据 ({e.kind}): {e.message}")
        ad_sets = sample_ad_sets(campaign_id)
        return _sample_response(ad_sets, "adsets", count=len(ad_sets), campaignId=campaign_id)

    return {"success": True, "data": ad_sets, "count": len(ad_sets), "campaignId": campaign_id}


@router.get("/campaigns/{campaign_id}/insights")
async def get_campaign_insights(
    campaign_id: str,
    date_range: str = Query(DEFAULT_PRESET),
    client: FacebookAdsClient = Depends(get_ads_client),
):
    """获取单个广告系列的洞察"""
    resolved = resolve_date_range(date_range)
    try:
        page = await client.get_insights(campaign_id, level="campaign", date_range=resolved)
    except ProviderError as e:
        if not _can_fallback(e):
            raise provider_http_error(e, "Failed to fetch campaign insights")
        logger.warning(f"广告系列 {campaign_id} 洞察获取失败，返回示例数据 ({e.kind}): {e.message}")
        sample = generate_insights(campaign_id, date_range, kind="campaign")
        return _sample_response([sample], "insights", campaignId=campaign_id, dateRange=resolved)

    return {"success": True, "data": page.data, "campaignId": campaign_id, "dateRange": resolved}


@router.get("/adsets/{ad_set_id}/ads")
async def list_ads(ad_set_id: str, client: FacebookAdsClient = Depends(get_ads_client)):
    """获取广告组下的广告"""
    try:
        ads = await client.list_ads(ad_set_id)
    except ProviderError as e:
        if not _can_fallback(e):
            raise provider_http_error(e, "Failed to fetch ads")
        logger.warning(f"广告组 {ad_set_id} 广告获取失败，返回示例数据 ({e.kind}): {e.message}")
        ads = sample_ads(ad_set_id)
        return _sample_response(ads, "ads", count=len(ads), adSetId=ad_set_id)

    return {"success": True, "data": ads, "count": len(ads), "adSetId": ad_set_id}


async def _single_entity_insights(
    client: FacebookAdsClient, entity_id: str, level: str, date_range: str, id_key: str
) -> Dict[str, Any]:
    """广告组/广告的洞察：多行合并为一行，权限不足时返回示例数据"""
    resolved = resolve_date_range(date_range)
    try:
        page = await client.get_insights(entity_id, level=level, date_range=resolved)
    except ProviderError as e:
        if not _can_fallback(e):
            raise provider_http_error(e, "Failed to fetch insights")
        logger.warning(f"{level} {entity_id} 洞察获取失败，返回示例数据 ({e.kind}): {e.message}")
        sample = generate_insights(entity_id, date_range, kind=level)
        return _sample_response(sample, "insights", **{id_key: entity_id, "dateRange": date_range})

    return {
        "success": True,
        "data": Insights.combine(page.data),
        id_key: entity_id,
        "dateRange": date_range,
    }


@router.get("/adsets/{ad_set_id}/insights")
async def get_ad_set_insights(
    ad_set_id: str,
    date_range: str = Query(DEFAULT_PRESET),
    client: FacebookAdsClient = Depends(get_ads_client),
):
    """获取广告组洞察"""
    return await _single_entity_insights(client, ad_set_id, "adset", date_range, "adSetId")


@router.get("/ads/{ad_id}/insights")
async def get_ad_insights(
    ad_id: str,
    date_range: str = Query(DEFAULT_PRESET),
    client: FacebookAdsClient = Depends(get_ads_client),
):
    """获取广告洞察"""
    return await _single_entity_insights(client, ad_id, "ad", date_range, "adId")
