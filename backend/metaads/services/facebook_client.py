"""
Facebook Marketing API（Graph API）客户端

- 访问令牌由调用方通过 GraphCredentials 显式传入，每次请求以 access_token 查询参数注入
- 上游错误统一转换为 ProviderError 的子类
- 限流/临时错误按指数退避重试，权限/令牌错误不重试
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from metaads.config import settings
from metaads.exceptions import (
    AuthError,
    ProviderError,
    RateLimitedError,
    TransientError,
    classify_graph_error,
)
from metaads.logging_config import AlertLevel, log_alert
from metaads.schemas.ads import (
    Ad,
    AdAccount,
    AdSet,
    Campaign,
    DateRange,
    Insights,
    InsightsPage,
    Paging,
    UserProfile,
)
from metaads.services.rate_limiter import GraphRateLimiter
from metaads.utils.date_range import trailing_days

logger = logging.getLogger(__name__)

INSIGHT_LEVELS = ("account", "campaign", "adset", "ad")

DEFAULT_INSIGHT_FIELDS = [
    "impressions",
    "reach",
    "frequency",
    "spend",
    "clicks",
    "cpm",
    "cpc",
    "ctr",
    "conversions",
    "cost_per_conversion",
]

AD_ACCOUNT_FIELDS = "id,name,account_id,currency,timezone_name,account_status"
CAMPAIGN_FIELDS = "id,name,objective,status,daily_budget,lifetime_budget,created_time,updated_time"
AD_SET_FIELDS = "id,name,campaign_id,status,daily_budget,optimization_goal,billing_event,targeting,created_time"
AD_FIELDS = "id,name,adset_id,status,creative{id,title,body,image_url,video_url,call_to_action_type},created_time"


@dataclass(frozen=True)
class GraphCredentials:
    """
    一次会话的访问凭证

    由网关从 Authorization 头构造，显式传给客户端，不做全局存储。
    """
    access_token: str
    expires_at: Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) >= self.expires_at

    @classmethod
    def from_token_response(cls, access_token: str, expires_in: Optional[int] = None) -> "GraphCredentials":
        expires_at = None
        if expires_in:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        return cls(access_token=access_token, expires_at=expires_at)

    def __repr__(self) -> str:
        # 不在日志中输出完整令牌
        return f"GraphCredentials(access_token='{self.access_token[:6]}...', expires_at={self.expires_at!r})"


def normalize_account_id(account_id: str) -> str:
    """广告账户路径统一为 act_<id>"""
    account_id = (account_id or "").strip()
    if account_id.startswith("act_"):
        return account_id
    return f"act_{account_id}"


class FacebookAdsClient:
    """Graph API 只读客户端"""

    def __init__(
        self,
        credentials: GraphCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        page_limit: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        rate_limiter: Optional[GraphRateLimiter] = None,
    ):
        """
        初始化客户端

        Args:
            credentials: 访问凭证
            http_client: 外部传入的 httpx.AsyncClient（测试时可注入 MockTransport）
            base_url: Graph API 地址（含版本号）
            timeout: 请求超时（秒）
            page_limit: 列表接口的 limit 参数
            max_retries: 限流/临时错误的最大重试次数
            retry_base_delay: 退避基础时长（秒），第 n 次重试等待 base * 2^(n-1)
            rate_limiter: 进程级速率限制器，为 None 时不限速
        """
        if not credentials or not credentials.access_token:
            raise AuthError("Access token is required", status_code=401)
        self.credentials = credentials
        self.base_url = (base_url or settings.graph_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.GRAPH_HTTP_TIMEOUT
        self.page_limit = page_limit or settings.GRAPH_PAGE_LIMIT
        self.max_retries = max_retries if max_retries is not None else settings.GRAPH_MAX_RETRIES
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.GRAPH_RETRY_BASE_DELAY
        )
        self.rate_limiter = rate_limiter
        self._http_client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "FacebookAdsClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _send(self, url: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """发送一次请求并把错误转换为 ProviderError"""
        query = dict(params or {})
        query["access_token"] = self.credentials.access_token

        try:
            response = await self._client().get(url, params=query)
        except httpx.TimeoutException as e:
            raise TransientError(f"Facebook API request timed out: {e}")
        except httpx.RequestError as e:
            raise TransientError(f"Facebook API request failed: {e}")

        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError):
            payload = None

        if response.is_error or (isinstance(payload, dict) and "error" in payload):
            raise classify_graph_error(response.status_code, payload)

        if not isinstance(payload, dict):
            raise TransientError(
                f"Unexpected Facebook API response (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        return payload

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        GET 请求，带速率限制和退避重试

        只有 RateLimitedError / TransientError 会重试。
        """
        url = self._url(path)
        attempt = 0
        while True:
            if self.rate_limiter is not None and not await self.rate_limiter.acquire():
                log_alert(
                    logger,
                    AlertLevel.P2_WARNING,
                    "Graph API 配额耗尽",
                    "本小时进程级请求配额已用完，请求被拒绝",
                    context={"path": path},
                    suggested_actions=["降低聚合并发数", "调大 GRAPH_MAX_REQUESTS_PER_HOUR"],
                )
                raise RateLimitedError("Graph API hourly request budget exhausted")

            try:
                return await self._send(url, params)
            except (RateLimitedError, TransientError) as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.warning(f"[Graph] {path} 重试 {self.max_retries} 次后仍失败: {e.message}")
                    raise
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.info(
                    f"[Graph] {path} {e.kind} 错误，{delay:.1f}s 后第 {attempt} 次重试: {e.message}"
                )
                await asyncio.sleep(delay)
            except ProviderError as e:
                logger.debug(f"[Graph] {path} 请求失败 ({e.kind}, code={e.code}): {e.message}")
                raise

    async def _list(self, path: str, fields: str) -> List[Dict[str, Any]]:
        """列表接口，沿 paging.next 读完全部分页"""
        return await self.get_all_pages(path, {"fields": fields, "limit": self.page_limit})

    async def get_all_pages(self, path: str, params: Optional[Dict[str, Any]] = None, max_pages: int = 50) -> List[Dict[str, Any]]:
        """沿 paging.next 拉取全部分页数据"""
        rows: List[Dict[str, Any]] = []
        payload = await self._request(path, params)
        rows.extend(payload.get("data") or [])
        pages = 1
        next_url = (payload.get("paging") or {}).get("next")
        while next_url and pages < max_pages:
            # next 链接已包含全部查询参数
            payload = await self._request(next_url)
            rows.extend(payload.get("data") or [])
            pages += 1
            next_url = (payload.get("paging") or {}).get("next")
        return rows

    async def list_ad_accounts(self) -> List[AdAccount]:
        """获取当前用户的广告账户"""
        rows = await self._list("me/adaccounts", AD_ACCOUNT_FIELDS)
        return [AdAccount.model_validate(row) for row in rows]

    async def list_campaigns(self, account_id: str) -> List[Campaign]:
        """获取广告账户下的广告系列"""
        rows = await self._list(f"{normalize_account_id(account_id)}/campaigns", CAMPAIGN_FIELDS)
        return [Campaign.model_validate(row) for row in rows]

    async def list_ad_sets(self, campaign_id: str) -> List[AdSet]:
        """获取广告系列下的广告组"""
        rows = await self._list(f"{campaign_id}/adsets", AD_SET_FIELDS)
        return [AdSet.model_validate(row) for row in rows]

    async def list_ads(self, ad_set_id: str) -> List[Ad]:
        """获取广告组下的广告"""
        rows = await self._list(f"{ad_set_id}/ads", AD_FIELDS)
        return [Ad.model_validate(row) for row in rows]

    async def get_insights(
        self,
        target_id: str,
        level: str = "campaign",
        date_range: Optional[DateRange] = None,
        fields: Optional[Sequence[str]] = None,
        breakdowns: Optional[Sequence[str]] = None,
        time_increment: Optional[Any] = None,
    ) -> InsightsPage:
        """
        获取洞察指标

        Args:
            target_id: 账户 ID（level=account 时自动补 act_ 前缀）或广告系列/广告组/广告 ID
            level: account / campaign / adset / ad
            date_range: 起止日期，默认最近7天
            fields: 指标字段
            breakdowns: 细分维度
            time_increment: 1 表示按天拆分

        Returns:
            InsightsPage（含上游分页游标）
        """
        if level not in INSIGHT_LEVELS:
            raise ValueError(f"level 必须是 {', '.join(INSIGHT_LEVELS)} 之一: {level!r}")

        date_range = date_range or trailing_days(7)
        path = normalize_account_id(target_id) if level == "account" else target_id

        params: Dict[str, Any] = {
            "level": level,
            "fields": ",".join(fields or DEFAULT_INSIGHT_FIELDS),
            "time_range": json.dumps(date_range.to_graph()),
            "limit": self.page_limit,
        }
        if time_increment is not None:
            params["time_increment"] = time_increment
        if breakdowns:
            params["breakdowns"] = ",".join(breakdowns)

        payload = await self._request(f"{path}/insights", params)
        paging = payload.get("paging")
        return InsightsPage(
            data=[Insights.from_graph(row) for row in payload.get("data") or []],
            paging=Paging.model_validate(paging) if isinstance(paging, dict) else None,
        )

    async def get_user_profile(self, fields: str = "id,name,email,picture") -> UserProfile:
        payload = await self._request("me", {"fields": fields})
        return UserProfile.model_validate(payload)

    async def validate_token(self) -> bool:
        """令牌有效性检查：最小身份调用成功即为有效"""
        try:
            await self._request("me", {"fields": "id,name"})
            return True
        except ProviderError as e:
            logger.info(f"[Graph] 令牌校验失败 ({e.kind}): {e.message}")
            return False
