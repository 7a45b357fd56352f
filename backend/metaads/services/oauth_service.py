"""
Facebook OAuth 授权码交换

流程：授权码 → access_token → 用户信息 → 广告账户
广告账户因权限不足获取失败时返回示例账户，并标记 is_sample。
"""
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, Field

from metaads.config import settings
from metaads.exceptions import PermissionDeniedError, ProviderError, TransientError, classify_graph_error
from metaads.schemas.ads import AdAccount, TokenResponse, UserProfile
from metaads.services.facebook_client import FacebookAdsClient, GraphCredentials
from metaads.services.rate_limiter import GraphRateLimiter
from metaads.services.sample_data import SAMPLE_NOTES, sample_ad_accounts

logger = logging.getLogger(__name__)


class AuthenticationResult(BaseModel):
    """一次完整登录的结果"""
    user: UserProfile
    ad_accounts: List[AdAccount] = Field(default_factory=list)
    access_token: str
    expires_in: Optional[int] = None
    is_sample: bool = False
    note: Optional[str] = None


class FacebookOAuthService:
    """Facebook 登录（授权码模式）"""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[GraphRateLimiter] = None,
    ):
        self._http_client = http_client
        self.rate_limiter = rate_limiter

    def build_authorization_url(self, state: Optional[str] = None) -> str:
        """
        生成 Facebook 登录对话框地址

        state 未传入时使用当前毫秒时间戳（简单的 CSRF 防护）
        """
        params = {
            "client_id": settings.FACEBOOK_APP_ID,
            "redirect_uri": settings.FACEBOOK_REDIRECT_URI,
            "scope": ",".join(settings.FACEBOOK_OAUTH_SCOPES),
            "response_type": "code",
            "state": state or str(int(time.time() * 1000)),
        }
        dialog_url = f"{settings.FACEBOOK_DIALOG_URL.rstrip('/')}/{settings.GRAPH_API_VERSION}/dialog/oauth"
        return f"{dialog_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenResponse:
        """用授权码换取 access_token"""
        if not settings.FACEBOOK_APP_ID or not settings.FACEBOOK_APP_SECRET:
            logger.warning("FACEBOOK_APP_ID / FACEBOOK_APP_SECRET 未配置，令牌交换将被拒绝")

        params = {
            "client_id": settings.FACEBOOK_APP_ID,
            "client_secret": settings.FACEBOOK_APP_SECRET,
            "redirect_uri": settings.FACEBOOK_REDIRECT_URI,
            "code": code,
        }
        url = f"{settings.graph_base_url}/oauth/access_token"

        client = self._http_client or httpx.AsyncClient(timeout=settings.GRAPH_HTTP_TIMEOUT)
        try:
            response = await client.get(url, params=params)
        except httpx.RequestError as e:
            raise TransientError(f"Facebook token exchange failed: {e}")
        finally:
            if self._http_client is None:
                await client.aclose()

        try:
            payload: Any = response.json()
        except ValueError:
            payload = None

        if response.is_error or not isinstance(payload, dict) or "error" in payload:
            raise classify_graph_error(response.status_code, payload)
        if not payload.get("access_token"):
            raise ProviderError("Facebook did not return an access token", status_code=response.status_code)

        logger.info(f"授权码交换成功，令牌有效期 {payload.get('expires_in')} 秒")
        return TokenResponse.model_validate(payload)

    def _client_for(self, credentials: GraphCredentials) -> FacebookAdsClient:
        return FacebookAdsClient(
            credentials,
            http_client=self._http_client,
            rate_limiter=self.rate_limiter,
        )

    async def fetch_profile(self, access_token: str) -> UserProfile:
        """获取用户基本信息（同时验证令牌）"""
        async with self._client_for(GraphCredentials(access_token)) as client:
            return await client.get_user_profile()

    async def authenticate(self, code: str) -> AuthenticationResult:
        """
        完整登录流程

        Raises:
            ProviderError: 令牌交换或用户信息获取失败
        """
        token = await self.exchange_code(code)
        credentials = GraphCredentials.from_token_response(token.access_token, token.expires_in)

        async with self._client_for(credentials) as client:
            user = await client.get_user_profile()
            logger.info(f"用户 {user.id} 登录成功")

            try:
                ad_accounts = await client.list_ad_accounts()
                return AuthenticationResult(
                    user=user,
                    ad_accounts=ad_accounts,
                    access_token=token.access_token,
                    expires_in=token.expires_in,
                )
            except PermissionDeniedError as e:
                logger.warning(f"无法获取广告账户，使用示例账户: {e.message}")
                return AuthenticationResult(
                    user=user,
                    ad_accounts=sample_ad_accounts(),
                    access_token=token.access_token,
                    expires_in=token.expires_in,
                    is_sample=True,
                    note=SAMPLE_NOTES["accounts"],
                )

    async def test_token(self, access_token: str) -> Dict[str, Any]:
        """
        检查令牌：用户信息必须成功，广告账户访问结果单独报告

        Raises:
            ProviderError: 用户信息获取失败
        """
        async with self._client_for(GraphCredentials(access_token)) as client:
            user = await client.get_user_profile(fields="id,name,email")
            try:
                rows = await client.get_all_pages(
                    "me/adaccounts", {"fields": "id,name,account_id", "limit": 5}, max_pages=1
                )
                ad_accounts_test: Dict[str, Any] = {"success": True, "count": len(rows), "data": rows}
            except ProviderError as e:
                ad_accounts_test = {"success": False, "error": e.message, "kind": e.kind}
        return {"user": user, "adAccountsTest": ad_accounts_test}
