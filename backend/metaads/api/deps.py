"""
网关公共依赖

- Authorization: Bearer <token> → GraphCredentials
- 每个请求创建一个 FacebookAdsClient，请求结束时关闭
- 速率限制器（slowapi，按客户端 IP）
"""
import logging
from typing import Any, AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from metaads.config import settings
from metaads.exceptions import AuthError, ProviderError
from metaads.services.facebook_client import FacebookAdsClient, GraphCredentials
from metaads.services.rate_limiter import get_rate_limiter

logger = logging.getLogger(__name__)

# 使用客户端 IP 作为限制键
limiter = Limiter(key_func=get_remote_address, default_limits=[settings.GATEWAY_RATE_LIMIT])


def api_error(status_code: int, error: str, details: Optional[Any] = None) -> HTTPException:
    """构造 {error, details?} 格式的错误响应"""
    body = {"error": error}
    if details is not None:
        body["details"] = details
    return HTTPException(status_code=status_code, detail=body)


def provider_http_error(exc: ProviderError, error: str) -> HTTPException:
    """上游错误 → HTTP 错误：令牌问题 401，其余 500"""
    if isinstance(exc, AuthError):
        return api_error(status.HTTP_401_UNAUTHORIZED, "Invalid or expired access token", exc.message)
    return api_error(status.HTTP_500_INTERNAL_SERVER_ERROR, error, exc.message)


def get_credentials(authorization: Optional[str] = Header(None)) -> GraphCredentials:
    """从 Authorization 头提取访问令牌"""
    token = ""
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer":
            token = value.strip()
    if not token:
        raise api_error(status.HTTP_401_UNAUTHORIZED, "Access token is required")
    return GraphCredentials(access_token=token)


async def get_ads_client(
    credentials: GraphCredentials = Depends(get_credentials),
) -> AsyncIterator[FacebookAdsClient]:
    """每个请求一个客户端，共享进程级 Graph API 速率限制器"""
    client = FacebookAdsClient(credentials, rate_limiter=get_rate_limiter())
    try:
        yield client
    finally:
        await client.aclose()
