"""
Facebook 登录API
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from pydantic import BaseModel

from metaads.api.deps import api_error, get_credentials, limiter, provider_http_error
from metaads.config import settings
from metaads.exceptions import ProviderError
from metaads.services.facebook_client import GraphCredentials
from metaads.services.oauth_service import FacebookOAuthService
from metaads.services.rate_limiter import get_rate_limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class CallbackRequest(BaseModel):
    code: Optional[str] = None
    state: Optional[str] = None


def get_oauth_service() -> FacebookOAuthService:
    return FacebookOAuthService(rate_limiter=get_rate_limiter())


@router.get("/facebook")
async def facebook_login_url(
    state: Optional[str] = None,
    service: FacebookOAuthService = Depends(get_oauth_service),
):
    """生成 Facebook 登录地址，前端跳转到该地址完成授权"""
    return {
        "authUrl": service.build_authorization_url(state),
        "message": "Redirect user to this URL for Facebook login",
    }


@router.post("/facebook/callback")
@limiter.limit(settings.OAUTH_CALLBACK_RATE_LIMIT)
async def facebook_callback(
    request: Request,  # 速率限制需要 Request 对象
    body: CallbackRequest,
    service: FacebookOAuthService = Depends(get_oauth_service),
):
    """
    OAuth 回调：用授权码换取访问令牌

    返回用户信息、广告账户和访问令牌；广告账户无权限时返回示例账户。
    """
    if not body.code:
        raise api_error(status.HTTP_400_BAD_REQUEST, "Authorization code is required")

    try:
        result = await service.authenticate(body.code)
    except ProviderError as e:
        logger.error(f"Facebook 登录失败 ({e.kind}, code={e.code}): {e.message}")
        raise api_error(status.HTTP_400_BAD_REQUEST, "Failed to authenticate with Facebook", e.message)

    response = {
        "success": True,
        "user": result.user,
        "adAccounts": result.ad_accounts,
        "accessToken": result.access_token,
        "expiresIn": result.expires_in,
        "message": "Successfully authenticated with Facebook",
    }
    if result.is_sample:
        response["isSample"] = True
        response["note"] = result.note
    return response


@router.get("/session")
async def session_info(
    authorization: Optional[str] = Header(None),
    service: FacebookOAuthService = Depends(get_oauth_service),
):
    """会话状态：带有效令牌时返回用户信息"""
    if not authorization:
        return {"authenticated": False, "message": "No access token provided"}

    credentials = get_credentials(authorization)
    try:
        user = await service.fetch_profile(credentials.access_token)
    except ProviderError as e:
        logger.info(f"会话令牌无效 ({e.kind}): {e.message}")
        return {"authenticated": False, "message": "Invalid or expired access token"}
    return {"authenticated": True, "user": user}


@router.post("/logout")
async def logout():
    """服务端不保存令牌，前端丢弃令牌即可"""
    return {"success": True, "message": "Logged out successfully"}


@router.get("/test-token")
async def test_token(
    credentials: GraphCredentials = Depends(get_credentials),
    service: FacebookOAuthService = Depends(get_oauth_service),
):
    """检查令牌：用户信息 + 广告账户访问"""
    try:
        result = await service.test_token(credentials.access_token)
    except ProviderError as e:
        logger.error(f"令牌检查失败 ({e.kind}): {e.message}")
        raise provider_http_error(e, "Token test failed")
    return {"success": True, **result}
