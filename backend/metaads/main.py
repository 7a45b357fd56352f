import logging
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware  # 直接使用 Starlette 的 CORS 中间件

# 速率限制
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from metaads import __version__
from metaads.api import ads, auth
from metaads.api.deps import limiter
from metaads.config import settings
from metaads.exceptions import AuthError, DateRangeError, ProviderError
from metaads.logging_config import configure_logging

logger = logging.getLogger(__name__)

app = FastAPI(title="Meta Ads Platform API", version=__version__)

# 速率限制配置
# 使用客户端 IP 作为限制键，默认限制作用于所有路由
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,  # 允许携带认证信息（Authorization）
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept", "Origin"],
    max_age=3600,
)


def _error_content(detail) -> dict:
    if isinstance(detail, dict):
        return detail
    return {"error": str(detail)}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """HTTP 异常统一为 {error, details?}"""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_content(exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(HTTPException)
async def fastapi_http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_content(exc.detail),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """请求参数错误返回 400"""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request parameters", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(DateRangeError)
async def date_range_exception_handler(request: Request, exc: DateRangeError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid date_range", "details": str(exc)},
    )


@app.exception_handler(ProviderError)
async def provider_exception_handler(request: Request, exc: ProviderError):
    """路由未处理的上游错误：令牌问题 401，其余 500"""
    if isinstance(exc, AuthError):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "Invalid or expired access token", "details": exc.message},
        )
    logger.error(f"未处理的上游错误 {request.method} {request.url.path} ({exc.kind}): {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Facebook API request failed", "details": exc.message},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """全局异常处理器"""
    logger.exception(f"全局异常捕获 {request.method} {request.url.path}: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "details": str(exc)},
    )


# API routes
app.include_router(auth.router)
app.include_router(ads.router)


@app.get("/health")
@limiter.exempt
async def health():
    """健康检查端点"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/api")
async def api_index():
    return {
        "message": "Meta Ads Platform API",
        "version": __version__,
        "endpoints": {
            "health": "/health",
            "auth": {
                "login": "/api/auth/facebook",
                "callback": "/api/auth/facebook/callback",
                "logout": "/api/auth/logout",
                "session": "/api/auth/session",
                "testToken": "/api/auth/test-token",
            },
            "ads": {
                "accounts": "/api/ads/accounts",
                "campaigns": "/api/ads/accounts/:accountId/campaigns",
                "insights": "/api/ads/accounts/:accountId/insights",
                "summary": "/api/ads/accounts/:accountId/summary",
                "dailyInsights": "/api/ads/accounts/:accountId/insights/daily",
                "aggregate": "/api/ads/accounts/:accountId/aggregate",
                "adSets": "/api/ads/campaigns/:campaignId/adsets",
                "campaignInsights": "/api/ads/campaigns/:campaignId/insights",
                "ads": "/api/ads/adsets/:adSetId/ads",
                "adSetInsights": "/api/ads/adsets/:adSetId/insights",
                "adInsights": "/api/ads/ads/:adId/insights",
            },
        },
    }


@app.on_event("startup")
async def startup_event():
    configure_logging(log_dir=settings.LOG_DIR, level=settings.LOG_LEVEL)
    if not settings.FACEBOOK_APP_ID:
        logger.warning("FACEBOOK_APP_ID 未配置，Facebook 登录不可用")
    logger.info(
        f"Meta Ads API 启动: Graph API {settings.GRAPH_API_VERSION}, "
        f"聚合并发 {settings.AGGREGATION_CONCURRENCY}"
    )
