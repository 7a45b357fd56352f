"""
Graph API 错误分类

所有上游错误统一为 ProviderError，按错误码细分：
- AuthError: 令牌无效/过期，必须重新登录，不回退
- PermissionDeniedError: 缺少 ads_read 等权限，可用示例数据替代
- RateLimitedError: 触发限流，应退避重试
- TransientError: 网络/服务端临时错误，应退避重试
"""
from typing import Any, Dict, Optional


class ProviderError(Exception):
    """上游（Graph API）错误的统一形态"""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        error_subcode: Optional[int] = None,
        status_code: Optional[int] = None,
        fbtrace_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.error_subcode = error_subcode
        self.status_code = status_code
        self.fbtrace_id = fbtrace_id

    @property
    def kind(self) -> str:
        return "provider"

    @property
    def retryable(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"message": self.message, "kind": self.kind}
        if self.code is not None:
            data["code"] = self.code
        if self.error_subcode is not None:
            data["error_subcode"] = self.error_subcode
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self.message!r}, code={self.code!r})"


class AuthError(ProviderError):
    """访问令牌缺失、无效或已过期"""

    @property
    def kind(self) -> str:
        return "auth"


class PermissionDeniedError(ProviderError):
    """令牌有效但缺少广告读取权限"""

    @property
    def kind(self) -> str:
        return "permission_denied"


class RateLimitedError(ProviderError):
    """触发 Graph API 限流"""

    @property
    def kind(self) -> str:
        return "rate_limited"

    @property
    def retryable(self) -> bool:
        return True


class TransientError(ProviderError):
    """网络错误、超时或上游 5xx"""

    @property
    def kind(self) -> str:
        return "transient"

    @property
    def retryable(self) -> bool:
        return True


class DateRangeError(ValueError):
    """date_range 参数格式错误或预设不存在"""


# Graph API 错误码
# https://developers.facebook.com/docs/graph-api/guides/error-handling
AUTH_ERROR_CODES = {102, 190, 467}
PERMISSION_ERROR_CODES = {3, 10, 294}
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 341, 613}
TRANSIENT_ERROR_CODES = {1, 2}


def _is_permission_code(code: Optional[int]) -> bool:
    if code is None:
        return False
    return code in PERMISSION_ERROR_CODES or 200 <= code <= 299


def _is_rate_limit_code(code: Optional[int]) -> bool:
    if code is None:
        return False
    # 80000-80014 为 Business Use Case 限流
    return code in RATE_LIMIT_ERROR_CODES or 80000 <= code <= 80014


def classify_graph_error(status_code: Optional[int], payload: Any) -> ProviderError:
    """根据 HTTP 状态码和 Graph 错误体构造对应的异常

    Graph 错误体格式：
        {"error": {"message": "...", "type": "OAuthException", "code": 190,
                   "error_subcode": 463, "fbtrace_id": "..."}}
    """
    error: Dict[str, Any] = {}
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]

    message = error.get("message") or "Facebook API request failed"
    code = _to_int(error.get("code"))
    subcode = _to_int(error.get("error_subcode"))
    kwargs = dict(
        code=code,
        error_subcode=subcode,
        status_code=status_code,
        fbtrace_id=error.get("fbtrace_id"),
    )

    if code in AUTH_ERROR_CODES:
        return AuthError(message, **kwargs)
    if _is_permission_code(code):
        return PermissionDeniedError(message, **kwargs)
    if _is_rate_limit_code(code) or status_code == 429:
        return RateLimitedError(message, **kwargs)
    if code in TRANSIENT_ERROR_CODES or error.get("is_transient"):
        return TransientError(message, **kwargs)

    # 没有错误码时按 HTTP 状态判断
    if code is None:
        if status_code == 401:
            return AuthError(message, **kwargs)
        if status_code == 403:
            return PermissionDeniedError(message, **kwargs)
        if status_code is not None and status_code >= 500:
            return TransientError(message, **kwargs)

    return ProviderError(message, **kwargs)


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
