"""
应用配置
"""
import json
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = Path(__file__).resolve().parents[1] / ".env"  # backend/.env


def _parse_str_list(value: Any) -> List[str]:
    """环境变量中的列表：JSON 数组或逗号分隔字符串均可"""
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("[") and text.endswith("]"):
            try:
                value = json.loads(text)
            except json.JSONDecodeError:
                value = text.strip("[]").split(",")
        else:
            value = text.split(",")
    elif not isinstance(value, (list, tuple)):
        value = [value]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseSettings):
    # Facebook OAuth 配置
    FACEBOOK_APP_ID: str = ""
    FACEBOOK_APP_SECRET: str = ""
    FACEBOOK_REDIRECT_URI: str = "http://localhost:3002/auth/callback"
    FACEBOOK_OAUTH_SCOPES: Annotated[List[str], NoDecode] = ["email", "public_profile"]
    FACEBOOK_DIALOG_URL: str = "https://www.facebook.com"

    # Graph API 配置
    GRAPH_API_VERSION: str = "v18.0"
    GRAPH_API_BASE_URL: str = "https://graph.facebook.com"
    GRAPH_HTTP_TIMEOUT: float = 30.0
    GRAPH_PAGE_LIMIT: int = 100

    # 重试配置（仅对限流/临时错误生效，权限和令牌错误不重试）
    GRAPH_MAX_RETRIES: int = 3
    GRAPH_RETRY_BASE_DELAY: float = 1.0

    # 进程级 Graph API 速率限制
    GRAPH_MAX_REQUESTS_PER_MINUTE: int = 180
    GRAPH_MAX_REQUESTS_PER_HOUR: int = 4800

    # 聚合拉取配置
    # 1 表示完全串行（与旧版前端行为一致）
    AGGREGATION_CONCURRENCY: int = 4
    # 为 True 时，限流/临时错误也回退为示例数据（旧版行为）
    SAMPLE_FALLBACK_ON_TRANSIENT: bool = False

    # CORS配置
    CORS_ORIGINS: Annotated[List[str], NoDecode] = [
        "http://localhost:3000",
        "http://localhost:3001",
        "http://localhost:3002",
        "http://127.0.0.1:3000",
    ]

    # 网关速率限制（slowapi 格式）
    GATEWAY_RATE_LIMIT: str = "120/minute"
    OAUTH_CALLBACK_RATE_LIMIT: str = "10/minute"

    # 日志配置
    LOG_DIR: str = str(Path(__file__).resolve().parents[1] / "logs")
    LOG_LEVEL: str = "INFO"

    @field_validator("CORS_ORIGINS", "FACEBOOK_OAUTH_SCOPES", mode="before")
    @classmethod
    def _validate_str_list(cls, v: Any) -> List[str]:
        return _parse_str_list(v)

    @property
    def graph_base_url(self) -> str:
        """带版本号的 Graph API 地址"""
        return f"{self.GRAPH_API_BASE_URL.rstrip('/')}/{self.GRAPH_API_VERSION}"

    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
