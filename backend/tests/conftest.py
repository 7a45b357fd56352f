"""
测试公共夹具
"""
from typing import Any

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from graph_stub import GRAPH_BASE, FakeGraph
from metaads.api.auth import get_oauth_service
from metaads.api.deps import get_ads_client, get_credentials, limiter
from metaads.main import app
from metaads.services.facebook_client import FacebookAdsClient, GraphCredentials
from metaads.services.oauth_service import FacebookOAuthService
from metaads.services.rate_limiter import reset_rate_limiter


@pytest.fixture(autouse=True)
def _reset_limits():
    limiter.reset()
    reset_rate_limiter()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def fake_graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def make_client(fake_graph):
    """创建连接到 FakeGraph 的客户端（默认不重试）"""

    def _make(token: str = "test-token", **kwargs: Any) -> FacebookAdsClient:
        kwargs.setdefault("max_retries", 0)
        kwargs.setdefault("retry_base_delay", 0)
        return FacebookAdsClient(
            GraphCredentials(token),
            http_client=fake_graph.http_client(),
            base_url=GRAPH_BASE,
            **kwargs,
        )

    return _make


@pytest.fixture
def api_client(fake_graph):
    """网关 TestClient，Graph API 请求全部指向 FakeGraph"""

    def _ads_client(credentials: GraphCredentials = Depends(get_credentials)) -> FacebookAdsClient:
        return FacebookAdsClient(
            credentials,
            http_client=fake_graph.http_client(),
            base_url=GRAPH_BASE,
            max_retries=0,
            retry_base_delay=0,
        )

    def _oauth_service() -> FacebookOAuthService:
        return FacebookOAuthService(http_client=fake_graph.http_client())

    app.dependency_overrides[get_ads_client] = _ads_client
    app.dependency_overrides[get_oauth_service] = _oauth_service
    return TestClient(app)
