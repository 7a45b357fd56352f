"""
测试 Graph API 客户端
"""
import asyncio
import json

import httpx
import pytest

from graph_stub import graph_data, graph_error, insights_row
from metaads.exceptions import (
    AuthError,
    PermissionDeniedError,
    ProviderError,
    RateLimitedError,
    TransientError,
    classify_graph_error,
)
from metaads.schemas.ads import DateRange
from metaads.services.facebook_client import FacebookAdsClient, GraphCredentials, normalize_account_id
from metaads.services.rate_limiter import GraphRateLimiter


class TestErrorClassification:
    """测试 Graph 错误码分类"""

    @pytest.mark.parametrize("code,expected", [
        (190, AuthError),
        (102, AuthError),
        (10, PermissionDeniedError),
        (200, PermissionDeniedError),
        (294, PermissionDeniedError),
        (4, RateLimitedError),
        (17, RateLimitedError),
        (80004, RateLimitedError),
        (2, TransientError),
        (100, ProviderError),
    ])
    def test_codes(self, code, expected):
        error = classify_graph_error(400, {"error": {"message": "x", "code": code}})
        assert type(error) is expected
        assert error.code == code

    def test_http_status_without_code(self):
        assert isinstance(classify_graph_error(401, None), AuthError)
        assert isinstance(classify_graph_error(429, None), RateLimitedError)
        assert isinstance(classify_graph_error(503, "oops"), TransientError)

    def test_is_transient_flag(self):
        error = classify_graph_error(500, {"error": {"message": "x", "code": 100, "is_transient": True}})
        assert isinstance(error, TransientError)
        assert error.retryable is True

    def test_to_dict(self):
        error = classify_graph_error(400, {"error": {"message": "denied", "code": 10, "error_subcode": 1}})
        assert error.to_dict() == {"message": "denied", "kind": "permission_denied", "code": 10, "error_subcode": 1}


class TestCredentials:
    def test_missing_token_rejected(self):
        with pytest.raises(AuthError):
            FacebookAdsClient(GraphCredentials(""))

    def test_repr_masks_token(self):
        credentials = GraphCredentials("EAAB-secret-token")
        assert "secret" not in repr(credentials)

    def test_expiry(self):
        assert GraphCredentials.from_token_response("t", expires_in=3600).is_expired is False
        assert GraphCredentials("t").is_expired is False

    def test_normalize_account_id(self):
        assert normalize_account_id("123") == "act_123"
        assert normalize_account_id("act_123") == "act_123"


class TestRequests:
    """测试请求构造与响应解析"""

    def test_token_injected_on_every_call(self, fake_graph, make_client):
        fake_graph.on("act_123/campaigns", graph_data([{"id": "1", "name": "A", "status": "ACTIVE"}]))
        client = make_client(token="abc")

        campaigns = asyncio.run(client.list_campaigns("123"))

        assert [c.id for c in campaigns] == ["1"]
        request = fake_graph.requests[0]
        assert request.url.params["access_token"] == "abc"
        assert request.url.params["limit"] == "100"
        assert "objective" in request.url.params["fields"]

    def test_list_hierarchy(self, fake_graph, make_client):
        fake_graph.on("me/adaccounts", graph_data([{"id": "act_1", "name": "Acc", "account_status": 1}]))
        fake_graph.on("c1/adsets", graph_data([{
            "id": "s1",
            "campaign_id": "c1",
            "targeting": {"age_min": 18, "age_max": 65, "genders": [1], "geo_locations": {"countries": ["KR"]}},
        }]))
        fake_graph.on("s1/ads", graph_data([{"id": "a1", "adset_id": "s1", "creative": {"id": "cr1", "title": "T"}}]))
        client = make_client()

        async def run():
            return (
                await client.list_ad_accounts(),
                await client.list_ad_sets("c1"),
                await client.list_ads("s1"),
            )

        accounts, ad_sets, ads = asyncio.run(run())
        assert accounts[0].account_status == 1
        assert ad_sets[0].targeting.geo_locations.countries == ["KR"]
        assert ads[0].creative.title == "T"

    def test_insights_params(self, fake_graph, make_client):
        fake_graph.on("act_123/insights", graph_data(
            [insights_row(1000, 10, 20.0)],
            paging={"cursors": {"before": "a", "after": "b"}},
        ))
        client = make_client()
        date_range = DateRange.model_validate({"since": "2025-01-01", "until": "2025-01-07"})

        page = asyncio.run(client.get_insights(
            "123", level="account", date_range=date_range, breakdowns=["age"], time_increment=1,
        ))

        params = fake_graph.requests[0].url.params
        assert json.loads(params["time_range"]) == {"since": "2025-01-01", "until": "2025-01-07"}
        assert params["level"] == "account"
        assert params["breakdowns"] == "age"
        assert params["time_increment"] == "1"
        assert page.data[0].ctr == 1.0
        assert page.paging.cursors["after"] == "b"

    def test_insights_default_range(self, fake_graph, make_client):
        """未指定日期范围时默认最近7天"""
        fake_graph.on("c1/insights", graph_data([]))
        client = make_client()

        page = asyncio.run(client.get_insights("c1"))

        time_range = json.loads(fake_graph.requests[0].url.params["time_range"])
        assert page.data == []
        assert time_range["since"] < time_range["until"]

    def test_invalid_level(self, make_client):
        with pytest.raises(ValueError):
            asyncio.run(make_client().get_insights("c1", level="creative"))

    def test_get_all_pages_follows_next(self, fake_graph, make_client):
        fake_graph.on("c1/adsets", graph_data([{"id": "s1"}], paging={"next": "https://graph.test/v18.0/c1/adsets_page2"}))
        fake_graph.on("c1/adsets_page2", graph_data([{"id": "s2"}]))
        client = make_client()

        rows = asyncio.run(client.get_all_pages("c1/adsets", {"fields": "id"}))

        assert [r["id"] for r in rows] == ["s1", "s2"]

    def test_list_campaigns_reads_every_page(self, fake_graph, make_client):
        fake_graph.on(
            "act_1/campaigns",
            graph_data([{"id": "c1"}], paging={"next": "https://graph.test/v18.0/act_1/campaigns?after=p2"}),
            graph_data([{"id": "c2"}]),
        )

        campaigns = asyncio.run(make_client().list_campaigns("act_1"))

        assert [c.id for c in campaigns] == ["c1", "c2"]
        assert fake_graph.requests[1].url.params["after"] == "p2"
        assert fake_graph.requests[1].url.params["access_token"] == "test-token"

    def test_validate_token(self, fake_graph, make_client):
        fake_graph.on("me", graph_data([]), graph_error(190, "expired", status_code=401))
        client = make_client()

        assert asyncio.run(client.validate_token()) is True
        assert asyncio.run(client.validate_token()) is False

    def test_non_json_body(self, fake_graph, make_client):
        fake_graph.on("me", httpx.Response(502, text="Bad Gateway"))
        with pytest.raises(TransientError):
            asyncio.run(make_client().get_user_profile())


class TestRetries:
    """测试退避重试"""

    def test_rate_limited_then_success(self, fake_graph, make_client):
        fake_graph.on(
            "c1/insights",
            graph_error(17, "User request limit reached"),
            graph_data([insights_row(100, 1, 1.0)]),
        )
        client = make_client(max_retries=2)

        page = asyncio.run(client.get_insights("c1"))

        assert len(fake_graph.requests) == 2
        assert page.data[0].impressions == 100

    def test_transient_exhausts_retries(self, fake_graph, make_client):
        fake_graph.on("c1/insights", graph_error(2, "Service temporarily unavailable", status_code=500))
        client = make_client(max_retries=2)

        with pytest.raises(TransientError):
            asyncio.run(client.get_insights("c1"))
        assert len(fake_graph.requests) == 3

    @pytest.mark.parametrize("code,error_cls", [(10, PermissionDeniedError), (190, AuthError)])
    def test_permission_and_auth_not_retried(self, fake_graph, make_client, code, error_cls):
        fake_graph.on("c1/insights", graph_error(code))
        client = make_client(max_retries=3)

        with pytest.raises(error_cls):
            asyncio.run(client.get_insights("c1"))
        assert len(fake_graph.requests) == 1

    def test_network_error_is_transient(self):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = FacebookAdsClient(
            GraphCredentials("t"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(boom)),
            base_url="https://graph.test/v18.0",
            max_retries=0,
        )
        with pytest.raises(TransientError):
            asyncio.run(client.list_ad_accounts())

    def test_hourly_budget_exhausted(self, fake_graph, make_client):
        """进程级配额用完后不再发出请求"""
        fake_graph.on("me", graph_data([]))
        limiter = GraphRateLimiter(max_per_minute=10, max_per_hour=1)
        client = make_client(rate_limiter=limiter)

        async def run():
            await client.get_all_pages("me")
            await client.get_all_pages("me")

        with pytest.raises(RateLimitedError):
            asyncio.run(run())
        assert len(fake_graph.requests) == 1


class TestGraphRateLimiter:
    """测试进程级速率限制器"""

    def test_hourly_budget_resets(self):
        now = [0.0]
        limiter = GraphRateLimiter(max_per_minute=100, max_per_hour=2, clock=lambda: now[0])

        async def acquire_three():
            return [await limiter.acquire() for _ in range(3)]

        assert asyncio.run(acquire_three()) == [True, True, False]
        assert limiter.hourly_remaining == 0
        assert limiter.minute_used == 2

        now[0] = 3600.0
        assert limiter.hourly_remaining == 2
        assert limiter.minute_used == 0
        assert asyncio.run(limiter.acquire()) is True

    def test_shared_across_event_loops(self):
        """同一个限制器在先后两个事件循环中排队等待"""
        ticks = [0]

        def clock():
            # 每次读时钟前进 59.95s，分钟窗口满时只需等待约 0.15s
            value = ticks[0] * 59.95
            ticks[0] += 1
            return value

        limiter = GraphRateLimiter(max_per_minute=1, max_per_hour=100, clock=clock)

        async def burst():
            return await asyncio.gather(*[limiter.acquire() for _ in range(3)])

        assert asyncio.run(burst()) == [True, True, True]
        assert asyncio.run(burst()) == [True, True, True]
