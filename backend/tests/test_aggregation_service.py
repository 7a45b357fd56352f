"""
测试账户数据聚合拉取
"""
import asyncio
from datetime import date

import httpx
import pytest

from graph_stub import GRAPH_BASE, graph_data, graph_error, insights_row
from metaads.exceptions import AuthError, ProviderError
from metaads.services.aggregation_service import (
    AccountAggregator,
    AggregationTracker,
    StaleAggregationError,
)
from metaads.services.facebook_client import FacebookAdsClient, GraphCredentials
from metaads.services.sample_data import SAMPLE_NOTES

TODAY = date(2025, 3, 15)

HIERARCHY = {
    "c1": {"s11": ["a111", "a112"], "s12": ["a121"]},
    "c2": {"s21": ["a211"]},
    "c3": {"s31": ["a311", "a312"]},
}


def account_insights(request: httpx.Request) -> httpx.Response:
    """账户级洞察：带 time_increment 时返回逐日数据"""
    if request.url.params.get("time_increment") == "1":
        return graph_data([
            insights_row(100, 2, 5.0, date_start="2025-03-09", date_stop="2025-03-09"),
            insights_row(200, 4, 10.0, date_start="2025-03-10", date_stop="2025-03-10"),
        ])
    return graph_data([insights_row(5000, 100, 250.0, reach=4000)])


@pytest.fixture
def account_graph(fake_graph):
    """注册 act_123 的完整层级"""
    fake_graph.on("act_123/campaigns", graph_data([{"id": c, "name": c.upper()} for c in HIERARCHY]))
    fake_graph.on("act_123/insights", account_insights)
    for campaign_id, ad_sets in HIERARCHY.items():
        fake_graph.on(
            f"{campaign_id}/adsets",
            graph_data([{"id": s, "campaign_id": campaign_id} for s in ad_sets]),
        )
        for ad_set_id, ads in ad_sets.items():
            fake_graph.on(f"{ad_set_id}/insights", graph_data([insights_row(1000, 20, 40.0)]))
            fake_graph.on(f"{ad_set_id}/ads", graph_data([{"id": a, "adset_id": ad_set_id} for a in ads]))
            for ad_id in ads:
                fake_graph.on(f"{ad_id}/insights", graph_data([insights_row(300, 3, 6.0)]))
    return fake_graph


def run_aggregate(client, date_range="last_7_days", **kwargs):
    aggregator = AccountAggregator(client, **kwargs)
    return asyncio.run(aggregator.aggregate("act_123", date_range, today=TODAY))


class TestAggregate:
    """测试正常拉取"""

    def test_full_pass(self, account_graph, make_client):
        aggregate = run_aggregate(make_client())

        assert [c.id for c in aggregate.campaigns] == ["c1", "c2", "c3"]
        assert [s.id for s in aggregate.ad_sets] == ["s11", "s12", "s21", "s31"]
        assert [a.id for a in aggregate.ads] == ["a111", "a112", "a121", "a211", "a311", "a312"]
        assert set(aggregate.adset_insights) == {"s11", "s12", "s21", "s31"}
        assert aggregate.ad_insights["a111"].ctr == 1.0
        assert aggregate.errors == []
        assert aggregate.is_sample is False
        assert aggregate.note is None
        assert aggregate.orphans() == []

    def test_daily_and_summary(self, account_graph, make_client):
        aggregate = run_aggregate(make_client())

        assert [d.date_start for d in aggregate.daily_insights] == ["2025-03-09", "2025-03-10"]
        assert aggregate.summary.total_impressions == 5000
        assert aggregate.summary.average_ctr == 2.0
        assert aggregate.summary.date_range.since == date(2025, 3, 9)
        assert aggregate.date_range.until == TODAY

    def test_order_preserved_when_serial(self, account_graph, make_client):
        aggregate = run_aggregate(make_client(), concurrency=1)
        assert [a.id for a in aggregate.ads] == ["a111", "a112", "a121", "a211", "a311", "a312"]


class TestFailureIsolation:
    """测试逐实体的失败隔离"""

    def test_ad_set_list_failure_for_one_campaign(self, account_graph, make_client):
        """某个广告系列的广告组获取失败时，其余广告系列不受影响"""
        account_graph.on("c2/adsets", graph_error(100, "Invalid parameter"))

        aggregate = run_aggregate(make_client())

        assert [c.id for c in aggregate.campaigns] == ["c1", "c2", "c3"]
        assert [s.id for s in aggregate.ad_sets] == ["s11", "s12", "s31"]
        assert len(aggregate.errors) == 1
        assert aggregate.errors[0].entity_id == "c2"
        assert aggregate.errors[0].operation == "list_ad_sets"

    def test_ad_list_failure_keeps_ad_set_insights(self, account_graph, make_client):
        account_graph.on("s11/ads", graph_error(100))

        aggregate = run_aggregate(make_client())

        assert "s11" in aggregate.adset_insights
        assert [a.id for a in aggregate.ads] == ["a121", "a211", "a311", "a312"]

    def test_permission_denied_everywhere_uses_sample(self, account_graph, make_client):
        """广告组/广告洞察全部无权限：映射完整且全部是示例数据"""
        for ad_sets in HIERARCHY.values():
            for ad_set_id, ads in ad_sets.items():
                account_graph.on(f"{ad_set_id}/insights", graph_error(10, "Requires ads_read"))
                for ad_id in ads:
                    account_graph.on(f"{ad_id}/insights", graph_error(10, "Requires ads_read"))

        aggregate = run_aggregate(make_client())

        assert len(aggregate.campaigns) == 3
        assert set(aggregate.adset_insights) == {s.id for s in aggregate.ad_sets}
        assert set(aggregate.ad_insights) == {a.id for a in aggregate.ads}
        assert all(i.is_sample for i in aggregate.adset_insights.values())
        assert all(i.is_sample for i in aggregate.ad_insights.values())
        assert aggregate.is_sample is True
        assert aggregate.note == SAMPLE_NOTES["insights"]
        assert {e.kind for e in aggregate.errors} == {"permission_denied"}

    def test_account_level_permission_denied(self, account_graph, make_client):
        account_graph.on("act_123/insights", graph_error(200, "Requires ads_read"))

        aggregate = run_aggregate(make_client())

        assert len(aggregate.daily_insights) == 7
        assert all(d.is_sample for d in aggregate.daily_insights)
        assert aggregate.summary.total_impressions == 125000
        assert aggregate.summary.date_range == aggregate.date_range

    def test_transient_failure_not_masked(self, account_graph, make_client):
        """临时错误不伪造数据，只记录错误"""
        account_graph.on("s21/insights", graph_error(2, "Temporarily unavailable", status_code=500))

        aggregate = run_aggregate(make_client())

        assert "s21" not in aggregate.adset_insights
        assert aggregate.is_sample is False
        assert aggregate.errors[0].kind == "transient"

    def test_transient_failure_masked_when_enabled(self, account_graph, make_client):
        account_graph.on("s21/insights", graph_error(17, "Rate limited"))

        aggregate = run_aggregate(make_client(), fallback_on_transient=True)

        assert aggregate.adset_insights["s21"].is_sample is True
        assert aggregate.is_sample is True

    def test_campaign_list_failure_is_fatal(self, account_graph, make_client):
        account_graph.on("act_123/campaigns", graph_error(100, "Invalid account"))

        with pytest.raises(ProviderError):
            run_aggregate(make_client())

    def test_auth_error_aborts_pass(self, account_graph, make_client):
        """任何层级的令牌错误都中止整次拉取"""
        account_graph.on("a311/insights", graph_error(190, "Session has expired", status_code=401))

        with pytest.raises(AuthError):
            run_aggregate(make_client())

    def test_auth_error_stops_sibling_requests(self, account_graph):
        """中止后不再有请求发往上游"""
        sent = []

        async def handler(request):
            sent.append(account_graph.key(request))
            if account_graph.key(request) != "c1/adsets":
                await asyncio.sleep(0.01)
            return account_graph.handler(request)

        account_graph.on("c1/adsets", graph_error(190, "Session has expired", status_code=401))
        client = FacebookAdsClient(
            GraphCredentials("test-token"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            base_url=GRAPH_BASE,
            max_retries=0,
        )
        aggregator = AccountAggregator(client, concurrency=4)

        async def scenario():
            with pytest.raises(AuthError):
                await aggregator.aggregate("act_123", "last_7_days", today=TODAY)
            at_abort = len(sent)
            await asyncio.sleep(0.2)
            return at_abort, len(sent)

        at_abort, later = asyncio.run(scenario())

        assert later == at_abort
        assert "c1/adsets" in sent


class TestConcurrency:
    """测试并发上限"""

    @pytest.mark.parametrize("concurrency", [1, 3])
    def test_in_flight_bounded(self, account_graph, concurrency):
        in_flight = 0
        peak = 0

        async def handler(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.005)
            in_flight -= 1
            return account_graph.handler(request)

        client = FacebookAdsClient(
            GraphCredentials("test-token"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            base_url=GRAPH_BASE,
            max_retries=0,
        )
        aggregate = run_aggregate(client, concurrency=concurrency)

        assert peak <= concurrency
        assert len(aggregate.ads) == 6
        if concurrency > 1:
            assert peak > 1


class TestAggregationTracker:
    """测试过期拉取的丢弃"""

    def test_latest_pass_wins(self):
        tracker = AggregationTracker()
        first = tracker.begin("session")
        second = tracker.begin("session")
        assert second > first
        assert tracker.is_current("session", second)
        assert not tracker.is_current("session", first)

    def test_sessions_independent(self):
        tracker = AggregationTracker()
        a = tracker.begin("a")
        tracker.begin("b")
        assert tracker.is_current("a", a)

    def test_eviction(self):
        tracker = AggregationTracker(max_sessions=2)
        tracker.begin("a")
        tracker.begin("b")
        tracker.begin("c")
        assert tracker.latest("a") is None
        assert tracker.latest("c") is not None

    def test_session_key_hides_token(self):
        key = AggregationTracker.session_key("EAAB-secret")
        assert "secret" not in key
        assert key == AggregationTracker.session_key("EAAB-secret")

    def test_superseded_pass_raises(self, account_graph, make_client):
        """拉取进行中同一会话开始了新的拉取，旧结果作废"""
        tracker = AggregationTracker()
        campaigns = graph_data([{"id": c} for c in HIERARCHY])

        def campaigns_then_new_pass(request):
            tracker.begin("session")
            return campaigns

        account_graph.on("act_123/campaigns", campaigns_then_new_pass)
        aggregator = AccountAggregator(make_client())

        with pytest.raises(StaleAggregationError) as exc_info:
            asyncio.run(aggregator.aggregate_latest(tracker, "session", "act_123", "last_7_days", today=TODAY))
        assert exc_info.value.latest_pass_id > exc_info.value.pass_id

    def test_current_pass_returns_aggregate(self, account_graph, make_client):
        tracker = AggregationTracker()
        aggregator = AccountAggregator(make_client())

        aggregate = asyncio.run(aggregator.aggregate_latest(tracker, "session", "act_123", today=TODAY))

        assert aggregate.pass_id == tracker.latest("session")
