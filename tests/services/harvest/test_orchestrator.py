"""Unit tests for the Harvest Orchestrator.

Covers:
- Clean runs and quota handling
- Soft-block retry on the same strategy
- Strategy fallback order and resumption
- Failure reasons and diagnostics
- Cancellation and run deadline
- Multi-product harvesting and the convenience function
"""

from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from src.app.core.config import HarvestStrategyOption, Settings
from src.app.schemas.review import ReviewTarget
from src.app.services.harvest.exceptions import ConfigurationException
from src.app.services.harvest.extractor import SourceKind
from src.app.services.harvest.metrics import get_metrics_summary
from src.app.services.harvest.orchestrator import HarvestOrchestrator, build_target, harvest_reviews
from src.app.services.harvest.strategies import STRATEGY_REGISTRY
from tests.helpers import CHALLENGE_PAGE, NO_REVIEWS_PAGE, UNUSUAL_TRAFFIC_PAGE, ScriptedStrategy

STATIC = HarvestStrategyOption.STATIC_HTTP
JSON = HarvestStrategyOption.JSON_ENDPOINT
BROWSER = HarvestStrategyOption.RENDERED_BROWSER

FORBIDDEN = {"status": 403, "body": UNUSUAL_TRAFFIC_PAGE}
RATE_LIMITED = {"status": 429, "body": "Too Many Requests"}


def json_page(ids, total_pages: int | None = None) -> dict:
    body: dict = {"reviews": [{"id": i, "title": f"Review {i}", "comment_text": "Solid."} for i in ids]}
    if total_pages is not None:
        body["meta"] = {"total_pages": total_pages}
    return {"status": 200, "body": body}


# =============================================================================
# FIXTURES
# =============================================================================
@pytest.fixture
def store() -> MagicMock:
    return MagicMock()


@pytest.fixture
def markup_page(review_page: Callable[..., str], review_card: Callable[..., str]) -> Callable[..., dict]:
    def factory(ids, next_page: int | None = None) -> dict:
        return {"status": 200, "body": review_page([review_card(i) for i in ids], next_page=next_page)}

    return factory


@pytest.fixture
def strategies(scripted_strategy) -> Callable[..., dict[HarvestStrategyOption, ScriptedStrategy]]:
    """One scripted strategy per kind; unscripted pages serve the no-reviews page."""

    def factory(static=None, json=None, browser=None) -> dict[HarvestStrategyOption, ScriptedStrategy]:
        return {
            STATIC: scripted_strategy(STATIC, static or {}),
            JSON: scripted_strategy(JSON, json or {1: [{"status": 200, "body": {"reviews": []}}]}, SourceKind.JSON),
            BROWSER: scripted_strategy(BROWSER, browser or {}),
        }

    return factory


@pytest.fixture
def make_orchestrator(harvest_settings: Settings, store: MagicMock) -> Callable[..., HarvestOrchestrator]:
    def factory(strategy_map, settings: Settings | None = None) -> HarvestOrchestrator:
        return HarvestOrchestrator(settings or harvest_settings, diagnostics_store=store, strategies=strategy_map)

    return factory


# =============================================================================
# CLEAN RUNS
# =============================================================================
class TestCleanRuns:
    """Runs where the first strategy just works."""

    @pytest.mark.asyncio
    async def test_five_reviews_first_strategy(
        self,
        make_orchestrator,
        strategies,
        markup_page,
        acme_target: ReviewTarget,
    ) -> None:
        strategy_map = strategies(static={1: [markup_page(range(1, 6))]})
        orchestrator = make_orchestrator(strategy_map)

        outcome = await orchestrator.harvest(acme_target)
        await orchestrator.cleanup()

        assert outcome.success is True
        assert outcome.reason is None
        assert len(outcome.records) == 5
        assert outcome.diagnostics == []
        assert outcome.strategy_used == STATIC
        assert outcome.strategies_attempted == [STATIC]
        assert outcome.pages_fetched == 1
        assert strategy_map[JSON].calls == []
        assert strategy_map[BROWSER].calls == []

    @pytest.mark.asyncio
    async def test_quota_bounds_records(
        self,
        make_orchestrator,
        strategies,
        markup_page,
        acme_target: ReviewTarget,
    ) -> None:
        orchestrator = make_orchestrator(strategies(static={1: [markup_page(range(1, 13), next_page=2)]}))
        outcome = await orchestrator.harvest(acme_target)

        assert len(outcome.records) == 5
        assert [r.review_id for r in outcome.records] == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_fewer_than_quota_is_success(
        self,
        make_orchestrator,
        strategies,
        markup_page,
        acme_target: ReviewTarget,
    ) -> None:
        orchestrator = make_orchestrator(strategies(static={1: [markup_page([1, 2])]}))
        outcome = await orchestrator.harvest(acme_target)

        assert outcome.success is True
        assert len(outcome.records) == 2

    @pytest.mark.asyncio
    async def test_quota_zero_returns_immediately(self, make_orchestrator, strategies) -> None:
        strategy_map = strategies()
        outcome = await make_orchestrator(strategy_map).harvest(ReviewTarget(product_identifier="acme-crm", quota=0))

        assert outcome.success is True
        assert outcome.records == []
        assert all(strategy.calls == [] for strategy in strategy_map.values())

    @pytest.mark.asyncio
    async def test_summary(self, make_orchestrator, strategies, markup_page, acme_target: ReviewTarget) -> None:
        outcome = await make_orchestrator(strategies(static={1: [markup_page([1, 2, 3])]})).harvest(acme_target)
        summary = outcome.summary()

        assert summary.company == "acme-crm"
        assert summary.total_reviews == 3
        assert summary.success is True
        assert outcome.records_as_dicts()[0]["review_id"] == 1


# =============================================================================
# RETRY AND FALLBACK
# =============================================================================
class TestRetryAndFallback:
    """Soft blocks retry in place; hard blocks move to the next strategy."""

    @pytest.mark.asyncio
    async def test_soft_block_retried_on_same_strategy(
        self,
        make_orchestrator,
        strategies,
        markup_page,
        acme_target: ReviewTarget,
    ) -> None:
        strategy_map = strategies(static={1: [FORBIDDEN, markup_page(range(1, 6))]})
        outcome = await make_orchestrator(strategy_map).harvest(acme_target)

        assert outcome.success is True
        assert len(outcome.records) == 5
        assert outcome.retries == 1
        assert outcome.strategy_used == STATIC
        assert outcome.strategies_attempted == [STATIC]
        assert outcome.diagnostics == []
        static_identities = strategy_map[STATIC].identities
        assert static_identities[0] != static_identities[1]

    @pytest.mark.asyncio
    async def test_falls_back_in_order_after_hard_block(
        self,
        make_orchestrator,
        strategies,
        acme_target: ReviewTarget,
    ) -> None:
        strategy_map = strategies(static={1: [FORBIDDEN]}, json={1: [json_page(range(1, 6))]})
        outcome = await make_orchestrator(strategy_map).harvest(acme_target)

        assert outcome.success is True
        assert outcome.strategies_attempted == [STATIC, JSON]
        assert outcome.strategy_used == JSON
        assert [d.kind for d in outcome.diagnostics] == ["BLOCKED_PAGE"]
        # Hard-blocked strategy is never tried again
        assert strategy_map[STATIC].calls == [1, 1, 1]
        assert strategy_map[BROWSER].calls == []

    @pytest.mark.asyncio
    async def test_preferred_order_respected(self, make_orchestrator, strategies, markup_page) -> None:
        strategy_map = strategies(browser={1: [markup_page([1])]})
        target = ReviewTarget(product_identifier="acme-crm", quota=1, preferred_strategy_order=(BROWSER, STATIC))

        outcome = await make_orchestrator(strategy_map).harvest(target)

        assert outcome.strategies_attempted == [BROWSER]
        assert strategy_map[STATIC].calls == []

    @pytest.mark.asyncio
    async def test_fallback_resumes_after_fetched_pages(
        self,
        make_orchestrator,
        strategies,
        markup_page,
        acme_target: ReviewTarget,
    ) -> None:
        strategy_map = strategies(
            static={1: [markup_page([1, 2], next_page=2)], 2: [FORBIDDEN]},
            json={2: [json_page([3, 4, 5])]},
        )
        outcome = await make_orchestrator(strategy_map).harvest(acme_target)

        assert outcome.success is True
        assert [r.review_id for r in outcome.records] == [1, 2, 3, 4, 5]
        assert strategy_map[JSON].calls == [2]
        assert outcome.strategy_used == JSON

    @pytest.mark.asyncio
    async def test_records_deduplicated_across_strategies(
        self,
        make_orchestrator,
        strategies,
        markup_page,
    ) -> None:
        strategy_map = strategies(
            static={1: [markup_page([1, 2], next_page=2)], 2: [FORBIDDEN]},
            json={2: [json_page([2, 3])]},
        )
        target = ReviewTarget(product_identifier="acme-crm", quota=3)
        outcome = await make_orchestrator(strategy_map).harvest(target)

        assert [r.review_id for r in outcome.records] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_empty_first_page_falls_back(
        self,
        make_orchestrator,
        strategies,
        acme_target: ReviewTarget,
    ) -> None:
        strategy_map = strategies(
            static={1: [{"status": 200, "body": NO_REVIEWS_PAGE}]},
            json={1: [json_page(range(1, 6))]},
        )
        outcome = await make_orchestrator(strategy_map).harvest(acme_target)

        assert outcome.success is True
        assert len(outcome.records) == 5
        assert [d.kind for d in outcome.diagnostics] == ["EMPTY_PAGE"]
        assert outcome.strategies_attempted == [STATIC, JSON]


# =============================================================================
# FAILURES
# =============================================================================
class TestFailures:
    """Runs that end without records."""

    @pytest.mark.asyncio
    async def test_all_strategies_hard_blocked(
        self,
        make_orchestrator,
        strategies,
        store: MagicMock,
        acme_target: ReviewTarget,
    ) -> None:
        strategy_map = strategies(
            static={1: [FORBIDDEN]},
            json={1: [RATE_LIMITED]},
            browser={1: [{"status": 200, "body": CHALLENGE_PAGE}]},
        )
        orchestrator = make_orchestrator(strategy_map)

        outcome = await orchestrator.harvest(acme_target)
        await orchestrator.cleanup()

        assert outcome.success is False
        assert outcome.records == []
        assert "All strategies exhausted" in outcome.reason
        assert "static_http=hard_blocked" in outcome.reason
        assert [d.kind for d in outcome.diagnostics] == ["BLOCKED_PAGE"] * 3
        assert {d.strategy for d in outcome.diagnostics} == {STATIC, JSON, BROWSER}
        assert outcome.strategies_attempted == [STATIC, JSON, BROWSER]
        assert store.save.call_count == 3

    @pytest.mark.asyncio
    async def test_no_reviews_anywhere(
        self,
        make_orchestrator,
        strategies,
        acme_target: ReviewTarget,
    ) -> None:
        strategy_map = strategies(
            static={1: [{"status": 200, "body": NO_REVIEWS_PAGE}]},
            browser={1: [{"status": 200, "body": NO_REVIEWS_PAGE}]},
        )
        outcome = await make_orchestrator(strategy_map).harvest(acme_target)

        assert outcome.success is False
        assert "no reviews, or page structure changed" in outcome.reason
        assert [d.kind for d in outcome.diagnostics] == ["EMPTY_PAGE"] * 3

    @pytest.mark.asyncio
    async def test_metrics_record_run(
        self,
        make_orchestrator,
        strategies,
        acme_target: ReviewTarget,
    ) -> None:
        strategy_map = strategies(static={1: [FORBIDDEN]}, json={1: [json_page([1])]})
        await make_orchestrator(strategy_map).harvest(acme_target)

        runs = get_metrics_summary()["runs"]
        assert runs["total"] == 1
        assert runs["succeeded"] == 1
        assert runs["fallbacks"] == 1
        assert runs["records"] == 1


# =============================================================================
# INPUT VALIDATION
# =============================================================================
class TestConfiguration:
    """Invalid input is rejected before any fetch."""

    @pytest.mark.asyncio
    async def test_empty_product(self, make_orchestrator, strategies) -> None:
        strategy_map = strategies()
        with pytest.raises(ConfigurationException) as exc_info:
            await make_orchestrator(strategy_map).harvest(ReviewTarget(product_identifier="  ", quota=5))
        assert exc_info.value.field == "product_identifier"
        assert strategy_map[STATIC].calls == []

    @pytest.mark.asyncio
    async def test_negative_quota(self, make_orchestrator, strategies) -> None:
        with pytest.raises(ConfigurationException):
            await make_orchestrator(strategies()).harvest(ReviewTarget(product_identifier="acme-crm", quota=-1))

    @pytest.mark.asyncio
    async def test_strategy_not_available(self, make_orchestrator, scripted_strategy) -> None:
        orchestrator = make_orchestrator({STATIC: scripted_strategy(STATIC, {})})
        with pytest.raises(ConfigurationException):
            await orchestrator.harvest(ReviewTarget(product_identifier="acme-crm", quota=5))

    def test_build_target_unknown_strategy(self) -> None:
        with pytest.raises(ConfigurationException) as exc_info:
            build_target("acme-crm", quota=5, strategy_order=["static_http", "carrier_pigeon"])
        assert "carrier_pigeon" in str(exc_info.value)

    def test_build_target_defaults(self) -> None:
        target = build_target("acme-crm", strategy_order=["json_endpoint"], proxy_pool_config=["http://p:1"])
        assert target.quota == 20
        assert target.preferred_strategy_order == (JSON,)
        assert target.proxy_pool_config == ("http://p:1",)

    def test_build_target_invalid_quota(self) -> None:
        with pytest.raises(ConfigurationException):
            build_target("acme-crm", quota="lots")

    def test_duplicate_strategies_collapsed(self, make_orchestrator, strategies) -> None:
        target = ReviewTarget(product_identifier="acme-crm", preferred_strategy_order=(JSON, JSON, STATIC))
        assert make_orchestrator(strategies()).strategy_order(target) == [JSON, STATIC]


# =============================================================================
# CANCELLATION / DEADLINE
# =============================================================================
class TestStopping:
    """Cancelled or overdue runs keep partial records."""

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_records(
        self,
        make_orchestrator,
        strategies,
        markup_page,
        acme_target: ReviewTarget,
    ) -> None:
        strategy_map = strategies(static={1: [markup_page([1, 2], next_page=2)], 2: [markup_page([3])]})
        orchestrator = make_orchestrator(strategy_map)
        static = strategy_map[STATIC]
        fetch = static.fetch

        async def fetch_then_cancel(*args):
            attempt = await fetch(*args)
            orchestrator.cancel()
            return attempt

        static.fetch = fetch_then_cancel
        outcome = await orchestrator.harvest(acme_target)

        assert orchestrator.cancelled is True
        assert outcome.success is False
        assert "cancelled" in outcome.reason
        assert [r.review_id for r in outcome.records] == [1, 2]
        assert static.calls == [1]
        assert strategy_map[JSON].calls == []

    @pytest.mark.asyncio
    async def test_deadline_exceeded(
        self,
        harvest_settings: Settings,
        make_orchestrator,
        strategies,
        acme_target: ReviewTarget,
    ) -> None:
        settings = harvest_settings.model_copy(update={"HARVEST_RUN_DEADLINE": 0})
        strategy_map = strategies()
        outcome = await make_orchestrator(strategy_map, settings=settings).harvest(acme_target)

        assert outcome.success is False
        assert "deadline" in outcome.reason
        assert strategy_map[STATIC].calls == []


# =============================================================================
# MANY TARGETS
# =============================================================================
class TestHarvestMany:
    @pytest.mark.asyncio
    async def test_outcomes_in_target_order(self, make_orchestrator, strategies, markup_page) -> None:
        orchestrator = make_orchestrator(strategies(static={1: [markup_page([1, 2])]}))
        targets = [
            ReviewTarget(product_identifier="acme-crm", quota=2),
            ReviewTarget(product_identifier="globex-hr", quota=1),
        ]

        outcomes = await orchestrator.harvest_many(targets, concurrency=2)

        assert [o.product_identifier for o in outcomes] == ["acme-crm", "globex-hr"]
        assert [len(o.records) for o in outcomes] == [2, 1]
        assert all(o.success for o in outcomes)

    @pytest.mark.asyncio
    async def test_invalid_target_rejected_up_front(self, make_orchestrator, strategies, markup_page) -> None:
        strategy_map = strategies(static={1: [markup_page([1])]})
        targets = [
            ReviewTarget(product_identifier="acme-crm", quota=1),
            ReviewTarget(product_identifier="", quota=1),
        ]

        with pytest.raises(ConfigurationException):
            await make_orchestrator(strategy_map).harvest_many(targets)
        assert strategy_map[STATIC].calls == []


# =============================================================================
# CONVENIENCE FUNCTION
# =============================================================================
class TestHarvestReviews:
    """harvest_reviews builds everything from settings and cleans up."""

    @pytest.mark.asyncio
    async def test_blocked_run_writes_diagnostics(
        self,
        harvest_settings: Settings,
        scripted_strategy,
        markup_page,
    ) -> None:
        strategy_map = {
            STATIC: scripted_strategy(STATIC, {1: [FORBIDDEN]}),
            JSON: scripted_strategy(JSON, {1: [json_page([1, 2, 3])]}, SourceKind.JSON),
            BROWSER: scripted_strategy(BROWSER, {}),
        }
        registry = {kind: (lambda settings, strategy=strategy: strategy) for kind, strategy in strategy_map.items()}

        with patch.dict(STRATEGY_REGISTRY, registry):
            outcome = await harvest_reviews("acme-crm", harvest_settings, quota=3)

        assert outcome.success is True
        assert len(outcome.records) == 3
        assert all(strategy.cleaned_up for strategy in strategy_map.values())

        diagnostics_dir = Path(harvest_settings.HARVEST_DIAGNOSTICS_DIR)
        assert (diagnostics_dir / "BLOCKED_PAGE_acme-crm_static_http_p1.html").read_text() == UNUSUAL_TRAFFIC_PAGE
        assert (diagnostics_dir / "BLOCKED_PAGE_acme-crm_static_http_p1.meta.json").exists()

    @pytest.mark.asyncio
    async def test_unknown_strategy_name(self, harvest_settings: Settings) -> None:
        with pytest.raises(ConfigurationException):
            await harvest_reviews("acme-crm", harvest_settings, strategy_order=["carrier_pigeon"])
