"""Unit tests for the block detector."""

from collections.abc import Callable

import pytest

from src.app.core.config import HarvestStrategyOption, Settings
from src.app.services.harvest.detector import BlockDetector, BlockVerdict
from src.app.services.harvest.extractor import SourceKind
from src.app.services.harvest.strategies.base import FetchAttempt, FetchOutcome
from tests.helpers import CHALLENGE_PAGE, NO_REVIEWS_PAGE, UNUSUAL_TRAFFIC_PAGE


@pytest.fixture
def detector(harvest_settings: Settings) -> BlockDetector:
    return BlockDetector(harvest_settings)


def make_attempt(
    outcome: FetchOutcome = FetchOutcome.SUCCESS,
    content: str | None = None,
    payload=None,
    status_code: int | None = 200,
    source_kind: SourceKind = SourceKind.MARKUP,
    reason: str | None = None,
) -> FetchAttempt:
    return FetchAttempt(
        strategy=HarvestStrategyOption.STATIC_HTTP,
        page_token=1,
        identity=None,
        outcome=outcome,
        source_kind=source_kind,
        content=content,
        payload=payload,
        status_code=status_code,
        reason=reason,
    )


# =============================================================================
# VERDICTS
# =============================================================================
class TestClassify:
    """Tests for single-attempt classification."""

    def test_review_page_is_success(
        self,
        detector: BlockDetector,
        review_card: Callable[..., str],
        review_page: Callable[..., str],
    ) -> None:
        result = detector.classify(make_attempt(content=review_page([review_card(1)])))
        assert result.verdict == BlockVerdict.SUCCESS
        assert result.is_block is False

    def test_review_quoting_block_phrase_is_success(
        self,
        detector: BlockDetector,
        review_card: Callable[..., str],
        review_page: Callable[..., str],
    ) -> None:
        html = review_page([review_card(1, content="Their support said my IP showed unusual traffic.")])
        assert detector.classify(make_attempt(content=html)).verdict == BlockVerdict.SUCCESS

    def test_unusual_traffic_403_is_soft_block(self, detector: BlockDetector) -> None:
        attempt = make_attempt(
            outcome=FetchOutcome.BLOCKED,
            content=UNUSUAL_TRAFFIC_PAGE,
            status_code=403,
            reason="status_403",
        )
        result = detector.classify(attempt)
        assert result.verdict == BlockVerdict.SOFT_BLOCK
        assert result.reason == "status_403"
        assert result.ambiguous is False

    def test_challenge_page_with_200_is_soft_block(self, detector: BlockDetector) -> None:
        result = detector.classify(make_attempt(content=CHALLENGE_PAGE))
        assert result.verdict == BlockVerdict.SOFT_BLOCK
        assert result.reason == "challenge"

    def test_rendered_challenge_without_status_is_soft_block(self, detector: BlockDetector) -> None:
        result = detector.classify(make_attempt(content=CHALLENGE_PAGE, status_code=None))
        assert result.verdict == BlockVerdict.SOFT_BLOCK
        assert result.reason == "challenge"

    def test_disallowed_status_is_soft_block(self, detector: BlockDetector) -> None:
        result = detector.classify(make_attempt(content="<html></html>", status_code=429))
        assert result.verdict == BlockVerdict.SOFT_BLOCK
        assert result.reason == "status_429"

    def test_zero_markers_is_ambiguous_soft_block(self, detector: BlockDetector) -> None:
        result = detector.classify(make_attempt(content=NO_REVIEWS_PAGE))
        assert result.verdict == BlockVerdict.SOFT_BLOCK
        assert result.reason == "no_content_markers"
        assert result.ambiguous is True

    def test_network_failure(self, detector: BlockDetector) -> None:
        attempt = make_attempt(outcome=FetchOutcome.FAILED, status_code=None, reason="network")
        result = detector.classify(attempt, prior_soft_blocks=5)
        assert result.verdict == BlockVerdict.NETWORK_FAILURE
        assert result.is_block is False

    def test_json_without_payload_is_soft_block(self, detector: BlockDetector) -> None:
        attempt = make_attempt(content="<html>oops</html>", source_kind=SourceKind.JSON)
        result = detector.classify(attempt)
        assert result.verdict == BlockVerdict.SOFT_BLOCK
        assert result.reason == "non_json"

    def test_json_with_reviews_is_success(self, detector: BlockDetector) -> None:
        attempt = make_attempt(payload={"reviews": [{"id": 1, "title": "ok"}]}, source_kind=SourceKind.JSON)
        assert detector.classify(attempt).verdict == BlockVerdict.SUCCESS

    def test_json_with_empty_list_is_ambiguous(self, detector: BlockDetector) -> None:
        attempt = make_attempt(payload={"reviews": []}, source_kind=SourceKind.JSON)
        result = detector.classify(attempt)
        assert result.verdict == BlockVerdict.SOFT_BLOCK
        assert result.ambiguous is True


# =============================================================================
# ESCALATION
# =============================================================================
class TestEscalation:
    """Soft blocks turn hard once the per-page retry budget is spent."""

    @pytest.mark.parametrize(("prior", "expected"), [(0, BlockVerdict.SOFT_BLOCK), (1, BlockVerdict.SOFT_BLOCK), (2, BlockVerdict.HARD_BLOCK)])
    def test_escalates_at_retry_budget(self, detector: BlockDetector, prior: int, expected: BlockVerdict) -> None:
        attempt = make_attempt(outcome=FetchOutcome.BLOCKED, status_code=403, reason="status_403")
        assert detector.classify(attempt, prior_soft_blocks=prior).verdict == expected

    def test_escalation_keeps_reason_and_ambiguity(self, detector: BlockDetector) -> None:
        result = detector.classify(make_attempt(content=NO_REVIEWS_PAGE), prior_soft_blocks=2)
        assert result.verdict == BlockVerdict.HARD_BLOCK
        assert result.reason == "no_content_markers"
        assert result.ambiguous is True
        assert result.is_block is True

    def test_success_never_escalates(
        self,
        detector: BlockDetector,
        review_card: Callable[..., str],
        review_page: Callable[..., str],
    ) -> None:
        attempt = make_attempt(content=review_page([review_card(1)]))
        assert detector.classify(attempt, prior_soft_blocks=10).verdict == BlockVerdict.SUCCESS
