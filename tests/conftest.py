from collections.abc import Callable
from typing import Any

import pytest

from src.app.core.config import HarvestStrategyOption, Settings
from src.app.schemas.review import ReviewTarget
from src.app.services.harvest.extractor import SourceKind
from src.app.services.harvest.metrics import HarvestMetrics
from tests.helpers import ScriptedStrategy, render_review_card, render_review_page


@pytest.fixture
def harvest_settings(tmp_path) -> Settings:
    """Settings with humanization delays off and diagnostics in a temp dir."""
    return Settings(
        HARVEST_MIN_DELAY=0.0,
        HARVEST_MAX_DELAY=0.0,
        HARVEST_SOFT_BLOCK_RETRIES=2,
        HARVEST_HARD_BLOCK_BUDGET=1,
        HARVEST_NETWORK_RETRIES=2,
        HARVEST_IDENTITY_POOL_SIZE=4,
        HARVEST_IDENTITY_MAX_USES=25,
        HARVEST_RUN_DEADLINE=60,
        HARVEST_DIAGNOSTICS_ENABLED=True,
        HARVEST_DIAGNOSTICS_DIR=str(tmp_path / "diagnostics"),
        HARVEST_PROXY_URLS=[],
        HARVEST_PROXY_URL=None,
    )


@pytest.fixture
def acme_target() -> ReviewTarget:
    return ReviewTarget(product_identifier="acme-crm", quota=5)


@pytest.fixture
def review_card() -> Callable[..., str]:
    return render_review_card


@pytest.fixture
def review_page() -> Callable[..., str]:
    return render_review_page


@pytest.fixture
def scripted_strategy(harvest_settings: Settings) -> Callable[..., ScriptedStrategy]:
    def factory(
        kind: HarvestStrategyOption,
        script: dict[int, list[dict[str, Any]]],
        source_kind: SourceKind = SourceKind.MARKUP,
    ) -> ScriptedStrategy:
        return ScriptedStrategy(harvest_settings, kind, script, source_kind)

    return factory


@pytest.fixture(autouse=True)
def reset_metrics():
    HarvestMetrics.reset()
    yield
    HarvestMetrics.reset()
