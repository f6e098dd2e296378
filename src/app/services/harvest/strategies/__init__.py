# ============================================
# Acquisition Strategies
# ============================================
#
# Interchangeable ways of fetching one page of reviews:
#   static_http:      curl_cffi document fetch (fast, no JS)
#   json_endpoint:    curl_cffi call to the site's JSON endpoint
#   rendered_browser: Botasaurus browser, rendered HTML (slow, most capable)
#
# The default fallback order is the order above.
# ============================================

from ....core.config import HarvestStrategyOption
from .base import AcquisitionStrategy, FetchAttempt, FetchOutcome
from .json_endpoint import JsonEndpointStrategy
from .rendered_browser import RenderedBrowserStrategy
from .static_http import StaticHttpStrategy

STRATEGY_REGISTRY: dict[HarvestStrategyOption, type[AcquisitionStrategy]] = {
    HarvestStrategyOption.STATIC_HTTP: StaticHttpStrategy,
    HarvestStrategyOption.JSON_ENDPOINT: JsonEndpointStrategy,
    HarvestStrategyOption.RENDERED_BROWSER: RenderedBrowserStrategy,
}

__all__ = [
    "AcquisitionStrategy",
    "FetchAttempt",
    "FetchOutcome",
    "JsonEndpointStrategy",
    "RenderedBrowserStrategy",
    "STRATEGY_REGISTRY",
    "StaticHttpStrategy",
]
