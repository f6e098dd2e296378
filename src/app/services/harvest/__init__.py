# ============================================
# HARVEST - Resilient Multi-Strategy Review Harvester
# ============================================
#
# Collects product reviews from a review site that actively resists
# automation, falling back between acquisition strategies when blocked.
#
# Pipeline:
#   Orchestrator -> Pagination Controller -> Strategy.fetch()
#                -> Block Detector -> Field Extractor -> RunOutcome
#
# Strategies (default fallback order):
#   static_http:      curl_cffi document fetch
#   json_endpoint:    curl_cffi call to the site's JSON endpoint
#   rendered_browser: Botasaurus rendered page
# ============================================

from .detector import BlockDetector, BlockVerdict, Classification
from .diagnostics import DiagnosticsStore, FilesystemDiagnosticsStore, NullDiagnosticsStore
from .exceptions import (
    BrowserCrashException,
    ConfigurationException,
    ExtractionMismatchException,
    HardBlockException,
    HarvestException,
    IdentityPoolExhaustedException,
    NetworkFailureException,
    SoftBlockException,
)
from .extractor import FieldExtractor, SourceKind
from .identity import FingerprintProfile, Identity, IdentityRotator
from .orchestrator import HarvestOrchestrator, build_target, harvest_reviews
from .pagination import ControllerState, PageResult, PaginationController, PaginationRun
from .strategies import (
    STRATEGY_REGISTRY,
    AcquisitionStrategy,
    FetchAttempt,
    FetchOutcome,
    JsonEndpointStrategy,
    RenderedBrowserStrategy,
    StaticHttpStrategy,
)

__all__ = [
    # Orchestrator
    "HarvestOrchestrator",
    "harvest_reviews",
    "build_target",
    # Engine parts
    "PaginationController",
    "PaginationRun",
    "PageResult",
    "ControllerState",
    "BlockDetector",
    "BlockVerdict",
    "Classification",
    "FieldExtractor",
    "SourceKind",
    "IdentityRotator",
    "Identity",
    "FingerprintProfile",
    # Strategies
    "AcquisitionStrategy",
    "FetchAttempt",
    "FetchOutcome",
    "StaticHttpStrategy",
    "JsonEndpointStrategy",
    "RenderedBrowserStrategy",
    "STRATEGY_REGISTRY",
    # Diagnostics
    "DiagnosticsStore",
    "FilesystemDiagnosticsStore",
    "NullDiagnosticsStore",
    # Exceptions
    "HarvestException",
    "ConfigurationException",
    "NetworkFailureException",
    "SoftBlockException",
    "HardBlockException",
    "BrowserCrashException",
    "ExtractionMismatchException",
    "IdentityPoolExhaustedException",
]
