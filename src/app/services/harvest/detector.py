"""
Block Detector

Classifies one FetchAttempt as SUCCESS, SOFT_BLOCK, HARD_BLOCK or
NETWORK_FAILURE. Classification is pure: it reads the attempt and the
number of soft blocks already seen for this page, nothing else.

Rules, in order:
1. Network failure (no response)             -> NETWORK_FAILURE
2. Strategy-reported block, disallowed status,
   or non-JSON body from the JSON strategy    -> SOFT_BLOCK
3. Page carries no content markers and its
   body matches a block signature             -> SOFT_BLOCK
4. Page loaded but carries zero content
   markers and no signature                   -> SOFT_BLOCK (ambiguous)
5. Any SOFT_BLOCK once prior soft blocks for
   the page reach HARVEST_SOFT_BLOCK_RETRIES  -> HARD_BLOCK

An ambiguous soft block may mean "blocked" or "no reviews / layout changed";
the pagination controller decides which reading applies.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .extractor import FieldExtractor, SourceKind
from .strategies.base import FetchAttempt, FetchOutcome
from .utils import detect_block_signature, is_allowed_status

if TYPE_CHECKING:
    from ...core.config import Settings

logger = logging.getLogger(__name__)


class BlockVerdict(str, Enum):
    SUCCESS = "success"
    SOFT_BLOCK = "soft_block"
    HARD_BLOCK = "hard_block"
    NETWORK_FAILURE = "network_failure"


@dataclass(frozen=True)
class Classification:
    verdict: BlockVerdict
    reason: str | None = None
    ambiguous: bool = False

    @property
    def is_block(self) -> bool:
        return self.verdict in (BlockVerdict.SOFT_BLOCK, BlockVerdict.HARD_BLOCK)


class BlockDetector:
    """
    Decides whether a fetched page is usable.

    Usage:
        detector = BlockDetector(settings)
        result = detector.classify(attempt, prior_soft_blocks=1)
        if result.verdict == BlockVerdict.HARD_BLOCK:
            ...
    """

    def __init__(self, settings: "Settings", extractor: FieldExtractor | None = None) -> None:
        self.settings = settings
        self.extractor = extractor or FieldExtractor(settings)
        self.soft_block_retries = settings.HARVEST_SOFT_BLOCK_RETRIES

    def classify(self, attempt: FetchAttempt, prior_soft_blocks: int = 0) -> Classification:
        if attempt.outcome == FetchOutcome.FAILED:
            return Classification(BlockVerdict.NETWORK_FAILURE, reason=attempt.reason or "network")

        result = self._classify_response(attempt)
        if result.verdict == BlockVerdict.SOFT_BLOCK and prior_soft_blocks >= self.soft_block_retries:
            logger.info(
                f"Escalating soft block to hard block: strategy={attempt.strategy.value}, "
                f"page={attempt.page_token}, reason={result.reason}, prior={prior_soft_blocks}"
            )
            return Classification(BlockVerdict.HARD_BLOCK, reason=result.reason, ambiguous=result.ambiguous)
        return result

    def _classify_response(self, attempt: FetchAttempt) -> Classification:
        if attempt.outcome == FetchOutcome.BLOCKED:
            return Classification(BlockVerdict.SOFT_BLOCK, reason=attempt.reason or "blocked")

        if not is_allowed_status(attempt.status_code, self.settings):
            return Classification(BlockVerdict.SOFT_BLOCK, reason=f"status_{attempt.status_code}")

        if attempt.source_kind == SourceKind.JSON and attempt.payload is None:
            return Classification(BlockVerdict.SOFT_BLOCK, reason="non_json")

        if self.extractor.has_content_markers(attempt.raw_document, attempt.source_kind):
            return Classification(BlockVerdict.SUCCESS)

        # Review text can quote block phrases, so signatures only count on marker-less pages
        if attempt.source_kind == SourceKind.MARKUP:
            signature = detect_block_signature(attempt.content)
            if signature:
                return Classification(BlockVerdict.SOFT_BLOCK, reason=signature)

        return Classification(BlockVerdict.SOFT_BLOCK, reason="no_content_markers", ambiguous=True)
