"""
Pagination Controller

Drives one acquisition strategy across consecutive pages of one product,
classifying every fetch and deciding whether to extract, retry, advance,
finish or give up.

State machine:

    START -> FETCH
    FETCH -> EXTRACT     on SUCCESS
    FETCH -> FETCH       on SOFT_BLOCK (same page, new identity)
    FETCH -> FETCH       on NETWORK_FAILURE (fresh identity, bounded)
    FETCH -> FETCH       on HARD_BLOCK while the hard-block budget lasts
    FETCH -> ABORTED     on HARD_BLOCK past the budget, or network retries spent
    FETCH -> DONE        on an ambiguous "no content" page after the first
    EXTRACT -> DONE      quota reached, no more pages, or zero records with no
                         signal that more pages follow
    EXTRACT -> ADVANCE   records found (or more pages signalled)
    ADVANCE -> FETCH     next page, after a humanization delay
    ADVANCE -> DONE      page cap reached

A stop predicate (cancellation / deadline) is checked before every fetch and
ends the run as ABORTED.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ...schemas.review import CanonicalReview, DiagnosticSnapshot
from .detector import BlockDetector, BlockVerdict
from .diagnostics import BLOCKED_PAGE, EMPTY_PAGE, FAILED_PAGE, build_snapshot
from .exceptions import (
    HardBlockException,
    HarvestException,
    IdentityPoolExhaustedException,
    NetworkFailureException,
)
from .extractor import FieldExtractor
from .metrics import log_fetch_attempt
from .utils import backoff_delay, humanized_delay

if TYPE_CHECKING:
    from ...core.config import HarvestStrategyOption, Settings
    from ...schemas.review import ReviewTarget
    from .identity import Identity, IdentityRotator
    from .strategies.base import AcquisitionStrategy, FetchAttempt

logger = logging.getLogger(__name__)

# Poll interval while every identity is leased to another target
IDENTITY_WAIT_INTERVAL = 0.25


class ControllerState(str, Enum):
    START = "start"
    FETCH = "fetch"
    EXTRACT = "extract"
    ADVANCE = "advance"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class PageResult:
    """Records kept from one successfully fetched page."""

    page_token: int
    strategy: "HarvestStrategyOption"
    records: list[CanonicalReview] = field(default_factory=list)
    has_more: bool | None = None


@dataclass
class PaginationRun:
    """What one strategy achieved for one product."""

    strategy: "HarvestStrategyOption"
    state: ControllerState = ControllerState.START
    records: list[CanonicalReview] = field(default_factory=list)
    pages: list[PageResult] = field(default_factory=list)
    diagnostics: list[DiagnosticSnapshot] = field(default_factory=list)
    pages_fetched: int = 0
    retries: int = 0
    last_page: int | None = None
    resume_page: int | None = None
    first_page_empty: bool = False
    end_reason: str | None = None
    abort_error: HarvestException | None = None

    @property
    def aborted(self) -> bool:
        return self.state == ControllerState.ABORTED


class PaginationController:
    """
    Runs one strategy page by page until quota, exhaustion or abort.

    Usage:
        controller = PaginationController(strategy, detector, extractor, rotator, settings)
        run = await controller.run(target, quota=20)
    """

    def __init__(
        self,
        strategy: "AcquisitionStrategy",
        detector: BlockDetector,
        extractor: FieldExtractor,
        rotator: "IdentityRotator",
        settings: "Settings",
        run_id: str = "",
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self.strategy = strategy
        self.detector = detector
        self.extractor = extractor
        self.rotator = rotator
        self.settings = settings
        self.run_id = run_id
        self.should_stop = should_stop or (lambda: False)

        self.network_retries = settings.HARVEST_NETWORK_RETRIES
        self.hard_block_budget = max(1, settings.HARVEST_HARD_BLOCK_BUDGET)
        self.max_pages = settings.HARVEST_MAX_PAGES

    async def run(
        self,
        target: "ReviewTarget",
        quota: int,
        start_page: int | None = None,
        seen_keys: set[str] | None = None,
    ) -> PaginationRun:
        """
        Harvest up to `quota` new records with this controller's strategy.

        Args:
            target: Product being harvested
            quota: Records still wanted (already-collected ones excluded)
            start_page: Page to begin at; defaults to the strategy's first page
            seen_keys: Dedupe keys of records collected earlier in the run;
                updated in place

        Returns:
            PaginationRun in state DONE or ABORTED
        """
        run = PaginationRun(strategy=self.strategy.KIND)
        seen = seen_keys if seen_keys is not None else set()
        first_page = self.strategy.first_page_token()
        page = start_page if start_page is not None else first_page
        product = target.product_identifier

        if quota <= 0:
            return self._finish(run, ControllerState.DONE, "quota_reached")

        run.state = ControllerState.FETCH
        soft_blocks = 0
        hard_blocks = 0
        network_failures = 0
        attempt: "FetchAttempt | None" = None
        attempt_log: dict = {}

        while run.state not in (ControllerState.DONE, ControllerState.ABORTED):
            if run.state == ControllerState.FETCH:
                run.resume_page = page
                if self.should_stop():
                    self._finish(run, ControllerState.ABORTED, "stopped")
                    break

                try:
                    identity = await self._acquire_identity()
                except IdentityPoolExhaustedException as e:
                    run.abort_error = e
                    self._finish(run, ControllerState.ABORTED, "identity_pool_exhausted")
                    break

                attempt = await self.strategy.fetch(target, page, identity)
                classification = self.detector.classify(attempt, prior_soft_blocks=soft_blocks)
                is_first = page == first_page

                attempt_log = dict(
                    run_id=self.run_id,
                    product=product,
                    strategy=self.strategy.name,
                    page=page,
                    verdict=classification.verdict.value,
                    execution_time_ms=attempt.execution_time_ms,
                    reason=classification.reason,
                    status_code=attempt.status_code,
                    identity=identity.session_handle,
                )

                if classification.verdict == BlockVerdict.SUCCESS:
                    # Logged after extraction with the kept-record count
                    self.rotator.release(identity)
                    run.pages_fetched += 1
                    run.last_page = page
                    soft_blocks = hard_blocks = network_failures = 0
                    run.state = ControllerState.EXTRACT
                    continue

                log_fetch_attempt(**attempt_log)

                if classification.verdict == BlockVerdict.NETWORK_FAILURE:
                    self.rotator.retire(identity, reason=classification.reason)
                    network_failures += 1
                    if network_failures > self.network_retries:
                        run.diagnostics.append(build_snapshot(FAILED_PAGE, product, attempt))
                        run.abort_error = NetworkFailureException(
                            attempt.error or "Network failure",
                            url=attempt.url,
                        )
                        self._finish(run, ControllerState.ABORTED, "network_failure")
                        break
                    run.retries += 1
                    await asyncio.sleep(backoff_delay(network_failures, self.settings))
                    continue

                # SOFT_BLOCK / HARD_BLOCK
                if classification.ambiguous and not is_first:
                    # Marker-less page past the first: the listing ran out
                    self.rotator.release(identity)
                    self._finish(run, ControllerState.DONE, "exhausted")
                    break

                self.rotator.retire(identity, reason=classification.reason)

                if classification.verdict == BlockVerdict.SOFT_BLOCK:
                    soft_blocks += 1
                    run.retries += 1
                    await asyncio.sleep(backoff_delay(soft_blocks, self.settings))
                    continue

                hard_blocks += 1
                if hard_blocks >= self.hard_block_budget:
                    if classification.ambiguous:
                        run.first_page_empty = True
                        run.diagnostics.append(build_snapshot(EMPTY_PAGE, product, attempt, classification.reason))
                    else:
                        run.diagnostics.append(build_snapshot(BLOCKED_PAGE, product, attempt, classification.reason))
                    run.abort_error = HardBlockException(
                        f"{self.strategy.name} hard-blocked",
                        url=attempt.url,
                        status_code=attempt.status_code,
                        reason=classification.reason,
                        content=attempt.content,
                    )
                    self._finish(run, ControllerState.ABORTED, "hard_blocked")
                    break

                soft_blocks = 0
                run.retries += 1
                await asyncio.sleep(backoff_delay(hard_blocks, self.settings))
                continue

            if run.state == ControllerState.EXTRACT:
                found, page_result = self._extract_page(attempt, quota - len(run.records), seen)
                run.pages.append(page_result)
                run.records.extend(page_result.records)
                added = len(page_result.records)
                log_fetch_attempt(**attempt_log, records=added)
                logger.info(
                    f"{self.strategy.name} {product} p{page}: {found} reviews found, "
                    f"{added} kept ({len(run.records)}/{quota})"
                )

                if len(run.records) >= quota:
                    self._finish(run, ControllerState.DONE, "quota_reached")
                elif found == 0 and page == first_page:
                    run.first_page_empty = True
                    run.diagnostics.append(build_snapshot(EMPTY_PAGE, product, attempt, "no_records"))
                    self._finish(run, ControllerState.DONE, "empty_first_page")
                elif found == 0 and not self._signals_more(page, attempt):
                    self._finish(run, ControllerState.DONE, "exhausted")
                elif attempt.has_more is False or (attempt.total_pages is not None and page >= attempt.total_pages):
                    self._finish(run, ControllerState.DONE, "no_more_pages")
                else:
                    run.state = ControllerState.ADVANCE
                continue

            if run.state == ControllerState.ADVANCE:
                next_page = self.strategy.next_page_token(page, attempt)
                if next_page > self.max_pages:
                    run.resume_page = next_page
                    self._finish(run, ControllerState.DONE, "page_cap")
                    break
                await asyncio.sleep(humanized_delay(self.settings))
                page = next_page
                run.state = ControllerState.FETCH

        return run

    def _extract_page(
        self,
        attempt: "FetchAttempt",
        remaining: int,
        seen: set[str],
    ) -> tuple[int, PageResult]:
        """Keep up to `remaining` unseen records of a page. Returns (found, page)."""
        page = PageResult(page_token=attempt.page_token, strategy=attempt.strategy, has_more=attempt.has_more)
        found = 0
        for review in self.extractor.extract(attempt.raw_document, attempt.source_kind):
            found += 1
            if len(page.records) >= remaining:
                continue
            key = review.dedupe_key()
            if key is not None:
                if key in seen:
                    continue
                seen.add(key)
            page.records.append(review)
        return found, page

    @staticmethod
    def _signals_more(page: int, attempt: "FetchAttempt") -> bool:
        """True if the payload says pages remain after `page`."""
        if attempt.has_more is True:
            return True
        return attempt.total_pages is not None and page < attempt.total_pages

    async def _acquire_identity(self) -> "Identity":
        """Lease an identity, waiting while all are leased to other targets."""
        deadline = time.monotonic() + self.settings.HARVEST_REQUEST_TIMEOUT
        while True:
            try:
                return self.rotator.acquire()
            except IdentityPoolExhaustedException:
                if time.monotonic() >= deadline or self.should_stop():
                    raise
                await asyncio.sleep(IDENTITY_WAIT_INTERVAL)

    def _finish(self, run: PaginationRun, state: ControllerState, reason: str) -> PaginationRun:
        run.state = state
        run.end_reason = reason
        log = logger.warning if state == ControllerState.ABORTED else logger.info
        log(
            f"{self.strategy.name} finished: state={state.value}, reason={reason}, "
            f"records={len(run.records)}, pages={run.pages_fetched}, retries={run.retries}"
        )
        return run
