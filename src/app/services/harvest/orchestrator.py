"""
Harvest Orchestrator - Multi-Strategy Review Harvesting

Runs the pagination controller for one product with each acquisition
strategy in turn, falling back to the next strategy when the current one is
blocked, keeps failing, or finds an empty first page.

Fallback Flow:
    static_http -> json_endpoint -> rendered_browser   (default order)

On fallback the next strategy starts at page 1, unless records were already
collected; then it resumes at the first page not yet fetched.

Design Principles:
- Only invalid input raises; every other failure ends up in the RunOutcome
- Fewer records than the quota is still a success
- Partial records and diagnostic snapshots are always kept
- One identity rotator may be shared by many concurrent targets
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import ValidationError

from ...core.config import HarvestStrategyOption
from ...schemas.review import DiagnosticSnapshot, ReviewTarget, RunOutcome
from .detector import BlockDetector
from .diagnostics import DiagnosticsStore, create_diagnostics_store
from .exceptions import ConfigurationException
from .extractor import FieldExtractor
from .identity import IdentityRotator
from .metrics import record_run
from .pagination import ControllerState, PaginationController, PaginationRun
from .strategies import STRATEGY_REGISTRY, AcquisitionStrategy

if TYPE_CHECKING:
    from ...core.config import Settings

logger = logging.getLogger(__name__)

EMPTY_FIRST_PAGE_NOTE = "first page had no reviews (no reviews, or page structure changed)"


def build_target(
    product_identifier: str,
    quota: int | None = None,
    strategy_order: Iterable[str] | None = None,
    proxy_pool_config: Iterable[str] | None = None,
    default_quota: int = 20,
) -> ReviewTarget:
    """Build a ReviewTarget from loose input.

    Raises:
        ConfigurationException: unknown strategy name or malformed value
    """
    order = None
    if strategy_order is not None:
        order = []
        for name in strategy_order:
            try:
                order.append(HarvestStrategyOption(name))
            except ValueError as e:
                raise ConfigurationException(
                    f"Unknown strategy: {name!r}",
                    field="preferred_strategy_order",
                ) from e

    try:
        return ReviewTarget(
            product_identifier=product_identifier,
            quota=default_quota if quota is None else quota,
            preferred_strategy_order=tuple(order) if order is not None else None,
            proxy_pool_config=tuple(proxy_pool_config) if proxy_pool_config is not None else None,
        )
    except ValidationError as e:
        raise ConfigurationException(f"Invalid harvest target: {e}") from e


class HarvestOrchestrator:
    """Main orchestrator for harvesting reviews of one or more products.

    Usage:
        orchestrator = HarvestOrchestrator(settings)
        outcome = await orchestrator.harvest(ReviewTarget(product_identifier="acme-crm"))
        await orchestrator.cleanup()
    """

    def __init__(
        self,
        settings: "Settings",
        rotator: IdentityRotator | None = None,
        diagnostics_store: DiagnosticsStore | None = None,
        strategies: dict[HarvestStrategyOption, AcquisitionStrategy] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Application settings
            rotator: Identity rotator shared across runs; when None each run
                builds its own from the target's proxy pool
            diagnostics_store: Where snapshots are pushed; defaults to the
                filesystem store from settings
            strategies: Strategy instances by kind; defaults to one of each
                registered strategy
        """
        self.settings = settings
        self.rotator = rotator
        self.diagnostics_store = diagnostics_store or create_diagnostics_store(settings)
        self.extractor = FieldExtractor(settings)
        self.detector = BlockDetector(settings, self.extractor)
        self.strategies = strategies or {kind: cls(settings) for kind, cls in STRATEGY_REGISTRY.items()}

        self._cancelled = False
        self._pending_writes: set[asyncio.Task] = set()

    def cancel(self) -> None:
        """Stop every run after its in-flight fetch; partial results are kept."""
        logger.info("Harvest cancellation requested")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def strategy_order(self, target: ReviewTarget) -> list[HarvestStrategyOption]:
        """Validate the target and resolve its strategy fallback order.

        Raises:
            ConfigurationException: empty product, negative quota, unknown
                or empty strategy order
        """
        if not target.product_identifier or not target.product_identifier.strip():
            raise ConfigurationException("Product identifier is required", field="product_identifier")
        if target.quota < 0:
            raise ConfigurationException(f"Quota must be >= 0, got {target.quota}", field="quota")

        requested = target.preferred_strategy_order or self.settings.HARVEST_STRATEGY_ORDER
        order: list[HarvestStrategyOption] = []
        for kind in requested:
            if kind not in self.strategies:
                raise ConfigurationException(f"Unknown strategy: {kind!r}", field="preferred_strategy_order")
            if kind not in order:
                order.append(kind)
        if not order:
            raise ConfigurationException("Strategy order is empty", field="preferred_strategy_order")
        return order

    async def harvest(self, target: ReviewTarget, rotator: IdentityRotator | None = None) -> RunOutcome:
        """Harvest up to target.quota reviews for one product.

        Args:
            target: Product, quota and optional strategy order / proxy pool
            rotator: Identity rotator to use for this run (overrides the
                orchestrator's)

        Returns:
            RunOutcome with records, success flag, reason and diagnostics

        Raises:
            ConfigurationException: invalid input, before any fetch
        """
        order = self.strategy_order(target)
        product = target.product_identifier
        run_id = uuid.uuid4().hex[:12]
        outcome = RunOutcome(product_identifier=product, success=True)

        logger.info(
            f"Harvest {run_id} starting: product={product}, quota={target.quota}, "
            f"order={[kind.value for kind in order]}"
        )

        if target.quota == 0:
            outcome.finished_at = datetime.now(UTC)
            return outcome

        rotator = rotator or self.rotator or IdentityRotator(self.settings, proxy_pool_config=target.proxy_pool_config)
        deadline = time.monotonic() + self.settings.HARVEST_RUN_DEADLINE

        def should_stop() -> bool:
            return self._cancelled or time.monotonic() >= deadline

        seen_keys: set[str] = set()
        start_page: int | None = None
        end_reasons: dict[str, str] = {}
        first_page_empty = False
        completed = False
        halted = False

        for kind in order:
            if should_stop():
                halted = True
                break

            if outcome.strategies_attempted:
                logger.info(f"Harvest {run_id} falling back to {kind.value} (start_page={start_page})")
            outcome.strategies_attempted.append(kind)

            controller = PaginationController(
                strategy=self.strategies[kind],
                detector=self.detector,
                extractor=self.extractor,
                rotator=rotator,
                settings=self.settings,
                run_id=run_id,
                should_stop=should_stop,
            )
            run = await controller.run(
                target,
                quota=target.quota - len(outcome.records),
                start_page=start_page,
                seen_keys=seen_keys,
            )
            self._merge(outcome, run)
            end_reasons[kind.value] = run.end_reason or run.state.value
            first_page_empty = first_page_empty or run.first_page_empty

            if run.end_reason == "stopped":
                halted = True
                break
            if run.state == ControllerState.DONE and run.end_reason != "empty_first_page":
                completed = True
                break

            if outcome.records:
                start_page = run.resume_page

        outcome.finished_at = datetime.now(UTC)

        if halted:
            outcome.success = False
            cause = "cancelled" if self._cancelled else f"deadline of {self.settings.HARVEST_RUN_DEADLINE}s exceeded"
            outcome.reason = f"Harvest {cause}; returning {len(outcome.records)} partial reviews"
        elif not completed and not outcome.records:
            outcome.success = False
            details = ", ".join(f"{name}={reason}" for name, reason in end_reasons.items())
            outcome.reason = f"All strategies exhausted without reviews ({details})"
            if first_page_empty:
                outcome.reason += f"; {EMPTY_FIRST_PAGE_NOTE}"

        record_run(outcome.success, len(outcome.records), len(outcome.strategies_attempted))
        log = logger.info if outcome.success else logger.warning
        log(
            f"Harvest {run_id} finished: product={product}, success={outcome.success}, "
            f"records={len(outcome.records)}/{target.quota}, pages={outcome.pages_fetched}, "
            f"retries={outcome.retries}, diagnostics={len(outcome.diagnostics)}, reason={outcome.reason}"
        )
        return outcome

    async def harvest_many(
        self,
        targets: Sequence[ReviewTarget],
        concurrency: int | None = None,
    ) -> list[RunOutcome]:
        """Harvest several products concurrently.

        Targets without their own proxy pool share one identity rotator.
        Outcomes are returned in target order.

        Raises:
            ConfigurationException: any target is invalid (checked up front)
        """
        for target in targets:
            self.strategy_order(target)

        limit = max(1, concurrency or self.settings.HARVEST_MAX_CONCURRENCY)
        semaphore = asyncio.Semaphore(limit)
        shared_rotator = self.rotator or IdentityRotator(self.settings)

        async def run_one(target: ReviewTarget) -> RunOutcome:
            async with semaphore:
                rotator = shared_rotator
                if target.proxy_pool_config:
                    rotator = IdentityRotator(self.settings, proxy_pool_config=target.proxy_pool_config)
                return await self.harvest(target, rotator=rotator)

        logger.info(f"Harvesting {len(targets)} products (concurrency={limit})")
        return list(await asyncio.gather(*(run_one(target) for target in targets)))

    def _merge(self, outcome: RunOutcome, run: PaginationRun) -> None:
        outcome.records.extend(run.records)
        outcome.pages_fetched += run.pages_fetched
        outcome.retries += run.retries
        if run.records:
            outcome.strategy_used = run.strategy
        for snapshot in run.diagnostics:
            outcome.diagnostics.append(snapshot)
            self._publish(snapshot)

    def _publish(self, snapshot: DiagnosticSnapshot) -> None:
        """Hand a snapshot to the diagnostics store without waiting for it."""
        task = asyncio.create_task(asyncio.to_thread(self.diagnostics_store.save, snapshot))
        self._pending_writes.add(task)
        task.add_done_callback(self._on_write_done)

    def _on_write_done(self, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Diagnostic snapshot write failed: {task.exception()}")

    async def cleanup(self) -> None:
        """Flush pending diagnostic writes and release strategy resources."""
        logger.info("HarvestOrchestrator cleanup starting...")

        if self._pending_writes:
            await asyncio.gather(*self._pending_writes, return_exceptions=True)

        for strategy in self.strategies.values():
            try:
                await strategy.cleanup()
            except Exception as e:
                logger.error(f"Error cleaning up {strategy.name}: {e}")

        logger.info("HarvestOrchestrator cleanup complete")


# ============================================
# Convenience Function for Direct Use
# ============================================


async def harvest_reviews(
    product_identifier: str,
    settings: "Settings",
    quota: int | None = None,
    strategy_order: Iterable[str] | None = None,
    proxy_pool_config: Iterable[str] | None = None,
) -> RunOutcome:
    """Convenience function for a one-off harvest.

    Creates an orchestrator, runs the harvest, and cleans up.

    Args:
        product_identifier: Product slug, e.g. "acme-crm"
        settings: Application settings
        quota: Maximum reviews; defaults to HARVEST_DEFAULT_QUOTA
        strategy_order: Strategy names in fallback order
        proxy_pool_config: Proxy URLs for identity provisioning

    Returns:
        RunOutcome of the run
    """
    target = build_target(
        product_identifier,
        quota=quota,
        strategy_order=strategy_order,
        proxy_pool_config=proxy_pool_config,
        default_quota=settings.HARVEST_DEFAULT_QUOTA,
    )
    orchestrator = HarvestOrchestrator(settings)
    try:
        return await orchestrator.harvest(target)
    finally:
        await orchestrator.cleanup()
