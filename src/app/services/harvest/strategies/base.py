"""
Acquisition Strategies - Base Class

Defines the fetch contract shared by every acquisition strategy so the
pagination controller can swap between them transparently.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ....core.config import HarvestStrategyOption
from ..extractor import SourceKind

if TYPE_CHECKING:
    from ....core.config import Settings
    from ....schemas.review import ReviewTarget
    from ..identity import Identity


class FetchOutcome(str, Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass
class FetchAttempt:
    """
    Result of one fetch by one strategy with one identity.

    All strategies return this structure. It is classified by the block
    detector and discarded afterwards.
    """

    strategy: HarvestStrategyOption
    page_token: int
    identity: "Identity | None"
    outcome: FetchOutcome
    source_kind: SourceKind = SourceKind.MARKUP

    # Raw body (markup, or the JSON text) and the parsed JSON payload
    content: str | None = None
    payload: Any = None
    status_code: int | None = None
    content_type: str | None = None
    url: str | None = None

    # Populated on BLOCKED / FAILED
    reason: str | None = None
    error: str | None = None

    # Pagination signals; None means the page said nothing either way
    has_more: bool | None = None
    next_page_token: int | None = None
    total_pages: int | None = None

    execution_time_ms: float = 0.0

    @property
    def raw_document(self) -> Any:
        """What the field extractor consumes for this attempt."""
        if self.source_kind == SourceKind.JSON:
            return self.payload
        return self.content


class AcquisitionStrategy(ABC):
    """
    Abstract base class for acquisition strategies.

    Design Principles:
    - fetch() never raises for network, status or block problems; it returns
      a FetchAttempt with outcome FAILED or BLOCKED instead
    - each strategy owns its request shape (URL, headers, waits)
    - pages are addressed by page number, starting at 1
    """

    KIND: HarvestStrategyOption = HarvestStrategyOption.STATIC_HTTP
    SOURCE_KIND: SourceKind = SourceKind.MARKUP

    def __init__(self, settings: "Settings") -> None:
        self.settings = settings

    @property
    def name(self) -> str:
        return self.KIND.value

    @abstractmethod
    async def fetch(
        self,
        target: "ReviewTarget",
        page_token: int,
        identity: "Identity",
    ) -> FetchAttempt:
        """
        Fetch one page of reviews for the target.

        Args:
            target: Product and quota of the run
            page_token: Page number to fetch (1-based)
            identity: Leased identity (proxy + fingerprint) for this attempt

        Returns:
            FetchAttempt with outcome SUCCESS, BLOCKED or FAILED
        """
        raise NotImplementedError

    async def cleanup(self) -> None:
        """Release resources held by this strategy (no-op by default)."""
        return None

    def first_page_token(self) -> int:
        return 1

    def next_page_token(self, current: int, attempt: FetchAttempt | None = None) -> int:
        """Token of the page after `current`, preferring the page's own signal."""
        if attempt is not None and attempt.next_page_token and attempt.next_page_token > current:
            return attempt.next_page_token
        return current + 1

    def _attempt(
        self,
        page_token: int,
        identity: "Identity | None",
        outcome: FetchOutcome,
        **kwargs: Any,
    ) -> FetchAttempt:
        return FetchAttempt(
            strategy=self.KIND,
            page_token=page_token,
            identity=identity,
            outcome=outcome,
            source_kind=self.SOURCE_KIND,
            **kwargs,
        )
