"""
Diagnostic snapshots of blocked, empty and failed pages.

Snapshots are returned in the RunOutcome and also handed to a
DiagnosticsStore. Stores never raise: a failed write is logged and dropped.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ...schemas.review import DiagnosticSnapshot
from .extractor import SourceKind

if TYPE_CHECKING:
    from ...core.config import Settings
    from .strategies.base import FetchAttempt

logger = logging.getLogger(__name__)

BLOCKED_PAGE = "BLOCKED_PAGE"
EMPTY_PAGE = "EMPTY_PAGE"
FAILED_PAGE = "FAILED_PAGE"


def snapshot_key(kind: str, product: str, strategy: str, page: int) -> str:
    return f"{kind}_{product}_{strategy}_p{page}"


def build_snapshot(kind: str, product: str, attempt: "FetchAttempt", reason: str | None = None) -> DiagnosticSnapshot:
    """Capture the raw body of an attempt under a deterministic key."""
    strategy = attempt.strategy.value
    return DiagnosticSnapshot(
        key=snapshot_key(kind, product, strategy, attempt.page_token),
        kind=kind,
        product_identifier=product,
        strategy=attempt.strategy,
        page=attempt.page_token,
        reason=reason or attempt.reason or attempt.error,
        status_code=attempt.status_code,
        content=attempt.content,
        content_type=attempt.content_type or ("application/json" if attempt.source_kind == SourceKind.JSON else None),
    )


class DiagnosticsStore(Protocol):
    def save(self, snapshot: DiagnosticSnapshot) -> None: ...


class NullDiagnosticsStore:
    def save(self, snapshot: DiagnosticSnapshot) -> None:
        logger.debug(f"Diagnostics disabled, dropping snapshot {snapshot.key}")


class FilesystemDiagnosticsStore:
    """Writes each snapshot body to <directory>/<key>.html or <key>.json,
    with a <key>.meta.json sidecar describing it."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def save(self, snapshot: DiagnosticSnapshot) -> None:
        suffix = ".json" if snapshot.content_type and "json" in snapshot.content_type.lower() else ".html"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            (self.directory / f"{snapshot.key}{suffix}").write_text(snapshot.content or "", encoding="utf-8")
            meta = snapshot.model_dump(mode="json", exclude={"content"})
            (self.directory / f"{snapshot.key}.meta.json").write_text(json.dumps(meta, indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to write diagnostic snapshot {snapshot.key}: {e}")
            return
        logger.info(f"Diagnostic snapshot saved: {snapshot.key}{suffix}")


def create_diagnostics_store(settings: "Settings") -> DiagnosticsStore:
    if not settings.HARVEST_DIAGNOSTICS_ENABLED:
        return NullDiagnosticsStore()
    return FilesystemDiagnosticsStore(settings.HARVEST_DIAGNOSTICS_DIR)
