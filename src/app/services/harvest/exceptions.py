"""Review Harvester Custom Exceptions.

Hierarchy:
    HarvestException (base)
    ├── ConfigurationException        - Missing/invalid run input (fatal, before any fetch)
    ├── NetworkFailureException       - Connection error or timeout during a fetch
    ├── SoftBlockException            - Recognized anti-automation response
    ├── HardBlockException            - Repeated soft blocks, strategy no longer viable
    ├── BrowserCrashException         - Browser process died or could not start
    ├── ExtractionMismatchException   - No review selector family matched the page
    └── IdentityPoolExhaustedException - Every identity is busy and the pool is full

Only ConfigurationException escapes a run. The others are raised at the
engine seams and turned into FetchAttempt outcomes or zero-record pages.
"""


class HarvestException(Exception):
    """Base exception for all harvester errors."""

    def __init__(self, message: str, url: str | None = None) -> None:
        self.message = message
        self.url = url
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.url:
            return f"{self.message} (URL: {self.url})"
        return self.message


class ConfigurationException(HarvestException):
    """Raised when the run input is missing or invalid.

    Examples: empty product identifier, negative quota, unknown strategy name.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def __str__(self) -> str:
        if self.field:
            return f"{self.message} (field={self.field})"
        return self.message


class NetworkFailureException(HarvestException):
    """Raised when a fetch fails before any response arrived.

    Retried with a fresh identity, bounded by HARVEST_NETWORK_RETRIES.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        super().__init__(message, url)
        self.timeout_seconds = timeout_seconds

    def __str__(self) -> str:
        parts = [self.message]
        if self.timeout_seconds:
            parts.append(f"timeout={self.timeout_seconds}s")
        if self.url:
            parts.append(f"url={self.url}")
        return " | ".join(parts)


class SoftBlockException(HarvestException):
    """Raised when the target rejected or challenged the current identity.

    Common triggers: HTTP 403/429, challenge interstitial, "unusual traffic" page.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
        reason: str | None = None,
        content: str | None = None,
    ) -> None:
        super().__init__(message, url)
        self.status_code = status_code
        self.reason = reason  # e.g. "status_403", "bot_detected", "challenge"
        self.content = content  # Raw response body (for diagnostics)

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code:
            parts.append(f"status={self.status_code}")
        if self.reason:
            parts.append(f"reason={self.reason}")
        if self.url:
            parts.append(f"url={self.url}")
        return " | ".join(parts)


class HardBlockException(SoftBlockException):
    """Raised when soft blocks kept coming back past the retry budget."""


class BrowserCrashException(HarvestException):
    """Raised when the browser process crashes or never starts."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, url)
        self.exit_code = exit_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.exit_code is not None:
            return f"{base} (exit_code={self.exit_code})"
        return base


class ExtractionMismatchException(HarvestException):
    """Raised when none of the review selector families matched the document."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        source_kind: str | None = None,
    ) -> None:
        super().__init__(message, url)
        self.source_kind = source_kind

    def __str__(self) -> str:
        base = super().__str__()
        if self.source_kind:
            return f"{base} (source_kind={self.source_kind})"
        return base


class IdentityPoolExhaustedException(HarvestException):
    """Raised when acquire() finds no idle identity and no spare capacity."""

    def __init__(self, message: str, pool_size: int | None = None) -> None:
        super().__init__(message)
        self.pool_size = pool_size

    def __str__(self) -> str:
        if self.pool_size is not None:
            return f"{self.message} (pool_size={self.pool_size})"
        return self.message
