"""
Rendered Browser Strategy

Drives a real browser (Botasaurus @browser) to the review page, waits for
review content or a pagination marker to appear, optionally scrolls to
trigger lazy loading, and returns the rendered HTML.

Botasaurus is synchronous, so each fetch runs in a small thread pool and is
bounded by HARVEST_BROWSER_TIMEOUT on the event-loop side.

Best Practices Applied (from Botasaurus docs):
- user_agent taken from the leased identity, so one identity keeps one UA
- profile=<identity session handle> + tiny_profile=True: cookies survive
  across pages of the same identity and are discarded with it
- wait_for_complete_page_load=False: wait_for_element() decides readiness
- block_images: review text needs no images
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import TYPE_CHECKING, Any, cast

from ....core.config import HarvestStrategyOption
from ..exceptions import BrowserCrashException, NetworkFailureException
from ..extractor import (
    CONTENT_MARKER_SELECTOR,
    PAGINATION_MARKER_SELECTOR,
    SourceKind,
    markup_pagination_signal,
)
from ..utils import build_site_url, mask_proxy, sanitize_url
from .base import AcquisitionStrategy, FetchAttempt, FetchOutcome

if TYPE_CHECKING:
    from ....core.config import Settings
    from ....schemas.review import ReviewTarget
    from ..identity import Identity

logger = logging.getLogger(__name__)

# Thread pool for browser operations
_browser_executor: ThreadPoolExecutor | None = None

CRASH_INDICATORS = ["crash", "died", "killed", "terminated", "failed to start", "disconnected"]
NETWORK_INDICATORS = ["no such host", "name not resolved", "err_name_not_resolved", "connection refused", "timed out"]


def get_browser_executor(max_workers: int = 2) -> ThreadPoolExecutor:
    """Get or create thread pool for browser operations."""
    global _browser_executor
    if _browser_executor is None:
        # Limited workers - full browsers are memory intensive
        _browser_executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="harvest_browser")
    return _browser_executor


def shutdown_browser_executor() -> None:
    global _browser_executor
    if _browser_executor is not None:
        _browser_executor.shutdown(wait=False, cancel_futures=True)
        _browser_executor = None


def _sync_rendered_fetch(
    url: str,
    user_agent: str,
    profile_id: str,
    proxy: str | None,
    headless: bool,
    block_images: bool,
    wait_selector: str,
    wait_timeout: int,
    scroll: bool,
    use_google_get: bool,
) -> dict[str, Any]:
    """Synchronous rendered fetch of one page.

    Returns:
        dict with "success" and either "content"/"url" or "error"/"error_type"
        ("network", "crash", "import_error", "unknown")
    """
    try:
        from botasaurus.browser import Driver, browser
        from botasaurus.window_size import WindowSize
    except ImportError as e:
        logger.error(f"Botasaurus import error: {e}")
        return {"success": False, "error": f"Botasaurus not available: {e}", "error_type": "import_error"}

    @browser(
        headless=headless,
        user_agent=user_agent,
        window_size=WindowSize.HASHED,
        tiny_profile=True,
        profile=profile_id,
        reuse_driver=False,
        block_images=block_images,
        wait_for_complete_page_load=False,
        proxy=proxy,
        raise_exception=True,
        close_on_crash=True,
        output=None,
        create_error_logs=False,
    )
    def rendered_fetch(driver: Driver, data: dict[str, Any]) -> dict[str, Any]:
        target_url = data["url"]

        if data["use_google_get"]:
            driver.google_get(target_url, bypass_cloudflare=True)
        else:
            driver.get(target_url)

        try:
            driver.wait_for_element(data["wait_selector"], wait=data["wait_timeout"])
        except Exception as wait_error:
            # Absence of markers is for the block detector to judge
            logger.debug(f"Markers not found within {data['wait_timeout']}s: {wait_error}")

        if data["scroll"]:
            driver.run_js("window.scrollTo(0, document.body.scrollHeight)")
            driver.sleep(0.5)

        current_url = driver.current_url
        if current_url.startswith("chrome-error://"):
            return {
                "success": False,
                "error": f"Navigation failed: {current_url}",
                "error_type": "network",
            }

        return {"success": True, "content": driver.page_html, "url": current_url}

    try:
        result = rendered_fetch(
            {
                "url": url,
                "wait_selector": wait_selector,
                "wait_timeout": wait_timeout,
                "scroll": scroll,
                "use_google_get": use_google_get,
            }
        )
        return cast(dict[str, Any], result)
    except Exception as e:
        error_msg = str(e)
        lowered = error_msg.lower()
        if any(ind in lowered for ind in NETWORK_INDICATORS):
            return {"success": False, "error": error_msg, "error_type": "network"}
        if any(ind in lowered for ind in CRASH_INDICATORS):
            return {"success": False, "error": error_msg, "error_type": "crash"}
        logger.error(f"Rendered browser error: {error_msg}")
        return {"success": False, "error": error_msg, "error_type": "unknown"}


class RenderedBrowserStrategy(AcquisitionStrategy):
    """
    Fetch review pages through a real, script-executing browser.

    Slowest and heaviest strategy; placed last in the default order.
    Every browser failure (crash, navigation error, timeout) is reported as
    a FAILED attempt so the controller retries it with a fresh identity.
    The browser exposes no HTTP status, so this strategy never reports
    BLOCKED itself; challenge pages are caught by the detector from the
    rendered content (block signatures, missing review markers).
    """

    KIND = HarvestStrategyOption.RENDERED_BROWSER
    SOURCE_KIND = SourceKind.MARKUP

    def __init__(self, settings: "Settings") -> None:
        super().__init__(settings)
        self.timeout = settings.HARVEST_BROWSER_TIMEOUT
        self.wait_timeout = settings.HARVEST_BROWSER_WAIT_TIMEOUT
        self.headless = settings.HARVEST_HEADLESS
        self.block_images = settings.HARVEST_BLOCK_IMAGES
        self.scroll = settings.HARVEST_BROWSER_SCROLL
        self.use_google_get = settings.HARVEST_USE_GOOGLE_GET
        self.workers = max(1, settings.HARVEST_BROWSER_WORKERS)

    def build_url(self, target: "ReviewTarget", page_token: int) -> str:
        base = build_site_url(self.settings, self.settings.HARVEST_REVIEWS_PATH, target.product_identifier)
        return f"{base}?page={page_token}"

    async def fetch(
        self,
        target: "ReviewTarget",
        page_token: int,
        identity: "Identity",
    ) -> FetchAttempt:
        url = self.build_url(target, page_token)
        start_time = time.time()

        logger.debug(
            f"{self.name} rendering {sanitize_url(url)} "
            f"(profile={identity.session_handle}, proxy={mask_proxy(identity.proxy_endpoint)})"
        )

        fetch_func = partial(
            _sync_rendered_fetch,
            url=url,
            user_agent=identity.fingerprint.user_agent,
            profile_id=identity.session_handle,
            proxy=identity.proxy_endpoint,
            headless=self.headless,
            block_images=self.block_images,
            wait_selector=f"{CONTENT_MARKER_SELECTOR}, {PAGINATION_MARKER_SELECTOR}",
            wait_timeout=self.wait_timeout,
            scroll=self.scroll,
            use_google_get=self.use_google_get,
        )

        try:
            loop = asyncio.get_running_loop()
            result = await asyncio.wait_for(
                loop.run_in_executor(get_browser_executor(self.workers), fetch_func),
                timeout=self.timeout,
            )
        except TimeoutError:
            error = NetworkFailureException("Browser fetch timed out", url=sanitize_url(url), timeout_seconds=self.timeout)
            logger.warning(f"{self.name} {error}")
            return self._attempt(
                page_token,
                identity,
                FetchOutcome.FAILED,
                url=url,
                reason="timeout",
                error=str(error),
                execution_time_ms=(time.time() - start_time) * 1000,
            )

        execution_time_ms = (time.time() - start_time) * 1000

        if not result.get("success"):
            error_type = result.get("error_type", "unknown")
            if error_type == "network":
                error: Exception = NetworkFailureException(result.get("error", "Navigation failed"), url=sanitize_url(url))
            else:
                error = BrowserCrashException(result.get("error", "Browser failed"), url=sanitize_url(url))
            logger.warning(f"{self.name} failed ({error_type}): {error}")
            return self._attempt(
                page_token,
                identity,
                FetchOutcome.FAILED,
                url=url,
                reason=error_type,
                error=str(error),
                execution_time_ms=execution_time_ms,
            )

        content = result.get("content") or ""
        has_more, next_page = markup_pagination_signal(content)
        logger.debug(f"{self.name} rendered {len(content)} chars in {execution_time_ms:.0f}ms")
        return self._attempt(
            page_token,
            identity,
            FetchOutcome.SUCCESS,
            content=content,
            content_type="text/html",
            url=result.get("url") or url,
            has_more=has_more,
            next_page_token=next_page,
            execution_time_ms=execution_time_ms,
        )

    async def cleanup(self) -> None:
        shutdown_browser_executor()
