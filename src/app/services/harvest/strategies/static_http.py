"""
Static HTTP Strategy

Plain document fetch of a review page with curl_cffi. TLS fingerprint,
user agent and proxy come from the leased identity, so one browser family is
presented consistently for the whole attempt.

No JavaScript is executed; the markup served to a first navigation is what
gets extracted.
"""

import logging
import time
from typing import TYPE_CHECKING, Any

from curl_cffi import CurlError
from curl_cffi.requests import AsyncSession

from ....core.config import HarvestStrategyOption
from ..exceptions import NetworkFailureException, SoftBlockException
from ..extractor import SourceKind, markup_pagination_signal
from ..utils import build_document_headers, build_site_url, is_allowed_status, mask_proxy, sanitize_url
from .base import AcquisitionStrategy, FetchAttempt, FetchOutcome

if TYPE_CHECKING:
    from ....core.config import Settings
    from ....schemas.review import ReviewTarget
    from ..identity import Identity

logger = logging.getLogger(__name__)


class StaticHttpStrategy(AcquisitionStrategy):
    """
    Fetch review pages as static documents.

    Outcomes:
    - FAILED: connection error or timeout (CurlError / TimeoutError)
    - BLOCKED: status outside the allow-list
    - SUCCESS: anything else; the block detector judges the body
    """

    KIND = HarvestStrategyOption.STATIC_HTTP
    SOURCE_KIND = SourceKind.MARKUP

    def __init__(self, settings: "Settings") -> None:
        super().__init__(settings)
        self.timeout = settings.HARVEST_REQUEST_TIMEOUT

    def build_url(self, target: "ReviewTarget") -> str:
        return build_site_url(self.settings, self.settings.HARVEST_REVIEWS_PATH, target.product_identifier)

    def build_headers(self, target: "ReviewTarget", identity: "Identity") -> dict[str, str]:
        referer = build_site_url(self.settings, self.settings.HARVEST_REFERER_PATH, target.product_identifier)
        return build_document_headers(
            user_agent=identity.fingerprint.user_agent,
            accept_language=identity.fingerprint.accept_language,
            referer=referer,
        )

    async def _request(
        self,
        url: str,
        page_token: int,
        headers: dict[str, str],
        identity: "Identity",
    ) -> Any:
        async with AsyncSession(
            impersonate=identity.fingerprint.impersonate,
            timeout=self.timeout,
        ) as session:
            return await session.get(
                url,
                params={"page": page_token},
                headers=headers,
                proxy=identity.proxy_endpoint,
                allow_redirects=True,
            )

    async def fetch(
        self,
        target: "ReviewTarget",
        page_token: int,
        identity: "Identity",
    ) -> FetchAttempt:
        url = self.build_url(target)
        headers = self.build_headers(target, identity)
        page_url = f"{url}?page={page_token}"
        start_time = time.time()

        logger.debug(
            f"{self.name} fetching {sanitize_url(page_url)} "
            f"(impersonate={identity.fingerprint.impersonate}, proxy={mask_proxy(identity.proxy_endpoint)})"
        )

        try:
            response = await self._request(url, page_token, headers, identity)
        except (CurlError, TimeoutError) as e:
            error = NetworkFailureException(
                f"Request failed: {e}",
                url=sanitize_url(page_url),
                timeout_seconds=self.timeout,
            )
            logger.warning(f"{self.name} network failure: {error}")
            return self._attempt(
                page_token,
                identity,
                FetchOutcome.FAILED,
                url=page_url,
                reason="network",
                error=str(error),
                execution_time_ms=(time.time() - start_time) * 1000,
            )

        execution_time_ms = (time.time() - start_time) * 1000
        status_code = response.status_code
        content = response.text
        content_type = response.headers.get("content-type", "")

        try:
            self._raise_for_status(page_url, status_code, content)
        except SoftBlockException as e:
            logger.info(f"{self.name} blocked: {e}")
            return self._attempt(
                page_token,
                identity,
                FetchOutcome.BLOCKED,
                content=content,
                status_code=status_code,
                content_type=content_type,
                url=page_url,
                reason=e.reason,
                error=str(e),
                execution_time_ms=execution_time_ms,
            )

        logger.debug(
            f"{self.name} response: status={status_code}, size={len(content)}B, time={execution_time_ms:.0f}ms"
        )
        return self._on_response(page_token, identity, page_url, response, execution_time_ms)

    def _raise_for_status(self, url: str, status_code: int, content: str) -> None:
        if not is_allowed_status(status_code, self.settings):
            raise SoftBlockException(
                f"Disallowed status {status_code}",
                url=sanitize_url(url),
                status_code=status_code,
                reason=f"status_{status_code}",
                content=content,
            )

    def _on_response(
        self,
        page_token: int,
        identity: "Identity",
        url: str,
        response: Any,
        execution_time_ms: float,
    ) -> FetchAttempt:
        content = response.text
        has_more, next_page = markup_pagination_signal(content)
        return self._attempt(
            page_token,
            identity,
            FetchOutcome.SUCCESS,
            content=content,
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
            url=url,
            has_more=has_more,
            next_page_token=next_page,
            execution_time_ms=execution_time_ms,
        )
