"""
JSON Endpoint Strategy

Calls the structured endpoint the review page's own scripts use. Shares the
curl_cffi transport of the static strategy; only the URL, the headers and the
response handling differ.
"""

import logging
from typing import TYPE_CHECKING, Any

from ....core.config import HarvestStrategyOption
from ..extractor import SourceKind, json_pagination_signal
from ..utils import build_json_headers, build_site_url, is_json_content
from .base import FetchAttempt, FetchOutcome
from .static_http import StaticHttpStrategy

if TYPE_CHECKING:
    from ....schemas.review import ReviewTarget
    from ..identity import Identity

logger = logging.getLogger(__name__)


class JsonEndpointStrategy(StaticHttpStrategy):
    """
    Fetch review pages from the site's JSON endpoint.

    A response that does not parse as JSON is reported as BLOCKED with
    reason "non_json": the endpoint served an interstitial instead of data.
    """

    KIND = HarvestStrategyOption.JSON_ENDPOINT
    SOURCE_KIND = SourceKind.JSON

    def build_url(self, target: "ReviewTarget") -> str:
        return build_site_url(self.settings, self.settings.HARVEST_JSON_PATH, target.product_identifier)

    def build_headers(self, target: "ReviewTarget", identity: "Identity") -> dict[str, str]:
        referer = build_site_url(self.settings, self.settings.HARVEST_REVIEWS_PATH, target.product_identifier)
        return build_json_headers(
            user_agent=identity.fingerprint.user_agent,
            accept_language=identity.fingerprint.accept_language,
            referer=referer,
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
        content_type = response.headers.get("content-type", "")

        try:
            payload = response.json()
        except ValueError as e:
            logger.info(f"{self.name} got non-JSON body (content-type={content_type!r}): {e}")
            return self._attempt(
                page_token,
                identity,
                FetchOutcome.BLOCKED,
                content=content,
                status_code=response.status_code,
                content_type=content_type,
                url=url,
                reason="non_json",
                error=f"Body is not JSON: {e}",
                execution_time_ms=execution_time_ms,
            )

        if not is_json_content(content_type):
            logger.debug(f"{self.name} parsed JSON despite content-type={content_type!r}")

        has_more, next_page, total_pages = json_pagination_signal(payload, page_token)
        return self._attempt(
            page_token,
            identity,
            FetchOutcome.SUCCESS,
            content=content,
            payload=payload,
            status_code=response.status_code,
            content_type=content_type,
            url=url,
            has_more=has_more,
            next_page_token=next_page,
            total_pages=total_pages,
            execution_time_ms=execution_time_ms,
        )
