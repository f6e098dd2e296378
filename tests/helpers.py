"""Shared pages and doubles for the harvester tests."""

from typing import Any

from src.app.core.config import HarvestStrategyOption, Settings
from src.app.services.harvest.extractor import SourceKind, json_pagination_signal, markup_pagination_signal
from src.app.services.harvest.strategies.base import AcquisitionStrategy, FetchAttempt, FetchOutcome

CHALLENGE_PAGE = (
    "<html><head><title>Just a moment...</title></head>"
    "<body><div id='challenge-platform'>Checking your browser before accessing g2.com</div></body></html>"
)
UNUSUAL_TRAFFIC_PAGE = (
    "<html><body><h1>Access restricted</h1>"
    "<p>Our systems have detected unusual traffic from your computer network.</p></body></html>"
)
NO_REVIEWS_PAGE = (
    "<html><body><div class='product-head'><h1>Acme CRM Reviews</h1></div>"
    "<p>Be the first to review this product.</p></body></html>"
)


def render_review_card(
    review_id: int,
    product: str = "acme-crm",
    title: str | None = "Great CRM for small teams",
    content: str | None = "Setup took an afternoon and the pipeline view is clear.",
    rating: str | None = "4.5",
    date: str | None = "2024-03-05",
    name: str | None = "Jane D.",
    job_title: str | None = "Sales Manager",
    company_size: str | None = "Small-Business (50 or fewer emp.)",
    questions: list[tuple[str, str]] | None = None,
    video: str | None = None,
) -> str:
    """One review card in the site's current markup."""
    parts = [f'<div data-test="review-card" id="survey-response-{review_id}">']
    parts.append(f'<a data-test="review-card-link" href="/products/{product}/reviews/{product}-review-{review_id}">')
    if title is not None:
        parts.append(f'<h3 data-test="review-card-title">{title}</h3>')
    parts.append("</a>")
    if rating is not None:
        parts.append(f'<div data-test="star-rating" data-rating="{rating}"></div>')
    if date is not None:
        parts.append(f'<time datetime="{date}">{date}</time>')
    if name is not None:
        parts.append(f'<a data-test="reviewer-display-name" href="/users/{review_id}-reviewer">{name}</a>')
    if job_title is not None:
        parts.append(f'<div data-test="reviewer-job-title">{job_title}</div>')
    if company_size is not None:
        parts.append(f'<div data-test="reviewer-company-size">{company_size}</div>')
    if content is not None:
        parts.append(f'<div data-test="review-card-content">{content}</div>')
    for question, answer in questions or []:
        parts.append(
            '<div data-test="review-answer">'
            f'<div data-test="review-question">{question}</div>'
            f'<div data-test="review-text">{answer}</div>'
            "</div>"
        )
    if video is not None:
        parts.append(f'<a data-test="review-video-link" href="{video}">Watch</a>')
    parts.append("</div>")
    return "".join(parts)


def render_review_page(cards: list[str], next_page: int | None = None, product: str = "acme-crm") -> str:
    """A review listing page wrapping the given cards."""
    pagination = ""
    if next_page is not None:
        pagination = f'<nav class="pagination"><a rel="next" href="/products/{product}/reviews?page={next_page}">Next</a></nav>'
    return (
        "<html><head><title>Acme CRM Reviews</title></head><body>"
        f"<div id='reviews'>{''.join(cards)}</div>{pagination}</body></html>"
    )


class ScriptedStrategy(AcquisitionStrategy):
    """Strategy double replaying a script of responses per page.

    Each step is a dict: {"status": int, "body": str | dict} or {"fail": "network"}.
    The last step of a page repeats once the script runs out.
    """

    def __init__(
        self,
        settings: Settings,
        kind: HarvestStrategyOption,
        script: dict[int, list[dict[str, Any]]],
        source_kind: SourceKind = SourceKind.MARKUP,
    ) -> None:
        super().__init__(settings)
        self.KIND = kind
        self.SOURCE_KIND = source_kind
        self.script = script
        self.calls: list[int] = []
        self.identities: list[str] = []
        self.cleaned_up = False

    async def fetch(self, target, page_token, identity) -> FetchAttempt:
        self.calls.append(page_token)
        self.identities.append(identity.session_handle)
        steps = self.script.get(page_token) or [{"status": 200, "body": NO_REVIEWS_PAGE}]
        step = steps[min(self.calls.count(page_token), len(steps)) - 1]

        if "fail" in step:
            return self._attempt(page_token, identity, FetchOutcome.FAILED, reason=step["fail"], error="scripted failure")

        status = step.get("status", 200)
        body = step["body"]
        if not 200 <= status < 300:
            return self._attempt(
                page_token,
                identity,
                FetchOutcome.BLOCKED,
                content=body if isinstance(body, str) else None,
                status_code=status,
                reason=f"status_{status}",
            )

        if self.SOURCE_KIND == SourceKind.JSON:
            has_more, next_page, total_pages = json_pagination_signal(body, page_token)
            return self._attempt(
                page_token,
                identity,
                FetchOutcome.SUCCESS,
                content=str(body),
                payload=body,
                status_code=status,
                has_more=has_more,
                next_page_token=next_page,
                total_pages=total_pages,
            )

        has_more, next_page = markup_pagination_signal(body)
        return self._attempt(
            page_token,
            identity,
            FetchOutcome.SUCCESS,
            content=body,
            status_code=status,
            content_type="text/html",
            has_more=has_more,
            next_page_token=next_page,
        )

    async def cleanup(self) -> None:
        self.cleaned_up = True

