"""
Field Extractor

Maps one raw page (markup) or payload (JSON) into CanonicalReview records,
independent of how the content was acquired.

Markup:
    Review-bearing elements are located with an ordered list of selector
    families; the first family that matches at least one element wins. Each
    canonical field then has its own ordered list of probes; the first probe
    returning a non-empty value wins, otherwise the field is None.

JSON:
    Same idea with ordered candidate key paths ("user.name", "reviewer.name",
    ...) resolved by the first present, non-empty value.

Extraction is pure: the same input always yields the same records.
"""

import json
import math
import logging
import re
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from bs4 import BeautifulSoup, Tag
from pydantic import ValidationError

from ...schemas.review import CanonicalReview, QuestionAnswer, Reviewer
from .exceptions import ExtractionMismatchException
from .utils import absolute_url, page_number_from_url

if TYPE_CHECKING:
    from ...core.config import Settings

logger = logging.getLogger(__name__)

MarkupProbe = Callable[[Tag], str | None]


class SourceKind(str, Enum):
    """Shape of the raw content handed to the extractor."""

    MARKUP = "markup"
    JSON = "json"


# ============================================
# Markup Selectors
# ============================================

# Tried in order until one yields at least one element
REVIEW_ELEMENT_SELECTORS = [
    '[data-test="review-card"]',
    '[itemprop="review"]',
    'div[id^="survey-response-"]',
    "article.review, div.review-card",
]

# Presence of any of these means the page has a following page
PAGINATION_NEXT_SELECTORS = [
    'a[rel="next"][href]',
    'a[data-test="pagination-next"][href]',
    "nav.pagination a.next[href]",
    "a.pagination__named-link[href]",
]

# Markers the rendered browser waits for (content or pagination)
CONTENT_MARKER_SELECTOR = ", ".join(REVIEW_ELEMENT_SELECTORS)
PAGINATION_MARKER_SELECTOR = ", ".join(PAGINATION_NEXT_SELECTORS)

# (container, question, answer) families for Q&A blocks
QA_SELECTOR_FAMILIES = [
    ('[data-test="review-answer"]', '[data-test="review-question"]', '[data-test="review-text"]'),
    (".question-answer", ".question", ".answer"),
    (".review-question-answer", "h5", "p"),
]

REVIEW_ID_FROM_LINK = re.compile(r"-(\d+)/?$")
REVIEW_ID_FROM_ELEMENT_ID = re.compile(r"(\d+)$")
RATING_FROM_LABEL = re.compile(r"(\d+(?:\.\d+)?)\s*(?:out of|/)\s*\d+", re.IGNORECASE)
WHITESPACE = re.compile(r"\s+")

DATE_FORMATS = [
    "%Y-%m-%d",
    "%B %d, %Y",
    "%b %d, %Y",
    "%m/%d/%Y",
    "%d %B %Y",
]


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = WHITESPACE.sub(" ", value).strip()
    return cleaned or None


def _text(selector: str) -> MarkupProbe:
    def probe(element: Tag) -> str | None:
        node = element.select_one(selector)
        if node is None:
            return None
        return _clean(node.get_text(" ", strip=True))

    probe.__name__ = f"text({selector})"
    return probe


def _attr(selector: str, attribute: str) -> MarkupProbe:
    def probe(element: Tag) -> str | None:
        node = element.select_one(selector)
        if node is None:
            return None
        value = node.get(attribute)
        if isinstance(value, list):
            value = " ".join(value)
        return _clean(value)

    probe.__name__ = f"attr({selector}@{attribute})"
    return probe


def _own_attr(attribute: str) -> MarkupProbe:
    def probe(element: Tag) -> str | None:
        value = element.get(attribute)
        if isinstance(value, list):
            value = " ".join(value)
        return _clean(value)

    probe.__name__ = f"own_attr({attribute})"
    return probe


def _first(probes: list[MarkupProbe], element: Tag) -> str | None:
    for probe in probes:
        value = probe(element)
        if value:
            return value
    return None


# Ordered probes per canonical field
MARKUP_FIELD_PROBES: dict[str, list[MarkupProbe]] = {
    "review_link": [
        _attr('a[data-test="review-card-link"]', "href"),
        _attr('a[itemprop="url"]', "href"),
        _attr("a.review-link", "href"),
    ],
    "element_id": [
        _own_attr("data-review-id"),
        _own_attr("id"),
    ],
    "review_title": [
        _text('[data-test="review-card-title"]'),
        _text('[itemprop="headline"]'),
        _text('h3[itemprop="name"]'),
        _text(".review-title"),
    ],
    "review_content": [
        _text('[data-test="review-card-content"]'),
        _text('[itemprop="reviewBody"]'),
        _text(".review-content"),
        _text(".formatted-text"),
    ],
    "review_rating": [
        _attr('[data-test="star-rating"]', "data-rating"),
        _attr('meta[itemprop="ratingValue"]', "content"),
        _attr('[itemprop="ratingValue"]', "content"),
        _attr("[data-rating]", "data-rating"),
        _attr("[aria-label*='out of']", "aria-label"),
    ],
    "publish_date": [
        _attr("time[datetime]", "datetime"),
        _attr('meta[itemprop="datePublished"]', "content"),
        _text('[data-test="review-date"]'),
        _text("time"),
    ],
    "reviewer_name": [
        _text('[data-test="reviewer-display-name"]'),
        _text('[itemprop="author"] [itemprop="name"]'),
        _text('[itemprop="author"]'),
        _text(".reviewer-name"),
    ],
    "reviewer_job_title": [
        _text('[data-test="reviewer-job-title"]'),
        _text(".reviewer-job-title"),
        _text(".reviewer-title"),
    ],
    "reviewer_link": [
        _attr('[data-test="reviewer-display-name"][href]', "href"),
        _attr('[data-test="reviewer-display-name"] a[href]', "href"),
        _attr('[itemprop="author"] a[href]', "href"),
        _attr("a.reviewer-link[href]", "href"),
    ],
    "reviewer_company_size": [
        _text('[data-test="reviewer-company-size"]'),
        _text('[data-test="company-size"]'),
        _text(".reviewer-company-size"),
    ],
    "video_link": [
        _attr('a[data-test="review-video-link"][href]', "href"),
        _attr("a.review-video-link[href]", "href"),
        _attr("video source[src]", "src"),
    ],
}

# ============================================
# JSON Key Paths
# ============================================

# Where the list of reviews lives in a payload
JSON_REVIEW_LIST_PATHS = ["reviews", "data.reviews", "data", "results", "items", "survey_responses"]

# Ordered candidate key paths per canonical field
JSON_FIELD_PATHS: dict[str, list[str]] = {
    "review_id": ["id", "review_id", "reviewId", "attributes.id"],
    "review_title": ["title", "review_title", "headline", "attributes.title"],
    "review_content": [
        "comment_text",
        "content",
        "text",
        "body",
        "review_content",
        "attributes.comment_text",
        "attributes.text",
    ],
    "review_rating": ["star_rating", "rating", "review_rating", "score", "attributes.star_rating", "attributes.rating"],
    "publish_date": ["submitted_at", "published_at", "publish_date", "created_at", "date", "attributes.submitted_at"],
    "reviewer_name": [
        "user.name",
        "reviewer.name",
        "reviewer.reviewer_name",
        "reviewer_name",
        "author.name",
        "attributes.user_name",
    ],
    "reviewer_job_title": [
        "user.title",
        "user.job_title",
        "reviewer.job_title",
        "reviewer.reviewer_job_title",
        "reviewer_job_title",
        "attributes.user_title",
    ],
    "reviewer_link": [
        "user.url",
        "user.profile_url",
        "reviewer.url",
        "reviewer.reviewer_link",
        "reviewer_link",
        "author.url",
    ],
    "reviewer_company_size": [
        "user.company_size",
        "reviewer.company_size",
        "reviewer_company_size",
        "company_size",
        "company_segment",
        "attributes.company_size",
    ],
    "video_link": ["video_url", "video_link", "media.video_url", "attributes.video_url"],
    "review_link": ["url", "review_url", "review_link", "links.self", "attributes.url"],
    "review_question_answers": [
        "answers",
        "question_answers",
        "review_question_answers",
        "questions",
        "attributes.answers",
    ],
}

JSON_QUESTION_KEYS = ["question", "label", "title", "question_text"]
JSON_ANSWER_KEYS = ["answer", "text", "value", "answer_text"]

JSON_TOTAL_PAGES_PATHS = ["meta.total_pages", "total_pages", "pagination.total_pages", "meta.pagination.total_pages"]
JSON_NEXT_PAGE_PATHS = ["meta.next_page", "next_page", "pagination.next_page", "links.next"]


def resolve_path(data: Any, path: str) -> Any:
    """Follow a dotted key path through nested dicts. Missing keys give None."""
    current = data
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def first_present(data: Any, paths: list[str]) -> Any:
    """Value of the first path that resolves to something non-empty."""
    for path in paths:
        value = resolve_path(data, path)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(value, (list, dict)) and not value:
            continue
        return value
    return None


# ============================================
# Normalizers
# ============================================


def normalize_date(value: Any) -> str | None:
    """Coerce a date-ish value to an ISO-8601 string, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, UTC).isoformat()
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).isoformat()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).isoformat()
        except ValueError:
            continue
    return None


def normalize_rating(value: Any, scale: float) -> float | None:
    """Parse a rating and keep it only if it lies within (0, scale]; NaN and infinities become None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        rating = float(value)
    else:
        text = str(value).strip()
        match = RATING_FROM_LABEL.search(text)
        try:
            rating = float(match.group(1) if match else text)
        except ValueError:
            return None
    if not math.isfinite(rating) or rating <= 0 or rating > scale:
        return None
    return rating


def parse_review_id(value: Any) -> int | None:
    """Numeric id from an int, a digit string, or a permalink ending in -<digits>."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    match = REVIEW_ID_FROM_LINK.search(text) or REVIEW_ID_FROM_ELEMENT_ID.search(text)
    if match:
        return int(match.group(1))
    return None


# ============================================
# Pagination Signals
# ============================================


def markup_pagination_signal(html: str | None) -> tuple[bool | None, int | None]:
    """Read the "next page" link of a review page.

    Returns:
        (has_more, next_page). has_more is None when the page shows no
        pagination control at all.
    """
    if not html:
        return None, None
    soup = BeautifulSoup(html, "html.parser")
    for selector in PAGINATION_NEXT_SELECTORS:
        node = soup.select_one(selector)
        if node is not None:
            return True, page_number_from_url(str(node.get("href")))
    return None, None


def json_pagination_signal(payload: Any, current_page: int) -> tuple[bool | None, int | None, int | None]:
    """Read paging metadata from a JSON payload.

    Returns:
        (has_more, next_page, total_pages)
    """
    total_pages = first_present(payload, JSON_TOTAL_PAGES_PATHS)
    try:
        total_pages = int(total_pages) if total_pages is not None else None
    except (TypeError, ValueError):
        total_pages = None

    next_raw = first_present(payload, JSON_NEXT_PAGE_PATHS)
    next_page: int | None = None
    if isinstance(next_raw, int) and not isinstance(next_raw, bool):
        next_page = next_raw
    elif isinstance(next_raw, str):
        next_page = int(next_raw) if next_raw.isdigit() else page_number_from_url(next_raw)

    if next_page is not None:
        return True, next_page, total_pages
    if total_pages is not None:
        return current_page < total_pages, None, total_pages
    return None, None, None


class FieldExtractor:
    """
    Turns raw page content into CanonicalReview records.

    Usage:
        extractor = FieldExtractor(settings)
        for review in extractor.extract(html, SourceKind.MARKUP):
            ...
    """

    def __init__(self, settings: "Settings") -> None:
        self.origin = settings.HARVEST_SITE_ORIGIN
        self.rating_scale = settings.HARVEST_RATING_SCALE

    def extract(self, raw_content: Any, source_kind: SourceKind) -> Iterator[CanonicalReview]:
        """Lazily yield canonical reviews found in raw_content.

        Elements without a title and a body are skipped. A document no
        selector family recognizes yields nothing.
        """
        try:
            if source_kind == SourceKind.JSON:
                items = self._locate_json_items(raw_content)
                build = self._from_json
            else:
                items = self._locate_review_elements(raw_content)
                build = self._from_element
        except ExtractionMismatchException as e:
            logger.warning(f"Extraction mismatch, treating page as empty: {e}")
            return

        for item in items:
            review = build(item)
            if review is not None:
                yield review

    def has_content_markers(self, raw_content: Any, source_kind: SourceKind) -> bool:
        """True if the document contains at least one review-bearing element/item."""
        try:
            if source_kind == SourceKind.JSON:
                return bool(self._locate_json_items(raw_content))
            return bool(self._locate_review_elements(raw_content))
        except ExtractionMismatchException:
            return False

    # ------------------------------------------------------------------
    # Markup
    # ------------------------------------------------------------------

    def _locate_review_elements(self, html: Any) -> list[Tag]:
        if not html or not isinstance(html, str):
            raise ExtractionMismatchException("Empty document", source_kind=SourceKind.MARKUP.value)
        soup = BeautifulSoup(html, "html.parser")
        for selector in REVIEW_ELEMENT_SELECTORS:
            elements = soup.select(selector)
            if elements:
                logger.debug(f"Selector family matched: {selector} ({len(elements)} elements)")
                return elements
        raise ExtractionMismatchException(
            "No review selector family matched",
            source_kind=SourceKind.MARKUP.value,
        )

    def _from_element(self, element: Tag) -> CanonicalReview | None:
        title = _first(MARKUP_FIELD_PROBES["review_title"], element)
        content = _first(MARKUP_FIELD_PROBES["review_content"], element)
        if not title and not content:
            return None

        raw_link = _first(MARKUP_FIELD_PROBES["review_link"], element)
        review_id = parse_review_id(raw_link) if raw_link else None
        if review_id is None:
            review_id = parse_review_id(_first(MARKUP_FIELD_PROBES["element_id"], element))

        return self._build(
            review_id=review_id,
            review_title=title,
            review_content=content,
            review_question_answers=self._markup_question_answers(element),
            review_rating=normalize_rating(_first(MARKUP_FIELD_PROBES["review_rating"], element), self.rating_scale),
            reviewer=Reviewer(
                reviewer_name=_first(MARKUP_FIELD_PROBES["reviewer_name"], element),
                reviewer_job_title=_first(MARKUP_FIELD_PROBES["reviewer_job_title"], element),
                reviewer_link=absolute_url(_first(MARKUP_FIELD_PROBES["reviewer_link"], element), self.origin),
            ),
            publish_date=normalize_date(_first(MARKUP_FIELD_PROBES["publish_date"], element)),
            reviewer_company_size=_first(MARKUP_FIELD_PROBES["reviewer_company_size"], element),
            video_link=absolute_url(_first(MARKUP_FIELD_PROBES["video_link"], element), self.origin),
            review_link=absolute_url(raw_link, self.origin),
        )

    @staticmethod
    def _markup_question_answers(element: Tag) -> list[QuestionAnswer]:
        for container_sel, question_sel, answer_sel in QA_SELECTOR_FAMILIES:
            pairs = []
            for block in element.select(container_sel):
                question = _text(question_sel)(block)
                answer = _text(answer_sel)(block)
                if question and answer:
                    pairs.append(QuestionAnswer(question=question, answer=answer))
            if pairs:
                return pairs
        return []

    # ------------------------------------------------------------------
    # JSON
    # ------------------------------------------------------------------

    @staticmethod
    def _locate_json_items(payload: Any) -> list[Any]:
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError as e:
                raise ExtractionMismatchException(
                    f"Payload is not JSON: {e}",
                    source_kind=SourceKind.JSON.value,
                ) from e
        if isinstance(payload, list):
            return payload
        for path in JSON_REVIEW_LIST_PATHS:
            value = resolve_path(payload, path)
            if isinstance(value, list):
                return value
        raise ExtractionMismatchException("No review list in payload", source_kind=SourceKind.JSON.value)

    def _from_json(self, item: Any) -> CanonicalReview | None:
        if not isinstance(item, dict):
            return None

        def field(name: str) -> Any:
            return first_present(item, JSON_FIELD_PATHS[name])

        def text(name: str) -> str | None:
            value = field(name)
            if value is None or isinstance(value, (dict, list)):
                return None
            return _clean(str(value))

        title = text("review_title")
        content = text("review_content")
        if not title and not content:
            return None

        raw_link = text("review_link")
        review_id = parse_review_id(field("review_id"))
        if review_id is None and raw_link:
            review_id = parse_review_id(raw_link)

        return self._build(
            review_id=review_id,
            review_title=title,
            review_content=content,
            review_question_answers=self._json_question_answers(field("review_question_answers")),
            review_rating=normalize_rating(field("review_rating"), self.rating_scale),
            reviewer=Reviewer(
                reviewer_name=text("reviewer_name"),
                reviewer_job_title=text("reviewer_job_title"),
                reviewer_link=absolute_url(text("reviewer_link"), self.origin),
            ),
            publish_date=normalize_date(field("publish_date")),
            reviewer_company_size=text("reviewer_company_size"),
            video_link=absolute_url(text("video_link"), self.origin),
            review_link=absolute_url(raw_link, self.origin),
        )

    @staticmethod
    def _json_question_answers(value: Any) -> list[QuestionAnswer]:
        pairs: list[QuestionAnswer] = []
        if isinstance(value, dict):
            for question, answer in value.items():
                question, answer = _clean(str(question)), _clean(str(answer)) if answer is not None else None
                if question and answer:
                    pairs.append(QuestionAnswer(question=question, answer=answer))
            return pairs
        if not isinstance(value, list):
            return pairs
        for entry in value:
            if not isinstance(entry, dict):
                continue
            question = first_present(entry, JSON_QUESTION_KEYS)
            answer = first_present(entry, JSON_ANSWER_KEYS)
            question = _clean(str(question)) if question is not None else None
            answer = _clean(str(answer)) if answer is not None else None
            if question and answer:
                pairs.append(QuestionAnswer(question=question, answer=answer))
        return pairs

    @staticmethod
    def _build(**fields: Any) -> CanonicalReview | None:
        try:
            return CanonicalReview(**fields)
        except ValidationError as e:
            logger.debug(f"Dropping malformed review: {e}")
            return None
