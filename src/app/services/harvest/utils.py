"""Review Harvester Utility Functions.

Provides:
- Block-page signature detection
- Status allow-list checks
- Browser-like header building
- URL helpers (absolutize, sanitize for logging, proxy masking)
- Humanization delays
"""

import random
import re
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urljoin, urlparse

if TYPE_CHECKING:
    from ...core.config import Settings

# ============================================
# Block Page Signatures
# ============================================

# Only the first part of a body is scanned; challenge pages are small
SIGNATURE_SCAN_LIMIT = 20000

# Interstitial challenge pages (JS/cookie checks, Turnstile, Datadome, PerimeterX)
CHALLENGE_PATTERNS = [
    r"checking your browser",
    r"cf-browser-verification",
    r"_cf_chl_opt",
    r"challenge-platform",
    r"just a moment\.\.\.",
    r"enable javascript and cookies to continue",
    r"captcha-delivery\.com",
    r"px-captcha",
    r"g-recaptcha",
    r"h-captcha",
]

# Automated-traffic detection messaging
BOT_DETECTION_PATTERNS = [
    r"unusual traffic",
    r"automated (?:access|requests|queries)",
    r"verify you are (?:a )?human",
    r"are you a robot",
    r"bot.{0,20}detected",
    r"suspicious activity",
    r"too many requests",
]

# Access-denial messaging
ACCESS_DENIED_PATTERNS = [
    r"access denied",
    r"access to this page has been denied",
    r"you have been blocked",
    r"request blocked",
    r"403 forbidden",
]

CHALLENGE_REGEX = re.compile("|".join(CHALLENGE_PATTERNS), re.IGNORECASE)
BOT_DETECTION_REGEX = re.compile("|".join(BOT_DETECTION_PATTERNS), re.IGNORECASE)
ACCESS_DENIED_REGEX = re.compile("|".join(ACCESS_DENIED_PATTERNS), re.IGNORECASE)


def detect_block_signature(content: str | None) -> str | None:
    """Match a response body against the known block-page signatures.

    Args:
        content: Raw response body (HTML or text)

    Returns:
        "challenge", "bot_detected", "access_denied", or None
    """
    if not content:
        return None
    head = content[:SIGNATURE_SCAN_LIMIT]
    if CHALLENGE_REGEX.search(head):
        return "challenge"
    if BOT_DETECTION_REGEX.search(head):
        return "bot_detected"
    if ACCESS_DENIED_REGEX.search(head):
        return "access_denied"
    return None


def is_allowed_status(status_code: int | None, settings: "Settings") -> bool:
    """Check if the status code counts as a loaded page.

    Any 2xx is allowed, plus HARVEST_EXTRA_ALLOWED_STATUS_CODES.
    A missing status (rendered browser) is allowed.
    """
    if status_code is None:
        return True
    if 200 <= status_code < 300:
        return True
    return status_code in settings.HARVEST_EXTRA_ALLOWED_STATUS_CODES


def is_json_content(content_type: str | None) -> bool:
    """Check if the content type indicates JSON."""
    if not content_type:
        return False
    ct_lower = content_type.lower()
    return "application/json" in ct_lower or "text/json" in ct_lower or "+json" in ct_lower


# ============================================
# URL Helpers
# ============================================


def build_site_url(settings: "Settings", path_template: str, product: str) -> str:
    """Expand a configured path template against the site origin."""
    return urljoin(settings.HARVEST_SITE_ORIGIN, path_template.format(product=product))


def absolute_url(href: str | None, origin: str) -> str | None:
    """Rewrite a relative link to an absolute one on the site origin."""
    if not href:
        return None
    href = href.strip()
    if not href:
        return None
    return urljoin(origin if origin.endswith("/") else origin + "/", href)


def page_number_from_url(href: str | None) -> int | None:
    """Extract the `page` query parameter from a pagination link."""
    if not href:
        return None
    values = parse_qs(urlparse(href).query).get("page")
    if not values:
        return None
    try:
        return int(values[0])
    except ValueError:
        return None


def sanitize_url(url: str) -> str:
    """Sanitize URL for logging (remove sensitive query params)."""
    sensitive_params = ["token", "key", "api_key", "apikey", "secret", "password", "auth"]
    sanitized = url
    for param in sensitive_params:
        sanitized = re.sub(
            rf"([?&]{param}=)[^&]*",
            r"\1[REDACTED]",
            sanitized,
            flags=re.IGNORECASE,
        )
    return sanitized


def mask_proxy(proxy_url: str | None) -> str | None:
    """Mask credentials in a proxy URL for logging."""
    if not proxy_url:
        return proxy_url
    parsed = urlparse(proxy_url)
    if not parsed.username:
        return proxy_url
    masked = proxy_url.replace(parsed.username, "***", 1)
    if parsed.password:
        masked = masked.replace(parsed.password, "***", 1)
    return masked


# ============================================
# Headers
# ============================================


def build_document_headers(user_agent: str, accept_language: str, referer: str | None) -> dict[str, str]:
    """Headers of a top-level browser navigation."""
    headers = {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": accept_language,
        "Upgrade-Insecure-Requests": "1",
        "Sec-Fetch-Site": "same-origin",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Dest": "document",
    }
    if referer:
        headers["Referer"] = referer
    return headers


def build_json_headers(user_agent: str, accept_language: str, referer: str | None) -> dict[str, str]:
    """Headers of an XHR issued by the site's own scripts."""
    headers = {
        "User-Agent": user_agent,
        "Accept": "application/json, text/javascript, */*; q=0.01",
        "Accept-Language": accept_language,
        "X-Requested-With": "XMLHttpRequest",
        "Sec-Fetch-Site": "same-origin",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Dest": "empty",
    }
    if referer:
        headers["Referer"] = referer
    return headers


# ============================================
# Humanization
# ============================================


def humanized_delay(settings: "Settings") -> float:
    """Random pause between two requests of one session."""
    low = max(0.0, settings.HARVEST_MIN_DELAY)
    high = max(low, settings.HARVEST_MAX_DELAY)
    return random.uniform(low, high)


def backoff_delay(attempt: int, settings: "Settings") -> float:
    """Pause before retrying a page; grows with the attempt number."""
    return humanized_delay(settings) * (attempt + 1)
