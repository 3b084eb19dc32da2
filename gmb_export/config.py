"""
Single-source configuration: paths, browser settings, readiness and scroll
behaviour, export defaults, and the ordered selector strategies per field.

Everything that might need tweaking lives here.
"""

from pathlib import Path


# ── Project Paths ─────────────────────────────────────────────────────────────

ROOT_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = ROOT_DIR / "data"
LOGS_DIR = ROOT_DIR / "logs"
EXPORTS_DIR = DATA_DIR / "exports"

DATABASE_URL: str = f"sqlite:///{DATA_DIR / 'gmb_export.db'}"


# ── Browser ───────────────────────────────────────────────────────────────────

HEADLESS: bool = True
VIEWPORT_WIDTH: int = 1920
VIEWPORT_HEIGHT: int = 1080
LOCALE: str = "en-US"
USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)

# ── Timeouts (milliseconds for Playwright, seconds for sleep) ─────────────────

NAVIGATION_TIMEOUT: int = 30_000         # 30 s
PAGE_LOAD_TIMEOUT: int = 30_000          # 30 s

# ── Readiness polling ─────────────────────────────────────────────────────────

READY_POLL_INTERVAL: float = 1.0         # seconds between landmark checks
READY_MAX_ATTEMPTS: int = 30             # exceeded -> PageLoadTimeout

# ── Scroll behaviour ─────────────────────────────────────────────────────────

SCROLL_SETTLE_MIN: float = 1.5           # min random settle (seconds)
SCROLL_SETTLE_MAX: float = 3.0           # max random settle (seconds)
SCROLL_DISTANCE_MIN: int = 1000          # min mouse-wheel delta
SCROLL_DISTANCE_MAX: int = 3000          # max mouse-wheel delta
MAX_STALE_ATTEMPTS: int = 3              # unchanged height -> stop
MAX_SCROLL_ROUNDS: int = 200             # hard cap on pagination rounds

# ── Per-listing extraction ───────────────────────────────────────────────────

LISTING_MAX_ATTEMPTS: int = 2            # tries before a listing is skipped

# ── Retry / resilience ───────────────────────────────────────────────────────

MAX_RETRIES: int = 3
RETRY_BACKOFF_BASE: float = 2.0          # exponential backoff base
RETRY_BACKOFF_MAX: float = 30.0          # cap wait time (seconds)

# ── Export / billing ──────────────────────────────────────────────────────────

DEFAULT_EXPORT_COST: int = 1
DEFAULT_MAX_RESULTS: int = 50
STUCK_JOB_TIMEOUT: float = 30 * 60.0     # processing longer than this is stuck
FINISHED_STREAMS_KEPT: int = 100     # finished jobs whose full event history stays replayable
ENABLE_SCREENSHOTS: bool = True
SOURCE_NAME: str = "Google Maps"

# ── Google Maps page landmarks (CSS) ─────────────────────────────────────────
#
#    When Google changes the UI, update these constants.
#    Every module reads from here – nothing is hard-coded elsewhere.

GOOGLE_MAPS_SEARCH_URL: str = "https://www.google.com/maps/search/{query}/"
ACCEPT_COOKIES: str = 'button[aria-label="Accept all"]'

READY_LANDMARKS: tuple = (
    'div[role="feed"]',
    "#searchbox",
    '[data-testid="searchbox"]',
    ".searchbox",
)
SCROLL_CONTAINERS: tuple = (
    'div[role="feed"]',
    ".section-scrollbox",
    '[data-testid="section-scrollbox"]',
    ".scrollable-show-more",
)
END_OF_LIST: str = "p.fontBodyMedium > span > span"

# ── Field strategies ─────────────────────────────────────────────────────────
#
#    Ordered per semantic field, newest layout first. Each entry is one of:
#      ("text",  selector)              text of the first matching node
#      ("attr",  selector, attribute)   attribute of the first match ("" = root)
#      ("all",   selector)              every matching node, in document order
#      ("regex", pattern[, "html"])     first capture group over the root text
#                                       (or its raw HTML)

FIELD_STRATEGIES: dict = {
    "listing": [
        ("all", "div.Nv2PK"),
        ("all", '[data-testid="place-card"]'),
        ("all", ".section-result"),
        ("all", ".place-result"),
        ("all", '[jsaction*="placeCard"]'),
    ],
    "name": [
        ("attr", 'a[href*="/maps/place"]', "aria-label"),
        ("text", "div.qBF1Pd"),
        ("text", '[data-testid="place-card"] h3'),
        ("text", ".section-result-title span"),
        ("text", ".place-result h3"),
        ("text", "h3"),
    ],
    "maps_url": [
        ("attr", 'a[href*="/maps/place"]', "href"),
        ("attr", "a[data-url]", "data-url"),
    ],
    "external_id": [
        ("attr", "", "data-place-id"),
        ("attr", "[data-place-id]", "data-place-id"),
        ("attr", "", "data-cid"),
        ("regex", r"/maps/place/[^\"'\s]*?!1s(0x[0-9a-fA-F]+:0x[0-9a-fA-F]+)", "html"),
        ("regex", r"[?&]cid=(\d+)", "html"),
    ],
    "address": [
        ("text", 'span[data-testid*="address"]'),
        ("text", ".section-result-location"),
        ("text", ".place-result .address"),
        ("regex", r"[^\n·]+·[ \t]*([^\n·]+)"),
    ],
    "phone": [
        ("text", "span.UsdlK"),
        ("text", '[data-testid*="phone"]'),
        ("text", ".section-result-phone-number"),
        ("text", ".place-result .phone"),
        ("regex", r"((?:\+\d{1,3}[\s.-]?)?\(?\d{2,4}\)?[\s.-]?\d{3,4}[\s.-]?\d{3,4})"),
    ],
    "website": [
        ("attr", 'a[data-value="Website"]', "href"),
        ("attr", 'a[data-testid*="website"]', "href"),
        ("attr", "a.website", "href"),
    ],
    "category": [
        ("text", "span.DkEaL"),
        ("text", '[data-testid="category"]'),
        ("text", ".section-result-details"),
        ("regex", r"^[ \t]*([^\n·]+?)[ \t]*·"),
    ],
    "secondary_categories": [
        ("all", '[data-testid="secondary-category"]'),
        ("all", ".category-chip"),
    ],
    "attributes": [
        ("all", '[data-testid="attribute"]'),
        ("all", ".place-attribute"),
    ],
    "rating": [
        ("text", "span.MW4etd"),
        ("attr", 'span[role="img"][aria-label*="star"]', "aria-label"),
        ("attr", '[role="img"][aria-label*="rating"]', "aria-label"),
        ("text", '[data-testid="rating"]'),
        ("text", ".section-result-rating"),
        ("text", ".place-result .rating"),
        ("regex", r"(\d\.\d)\s*\(\d[\d,.]*\)"),
    ],
    "review_count": [
        ("text", "span.UY7F9"),
        ("regex", r'aria-label="[^"]*?(\d[\d,.\u00a0]*)\s*[Rr]eviews?', "html"),
        ("text", '[data-testid="review-count"]'),
        ("text", ".section-result-num-ratings"),
        ("text", ".place-result .reviews"),
        ("regex", r"\d\.\d\s*\((\d[\d,.]*)\)"),
    ],
    "reviews": [
        ("all", "div[data-review-id]"),
        ("all", '[data-testid="review"]'),
    ],
    "review_author": [
        ("text", "div.d4r55"),
        ("text", '[data-testid="review-author"]'),
        ("text", ".review-author"),
    ],
    "review_rating": [
        ("attr", 'span.kvMYJc[aria-label]', "aria-label"),
        ("text", '[data-testid="review-rating"]'),
        ("text", ".review-rating"),
    ],
    "review_text": [
        ("text", "span.wiI7pd"),
        ("text", '[data-testid="review-text"]'),
        ("text", ".review-text"),
    ],
    "review_date": [
        ("text", "span.rsqaWe"),
        ("text", '[data-testid="review-date"]'),
        ("text", ".review-date"),
    ],
    "review_helpful": [
        ("text", "span.pkWtMe"),
        ("text", '[data-testid="review-helpful"]'),
        ("text", ".review-helpful"),
    ],
    "posts": [
        ("all", "div[data-post-id]"),
        ("all", '[data-testid="post"]'),
    ],
    "post_type": [
        ("attr", "", "data-post-type"),
        ("text", ".post-type"),
    ],
    "post_title": [
        ("text", '[data-testid="post-title"]'),
        ("text", ".post-title"),
    ],
    "post_content": [
        ("text", '[data-testid="post-content"]'),
        ("text", ".post-content"),
    ],
    "post_date": [
        ("text", '[data-testid="post-date"]'),
        ("text", ".post-date"),
    ],
}
