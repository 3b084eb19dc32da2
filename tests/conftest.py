"""
Pytest configuration and fixtures for gmb-export tests

Listings are synthetic HTML cards using the same class names and test ids
the strategy table knows about, so the whole pipeline runs without a
browser.
"""
from contextlib import asynccontextmanager
from typing import Iterable, List, Optional, Sequence

import pytest
from bs4 import BeautifulSoup, Tag

import gmb_export.config as cfg
from gmb_export.core.parser import RecordExtractor
from gmb_export.models.session import ExtractionSettings
from gmb_export.storage.database import Store


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests with no browser, network or disk database"
    )
    config.addinivalue_line(
        "markers", "integration: Tests that drive the export service end to end"
    )


@pytest.fixture(autouse=True)
def no_screenshots(monkeypatch):
    """Never write screenshots from tests"""
    monkeypatch.setattr(cfg, "ENABLE_SCREENSHOTS", False)


# =======================
# LISTING HTML
# =======================

def listing_html(
    n: int,
    name: Optional[str] = None,
    place_id: Optional[str] = "auto",
    rating: Optional[str] = "4.5",
    reviews: Optional[str] = "(120)",
    category: Optional[str] = "Plumber",
    address: Optional[str] = None,
    phone: Optional[str] = "(212) 555-0100",
    website: Optional[str] = None,
    extra: str = "",
) -> str:
    """
    Render one listing card

    Args:
        n: Listing number, used for default name, id and address
        place_id: "auto" for a generated id, None to omit it
        extra: Raw HTML appended inside the card (reviews, posts, chips)
    """
    name = name if name is not None else f"Business {n}"
    place_id = f"0x{n:04x}:0x{n * 7:04x}" if place_id == "auto" else place_id
    address = address if address is not None else f"{n} Main St"
    id_attr = f' data-place-id="{place_id}"' if place_id else ""
    parts = [f'<div class="Nv2PK"{id_attr}>']
    if name:
        slug = name.replace(" ", "+")
        parts.append(
            f'<a href="https://www.google.com/maps/place/{slug}/" aria-label="{name}"></a>'
            f'<div class="qBF1Pd">{name}</div>'
        )
    if rating:
        parts.append(f'<span class="MW4etd">{rating}</span>')
    if reviews:
        parts.append(f'<span class="UY7F9">{reviews}</span>')
    if category:
        parts.append(f'<span class="DkEaL">{category}</span>')
    if address:
        parts.append(f'<span data-testid="address">{address}</span>')
    if phone:
        parts.append(f'<span class="UsdlK">{phone}</span>')
    if website:
        parts.append(f'<a data-value="Website" href="{website}">Website</a>')
    parts.append(extra)
    parts.append("</div>")
    return "".join(parts)


def parse_listing(html: str) -> Tag:
    """Parse a single card and return its root element"""
    soup = BeautifulSoup(html, "lxml")
    return soup.select_one("div.Nv2PK") or soup.body.contents[0]


# =======================
# FAKE PAGE
# =======================

class FakeListingPage:
    """
    In-memory results page

    ``batches`` are revealed one per ``load_more`` call; the content height
    grows with each batch and stops changing once they are exhausted.
    """

    def __init__(
        self,
        batches: Sequence[Iterable[str]] = (),
        ready_after: int = 0,
        never_ready: bool = False,
        end_marker: bool = False,
    ) -> None:
        self._batches = [list(b) for b in batches]
        self._revealed = 1 if self._batches else 0
        self._ready_after = ready_after
        self._never_ready = never_ready
        self._end_marker = end_marker
        self.ready_polls = 0
        self.load_calls = 0

    def _visible(self) -> List[str]:
        return [html for batch in self._batches[: self._revealed] for html in batch]

    async def is_ready(self) -> bool:
        self.ready_polls += 1
        if self._never_ready:
            return False
        return self.ready_polls > self._ready_after

    async def load_more(self) -> None:
        self.load_calls += 1
        if self._revealed < len(self._batches):
            self._revealed += 1

    async def content_height(self) -> int:
        return 100 * len(self._visible())

    async def listing_nodes(self) -> List[Tag]:
        soup = BeautifulSoup("".join(self._visible()), "lxml")
        return soup.select("div.Nv2PK")

    async def reached_end(self) -> bool:
        return self._end_marker and self._revealed >= len(self._batches)


class FlakyExtractor(RecordExtractor):
    """Records every call and raises for listings whose name is in ``broken``"""

    def __init__(self, broken: Iterable[str] = ()) -> None:
        super().__init__()
        self.broken = set(broken)
        self.seen: List[str] = []

    def extract(self, node, query_source=None):
        name = node.select_one(".qBF1Pd").get_text()
        self.seen.append(name)
        if name in self.broken:
            raise RuntimeError("detached node")
        return super().extract(node, query_source)


class PageFactory:
    """Stand-in for ``open_maps_page`` that counts how often it is opened"""

    def __init__(self, page_builder) -> None:
        self.page_builder = page_builder
        self.calls = 0

    @asynccontextmanager
    async def __call__(self, target):
        self.calls += 1
        yield self.page_builder()


# =======================
# FIXTURES
# =======================

@pytest.fixture
def fast_settings() -> ExtractionSettings:
    """Zero-delay settings so sessions finish instantly"""
    return ExtractionSettings(
        ready_poll_interval=0,
        ready_max_attempts=5,
        settle_min=0,
        settle_max=0,
        max_stale_attempts=3,
        max_scroll_rounds=50,
        listing_max_attempts=2,
        max_results=None,
    )


@pytest.fixture
def store() -> Store:
    """Fresh in-memory SQLite store with the schema created"""
    s = Store("sqlite://")
    s.create_schema()
    yield s
    s.engine.dispose()


@pytest.fixture
def listings() -> List[str]:
    """23 distinct listing cards"""
    return [listing_html(n) for n in range(1, 24)]
