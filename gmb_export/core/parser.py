"""
Record extraction -- turns one listing node into a ``BusinessRecord``.

Pure and total over the resolver's strategy table: no network calls, no
page access. Missing fields stay ``None``; a listing without a name is
discarded rather than emitted.
"""

import re
from typing import List, Optional, Union

from bs4 import Tag
from loguru import logger
from pydantic import ValidationError

from gmb_export.core.selectors import SelectorResolver
from gmb_export.models.business import BusinessRecord, PostRecord, ReviewRecord
from gmb_export.utils.text import parse_float, parse_int


class Discarded:
    """Extraction result for a listing that did not yield a valid record."""

    __slots__ = ("reason",)

    def __init__(self, reason: str) -> None:
        self.reason = reason

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"Discarded({self.reason!r})"


ExtractResult = Union[BusinessRecord, Discarded]

_POST_TYPES = ("update", "offer", "event")


# ── Field-level parsing helpers ──────────────────────────────────────────────

def _parse_phone(text: Optional[str]) -> Optional[str]:
    """Keep *text* only if it carries at least 8 digits."""
    if not text:
        return None
    digits = re.sub(r"\D", "", text)
    return text if len(digits) >= 8 else None


def _parse_rating(text: Optional[str]) -> Optional[float]:
    rating = parse_float(text)
    if rating is None or not (0.0 <= rating <= 5.0):
        return None
    return rating


def _parse_stars(text: Optional[str]) -> Optional[int]:
    """Review stars: first number, rounded, kept only within 1-5."""
    value = parse_float(text)
    if value is None:
        return None
    stars = int(round(value))
    return stars if 1 <= stars <= 5 else None


def _parse_count(text: Optional[str]) -> Optional[int]:
    count = parse_int(text)
    if count is None or count < 0:
        return None
    return count


# ── Extractor ────────────────────────────────────────────────────────────────

class RecordExtractor:
    """Applies a ``SelectorResolver`` to one listing node."""

    def __init__(self, resolver: Optional[SelectorResolver] = None) -> None:
        self.resolver = resolver or SelectorResolver()

    def extract(
        self,
        node: Tag,
        query_source: Optional[str] = None,
    ) -> ExtractResult:
        """
        Build a record from *node*.

        Parameters
        ----------
        node : Tag
            Root element of one listing.
        query_source : str or None
            Label of the originating query (stored on the record).

        Returns
        -------
        BusinessRecord or Discarded
        """
        r = self.resolver
        name = r.text("name", node)
        if not name:
            return Discarded("missing name")

        category = r.resolve("category", node)
        secondary = r.resolve("secondary_categories", node)
        attributes = r.resolve("attributes", node)
        primary = category.value if category else None
        secondary_values = [
            v for v in (secondary.values if secondary else []) if v != primary
        ]

        try:
            return BusinessRecord(
                external_id=r.text("external_id", node),
                name=name,
                address=r.text("address", node),
                phone=_parse_phone(r.text("phone", node)),
                website=r.text("website", node),
                maps_url=r.text("maps_url", node),
                primary_category=primary,
                secondary_categories=secondary_values,
                attributes=attributes.values if attributes else [],
                rating=_parse_rating(r.text("rating", node)),
                review_count=_parse_count(r.text("review_count", node)),
                reviews=self._extract_reviews(node),
                posts=self._extract_posts(node),
                query_source=query_source,
            )
        except ValidationError as exc:
            logger.debug("Listing '{}' failed validation: {}", name, exc)
            return Discarded(f"invalid record: {exc.error_count()} error(s)")

    # -- Nested records ----------------------------------------------------

    def _extract_reviews(self, node: Tag) -> List[ReviewRecord]:
        matched = self.resolver.resolve("reviews", node)
        if not matched:
            return []
        r = self.resolver
        reviews: List[ReviewRecord] = []
        for review_node in matched.nodes:
            review = ReviewRecord(
                author=r.text("review_author", review_node),
                rating=_parse_stars(r.text("review_rating", review_node)),
                text=r.text("review_text", review_node),
                date=r.text("review_date", review_node),
                helpful=_parse_count(r.text("review_helpful", review_node)),
            )
            if review.author or review.text:
                reviews.append(review)
        return reviews

    def _extract_posts(self, node: Tag) -> List[PostRecord]:
        matched = self.resolver.resolve("posts", node)
        if not matched:
            return []
        r = self.resolver
        posts: List[PostRecord] = []
        for post_node in matched.nodes:
            kind = (r.text("post_type", post_node) or "update").lower()
            post = PostRecord(
                type=kind if kind in _POST_TYPES else "update",
                title=r.text("post_title", post_node),
                content=r.text("post_content", post_node),
                date=r.text("post_date", post_node),
                has_media=post_node.select_one("img, video") is not None,
                has_link=post_node.select_one("a[href]") is not None,
            )
            if post.title or post.content:
                posts.append(post)
        return posts


def extract_record(node: Tag, query_source: Optional[str] = None) -> ExtractResult:
    """Module-level shortcut using the default strategy table."""
    return RecordExtractor().extract(node, query_source)
