"""
Pydantic data model for harvested business listings.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Naive UTC timestamp (what the database and the spreadsheet store)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ReviewRecord(BaseModel):
    """One review nested under a business. Never persisted on its own."""

    model_config = ConfigDict(frozen=True)

    author: Optional[str] = Field(None, description="Reviewer display name")
    rating: Optional[int] = Field(None, ge=1, le=5, description="Stars (1-5)")
    text: Optional[str] = Field(None, description="Free review text")
    date: Optional[str] = Field(None, description="Date as shown on the page")
    helpful: Optional[int] = Field(None, ge=0, description="Helpfulness votes")


class PostRecord(BaseModel):
    """One Google Business post nested under a business."""

    model_config = ConfigDict(frozen=True)

    type: Literal["update", "offer", "event"] = "update"
    title: Optional[str] = None
    content: Optional[str] = None
    date: Optional[str] = None
    has_media: bool = False
    has_link: bool = False


class BusinessRecord(BaseModel):
    """All data extractable from one listing node. Immutable once emitted."""

    model_config = ConfigDict(frozen=True)

    external_id: Optional[str] = Field(
        None, description="Stable place identifier (place id / cid)"
    )
    name: str = Field(..., min_length=1, description="Business name")
    address: Optional[str] = Field(None, description="Street address")
    phone: Optional[str] = Field(None, description="Phone number")
    website: Optional[str] = Field(None, description="Business website URL")
    maps_url: Optional[str] = Field(None, description="Google Maps place URL")
    primary_category: Optional[str] = Field(None, description="Main category")
    secondary_categories: List[str] = Field(
        default_factory=list, description="Further categories, in page order"
    )
    attributes: List[str] = Field(default_factory=list)
    rating: Optional[float] = Field(None, ge=0.0, le=5.0, description="Stars")
    review_count: Optional[int] = Field(None, ge=0, description="Review total")
    reviews: List[ReviewRecord] = Field(default_factory=list)
    posts: List[PostRecord] = Field(default_factory=list)
    query_source: Optional[str] = Field(
        None, description="The query that produced this result"
    )
    scraped_at: datetime = Field(
        default_factory=utcnow,
        description="UTC timestamp of when the record was captured",
    )

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("secondary_categories")
    @classmethod
    def _ordered_unique(cls, value: List[str]) -> List[str]:
        # ordered set: first occurrence wins
        return list(dict.fromkeys(v for v in value if v))

    @property
    def dedupe_key(self) -> str:
        """External id when resolved, otherwise name + address."""
        if self.external_id:
            return f"id:{self.external_id}"
        return f"na:{self.name.lower()}|{(self.address or '').lower()}"
