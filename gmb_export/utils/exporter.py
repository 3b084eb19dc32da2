"""
Artifact builder -- packages harvested records into a multi-sheet .xlsx.

Sheets (names and column order are a contract consumers rely on):
    Businesses   one row per record
    Reviews      every nested review, with its parent's row number (optional)
    Posts        every nested post, with its parent's row number (optional)
    Summary      record count, average rating, export timestamp, source query
"""

import io
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

import pandas as pd
from loguru import logger
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from pydantic import BaseModel, ConfigDict, Field

import gmb_export.config as cfg
from gmb_export.core.errors import NoDataError
from gmb_export.models.business import BusinessRecord, utcnow

XLSX_CONTENT_TYPE = (
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
)

BUSINESSES_SHEET = "Businesses"
REVIEWS_SHEET = "Reviews"
POSTS_SHEET = "Posts"
SUMMARY_SHEET = "Summary"

# column -> width
BUSINESS_COLUMNS: Dict[str, int] = {
    "#": 5,
    "Business Name": 30,
    "Address": 40,
    "Phone": 18,
    "Website": 40,
    "Primary Category": 22,
    "Secondary Categories": 30,
    "Rating": 8,
    "Reviews": 10,
    "Place ID": 24,
    "Google Maps URL": 50,
    "Scraped At": 20,
}
REVIEW_COLUMNS: Dict[str, int] = {
    "Business #": 10,
    "Business Name": 30,
    "Review Author": 20,
    "Rating": 8,
    "Review Text": 60,
    "Review Date": 15,
    "Helpful": 8,
}
POST_COLUMNS: Dict[str, int] = {
    "Business #": 10,
    "Business Name": 30,
    "Post Type": 10,
    "Title": 30,
    "Content": 60,
    "Date": 15,
    "Has Media": 10,
    "Has Link": 10,
}
SUMMARY_COLUMNS: Dict[str, int] = {"Field": 24, "Value": 40}

_HYPERLINK_COLUMNS = ("Website", "Google Maps URL")
_NUMBER_FORMATS = {"Rating": "0.0", "Reviews": "#,##0", "Helpful": "#,##0"}


class BuildOptions(BaseModel):
    source_query: Optional[str] = None
    include_reviews: bool = True
    include_posts: bool = True
    exported_at: Optional[datetime] = None


class Artifact(BaseModel):
    """The finished spreadsheet as an opaque blob plus a little metadata."""

    model_config = ConfigDict(frozen=True)

    filename: str
    content: bytes = Field(repr=False)
    row_count: int
    sheet_names: List[str]
    created_at: datetime
    content_type: str = XLSX_CONTENT_TYPE


# ── Sheet frames ─────────────────────────────────────────────────────────────

def _businesses_frame(records: Sequence[BusinessRecord]) -> pd.DataFrame:
    rows = [
        {
            "#": index,
            "Business Name": r.name,
            "Address": r.address,
            "Phone": r.phone,
            "Website": r.website,
            "Primary Category": r.primary_category,
            "Secondary Categories": ", ".join(r.secondary_categories) or None,
            "Rating": r.rating,
            "Reviews": r.review_count,
            "Place ID": r.external_id,
            "Google Maps URL": r.maps_url,
            "Scraped At": r.scraped_at,
        }
        for index, r in enumerate(records, start=1)
    ]
    return pd.DataFrame(rows, columns=list(BUSINESS_COLUMNS))


def _reviews_frame(records: Sequence[BusinessRecord]) -> pd.DataFrame:
    rows = [
        {
            "Business #": index,
            "Business Name": r.name,
            "Review Author": review.author,
            "Rating": review.rating,
            "Review Text": review.text,
            "Review Date": review.date,
            "Helpful": review.helpful,
        }
        for index, r in enumerate(records, start=1)
        for review in r.reviews
    ]
    return pd.DataFrame(rows, columns=list(REVIEW_COLUMNS))


def _posts_frame(records: Sequence[BusinessRecord]) -> pd.DataFrame:
    rows = [
        {
            "Business #": index,
            "Business Name": r.name,
            "Post Type": post.type,
            "Title": post.title,
            "Content": post.content,
            "Date": post.date,
            "Has Media": post.has_media,
            "Has Link": post.has_link,
        }
        for index, r in enumerate(records, start=1)
        for post in r.posts
    ]
    return pd.DataFrame(rows, columns=list(POST_COLUMNS))


def export_stats(records: Sequence[BusinessRecord]) -> Dict[str, int]:
    """Field coverage counts for the summary sheet."""
    return {
        "total": len(records),
        "with_address": sum(1 for r in records if r.address),
        "with_phone": sum(1 for r in records if r.phone),
        "with_website": sum(1 for r in records if r.website),
        "with_rating": sum(1 for r in records if r.rating is not None),
        "with_reviews": sum(1 for r in records if r.review_count),
    }


def _summary_frame(
    records: Sequence[BusinessRecord],
    options: BuildOptions,
    exported_at: datetime,
) -> pd.DataFrame:
    ratings = [r.rating for r in records if r.rating is not None]
    average = round(sum(ratings) / len(ratings), 2) if ratings else None
    stats = export_stats(records)
    rows = [
        ("Total Businesses", stats["total"]),
        ("Average Rating", average),
        ("Export Date", exported_at.strftime("%Y-%m-%d %H:%M:%S")),
        ("Source Query", options.source_query),
        ("Source", cfg.SOURCE_NAME),
        ("With Address", stats["with_address"]),
        ("With Phone", stats["with_phone"]),
        ("With Website", stats["with_website"]),
        ("With Rating", stats["with_rating"]),
        ("With Reviews", stats["with_reviews"]),
    ]
    return pd.DataFrame(rows, columns=list(SUMMARY_COLUMNS))


# ── Formatting ───────────────────────────────────────────────────────────────

def _format_sheet(ws: Worksheet, widths: Dict[str, int], n_rows: int) -> None:
    """Frozen header, column widths, number formats and live hyperlinks."""
    ws.freeze_panes = "A2"
    for col_idx, (column, width) in enumerate(widths.items(), start=1):
        ws.column_dimensions[get_column_letter(col_idx)].width = width
        number_format = _NUMBER_FORMATS.get(column)
        is_link = column in _HYPERLINK_COLUMNS
        if not number_format and not is_link:
            continue
        for row in range(2, n_rows + 2):
            cell = ws.cell(row=row, column=col_idx)
            if cell.value in (None, ""):
                continue
            if number_format:
                cell.number_format = number_format
            if is_link:
                cell.hyperlink = str(cell.value)
                cell.style = "Hyperlink"


# ── Builder ──────────────────────────────────────────────────────────────────

def build_artifact(
    records: Sequence[BusinessRecord],
    options: Optional[BuildOptions] = None,
) -> Artifact:
    """
    Render *records* to an in-memory workbook.

    Raises
    ------
    NoDataError
        If *records* is empty -- an empty export must never be billed.
    """
    if not records:
        raise NoDataError("No records to export")

    options = options or BuildOptions()
    exported_at = options.exported_at or utcnow()

    sheets = [(BUSINESSES_SHEET, _businesses_frame(records), BUSINESS_COLUMNS)]
    if options.include_reviews:
        reviews = _reviews_frame(records)
        if not reviews.empty:
            sheets.append((REVIEWS_SHEET, reviews, REVIEW_COLUMNS))
    if options.include_posts:
        posts = _posts_frame(records)
        if not posts.empty:
            sheets.append((POSTS_SHEET, posts, POST_COLUMNS))
    sheets.append(
        (SUMMARY_SHEET, _summary_frame(records, options, exported_at), SUMMARY_COLUMNS)
    )

    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for name, frame, widths in sheets:
            frame.to_excel(writer, sheet_name=name, index=False)
            _format_sheet(writer.sheets[name], widths, len(frame))

    filename = f"export_{exported_at:%Y%m%d_%H%M%S}.xlsx"
    artifact = Artifact(
        filename=filename,
        content=buffer.getvalue(),
        row_count=len(records),
        sheet_names=[name for name, _, _ in sheets],
        created_at=exported_at,
    )
    logger.info(
        "Workbook built ({} rows, sheets: {})  ->  {}",
        artifact.row_count,
        ", ".join(artifact.sheet_names),
        filename,
    )
    return artifact


# ── Sink ─────────────────────────────────────────────────────────────────────

class ArtifactSink(Protocol):
    def store(self, artifact: Artifact) -> str:
        """Persist *artifact* and return a download handle."""
        ...


class LocalArtifactSink:
    """Writes artifacts under a directory; the handle is the file path."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = Path(directory or cfg.EXPORTS_DIR)

    def store(self, artifact: Artifact) -> str:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / artifact.filename
        stem, n = path.stem, 1
        while path.exists():
            path = self.directory / f"{stem}_{n}{path.suffix}"
            n += 1
        path.write_bytes(artifact.content)
        logger.info("Artifact stored ({} bytes)  ->  {}", len(artifact.content), path)
        return str(path)
