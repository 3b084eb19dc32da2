"""
State carried by one extraction run, plus the settings that drive it.
"""

from datetime import datetime
from enum import Enum
from typing import Callable, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

import gmb_export.config as cfg
from gmb_export.core.errors import ExportError, ListingExtractionError
from gmb_export.models.business import BusinessRecord, utcnow


class Phase(str, Enum):
    AWAITING_READY = "awaiting_ready"
    LOADING_MORE = "loading_more"
    EXTRACTING = "extracting"
    STALLED = "stalled"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SessionStatus(str, Enum):
    RUNNING = "running"
    STALLED = "stalled"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETE, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    listings_found: int
    listings_extracted: int
    phase: Phase
    at: datetime = Field(default_factory=utcnow)


class ExtractionSettings(BaseModel):
    """Timing and bounds for one session. Defaults come from ``config``."""

    ready_poll_interval: float = Field(default_factory=lambda: cfg.READY_POLL_INTERVAL)
    ready_max_attempts: int = Field(default_factory=lambda: cfg.READY_MAX_ATTEMPTS)
    settle_min: float = Field(default_factory=lambda: cfg.SCROLL_SETTLE_MIN)
    settle_max: float = Field(default_factory=lambda: cfg.SCROLL_SETTLE_MAX)
    max_stale_attempts: int = Field(default_factory=lambda: cfg.MAX_STALE_ATTEMPTS)
    max_scroll_rounds: int = Field(default_factory=lambda: cfg.MAX_SCROLL_ROUNDS)
    listing_max_attempts: int = Field(default_factory=lambda: cfg.LISTING_MAX_ATTEMPTS)
    max_results: Optional[int] = Field(default_factory=lambda: cfg.DEFAULT_MAX_RESULTS)


ProgressListener = Callable[[ProgressEvent], None]


class ExtractionSession(BaseModel):
    """
    Process-wide state for one run.

    Owned and mutated by the orchestrator only; everyone else reads it once
    ``status`` is terminal.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    query: str
    location: Optional[str] = None
    records: List[BusinessRecord] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.RUNNING
    phase: Phase = Phase.AWAITING_READY
    end_reason: Optional[str] = None
    stale_rounds: int = 0          # total unchanged-height checks, never reset
    scroll_rounds: int = 0
    listings_found: int = 0
    errors: List[ListingExtractionError] = Field(default_factory=list)
    failure: Optional[ExportError] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    _history: List[ProgressEvent] = PrivateAttr(default_factory=list)
    _listener: Optional[ProgressListener] = PrivateAttr(default=None)
    _seen_keys: set = PrivateAttr(default_factory=set)

    # -- Progress channel --------------------------------------------------

    def subscribe(self, listener: Optional[ProgressListener]) -> None:
        self._listener = listener

    def emit(self, phase: Phase) -> ProgressEvent:
        self.phase = phase
        event = ProgressEvent(
            listings_found=self.listings_found,
            listings_extracted=len(self.records),
            phase=phase,
        )
        self._history.append(event)
        if self._listener is not None:
            self._listener(event)
        return event

    def progress(self) -> Iterator[ProgressEvent]:
        """Replay every event emitted so far. Each call starts from the top."""
        return iter(list(self._history))

    # -- Records -----------------------------------------------------------

    def add_record(self, record: BusinessRecord) -> bool:
        """Append *record* unless its dedupe key was already seen."""
        key = record.dedupe_key
        if key in self._seen_keys:
            return False
        self._seen_keys.add(key)
        self.records.append(record)
        return True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(self, status: SessionStatus, reason: Optional[str] = None) -> None:
        self.status = status
        self.end_reason = reason
        self.finished_at = utcnow()
        self.emit(Phase(status.value))
