"""
One-way event stream per export job (progress and status changes).

Subscribers always replay from the first event, so a UI that attaches
late, or reconnects, sees the whole history before live events.
"""

import asyncio
from datetime import datetime
from typing import AsyncIterator, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from gmb_export.models.billing import JobStatus
from gmb_export.models.business import utcnow
from gmb_export.models.session import ProgressEvent


class JobEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: int
    seq: int
    kind: Literal["progress", "status"]
    status: Optional[JobStatus] = None
    progress: Optional[ProgressEvent] = None
    error_code: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class JobEventStream:
    """Append-only event log with async, restartable subscriptions."""

    def __init__(self, job_id: int) -> None:
        self.job_id = job_id
        self._events: List[JobEvent] = []
        self._closed = False
        self._wakeup = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    def history(self) -> List[JobEvent]:
        return list(self._events)

    def _append(self, **fields) -> JobEvent:
        event = JobEvent(job_id=self.job_id, seq=len(self._events), **fields)
        self._events.append(event)
        self._wake()
        return event

    def _wake(self) -> None:
        waiter, self._wakeup = self._wakeup, asyncio.Event()
        waiter.set()

    def publish_progress(self, progress: ProgressEvent) -> JobEvent:
        return self._append(kind="progress", progress=progress)

    def publish_status(
        self,
        status: JobStatus,
        error_code: Optional[str] = None,
    ) -> JobEvent:
        return self._append(kind="status", status=status, error_code=error_code)

    def close(self) -> None:
        self._closed = True
        self._wake()

    async def subscribe(self) -> AsyncIterator[JobEvent]:
        """Yield every event from the start, then live ones until closed."""
        cursor = 0
        while True:
            while cursor < len(self._events):
                yield self._events[cursor]
                cursor += 1
            if self._closed:
                return
            await self._wakeup.wait()
