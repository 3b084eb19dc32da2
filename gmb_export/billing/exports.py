"""
Export state machine -- one export request end to end.

    pending --admission--> processing --settlement--> completed
       |                       |
       +------> failed <-------+

Admission is a non-mutating balance check so users with no credit fail
fast without any extraction. The debit is written only at settlement,
after extraction and the workbook have both succeeded, in the same
transaction that marks the job completed. Settling an already-completed
job is a no-op, so a retried "mark completed" can never double-charge.
"""

import asyncio
from collections import deque
from contextlib import AbstractAsyncContextManager
from datetime import timedelta
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional

from loguru import logger

import gmb_export.config as cfg
from gmb_export.billing.ledger import CreditLedger
from gmb_export.core.error_handler import ErrorHandler
from gmb_export.core.errors import (
    ExportCancelled,
    ExportError,
    InsufficientCredits,
    StorageUnavailable,
)
from gmb_export.core.orchestrator import ExtractionOrchestrator
from gmb_export.models.billing import CreditTransaction, ExportJob, ExportTarget, JobStatus
from gmb_export.models.business import utcnow
from gmb_export.models.session import ExtractionSession, SessionStatus
from gmb_export.storage.database import Settlement, Store
from gmb_export.utils.events import JobEvent, JobEventStream
from gmb_export.utils.exporter import ArtifactSink, BuildOptions, LocalArtifactSink, build_artifact

PageFactory = Callable[[ExportTarget], AbstractAsyncContextManager]


def _default_page_factory(target: ExportTarget) -> AbstractAsyncContextManager:
    # imported lazily so the service can run without a browser installed
    from gmb_export.core.browser import open_maps_page

    return open_maps_page(target)


class ExportService:
    """
    Job control surface: request, inspect, cancel and list exports, and
    manage the credits that pay for them.

    Each job runs as its own asyncio task; jobs share nothing in memory
    except this registry of tasks, cancel signals and event streams.
    """

    def __init__(
        self,
        store: Store,
        page_factory: Optional[PageFactory] = None,
        orchestrator: Optional[ExtractionOrchestrator] = None,
        sink: Optional[ArtifactSink] = None,
    ) -> None:
        self.store = store
        self.ledger = CreditLedger(store)
        self.page_factory = page_factory or _default_page_factory
        self.orchestrator = orchestrator or ExtractionOrchestrator()
        self.sink = sink or LocalArtifactSink()
        self._tasks: Dict[int, asyncio.Task] = {}
        self._cancels: Dict[int, asyncio.Event] = {}
        self._streams: Dict[int, JobEventStream] = {}
        self._finished: Deque[int] = deque()

    # -- Commands ----------------------------------------------------------

    async def request_export(
        self,
        user_id: int,
        target: ExportTarget,
        cost: int = cfg.DEFAULT_EXPORT_COST,
    ) -> int:
        """
        Create a job, run the admission check and start extraction.

        Returns the job id once the job is ``processing``. Raises
        ``InsufficientCredits`` (with ``job_id`` set) after marking the job
        ``failed`` when the balance does not cover *cost*, and ``ValueError``
        before any job exists when *cost* is not positive.
        """
        if cost <= 0:
            raise ValueError("Export cost must be positive")
        job = self.store.create_job(user_id, target, cost)
        stream = self._streams[job.id] = JobEventStream(job.id)
        stream.publish_status(JobStatus.PENDING)
        logger.info(
            "Export {} requested by user {} ('{}', cost {})",
            job.id,
            user_id,
            target.search_text,
            cost,
        )

        try:
            self.ledger.check_and_reserve(user_id, cost)
        except InsufficientCredits as exc:
            exc.job_id = job.id
            self._fail(job.id, JobStatus.PENDING, exc)
            stream.close()
            self._retire_stream(job.id)
            raise

        self.store.transition_job(job.id, JobStatus.PENDING, JobStatus.PROCESSING)
        stream.publish_status(JobStatus.PROCESSING)

        cancel = self._cancels[job.id] = asyncio.Event()
        self._tasks[job.id] = asyncio.create_task(
            self._run(job.id, target, cancel), name=f"export-{job.id}"
        )
        return job.id

    def cancel_job(self, job_id: int) -> bool:
        """Signal a running job to stop. Returns False if nothing was running."""
        cancel = self._cancels.get(job_id)
        if cancel is None or cancel.is_set():
            return False
        cancel.set()
        logger.info("Cancellation requested for export {}", job_id)
        return True

    def mark_completed(
        self,
        job_id: int,
        download_url: str,
        record_count: int,
    ) -> ExportJob:
        """
        Settle a processing job. Idempotent: a completed job is returned
        unchanged and no second consumption is written.
        """
        outcome = self.ledger.settle(job_id, download_url, record_count)
        job = self.store.get_job(job_id)
        if outcome is Settlement.SETTLED:
            logger.info("Export {} completed; {} credit(s) consumed", job_id, job.cost)
        elif outcome is Settlement.ALREADY_COMPLETED:
            logger.debug("Export {} already completed; nothing to settle", job_id)
            return job
        elif outcome is Settlement.INSUFFICIENT:
            logger.warning("Export {} failed at settlement: {}", job_id, job.error_message)
        else:
            logger.warning(
                "Export {} is {} -- settlement skipped", job_id, job.status.value
            )
            return job
        self._publish_status(job)
        return job

    def purchase_credits(
        self,
        user_id: int,
        amount: int,
        description: Optional[str] = None,
    ) -> int:
        return self.ledger.purchase(user_id, amount, description)

    # -- Queries -----------------------------------------------------------

    def get_job_status(self, job_id: int) -> ExportJob:
        return self.store.get_job(job_id)

    def list_jobs(self, user_id: int) -> List[ExportJob]:
        return self.store.list_jobs(user_id)

    def get_balance(self, user_id: int) -> int:
        return self.ledger.balance(user_id)

    def credit_history(self, user_id: int) -> List[CreditTransaction]:
        return self.ledger.history(user_id)

    def stuck_jobs(self, older_than: float = cfg.STUCK_JOB_TIMEOUT) -> List[ExportJob]:
        """Jobs still ``processing`` with no update for *older_than* seconds."""
        cutoff = utcnow() - timedelta(seconds=older_than)
        return self.store.jobs_in_status_before(JobStatus.PROCESSING, cutoff)

    async def wait(self, job_id: int) -> ExportJob:
        """Wait for the job's worker (if any) and return its final row."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.store.get_job(job_id)

    async def events(self, job_id: int) -> AsyncIterator[JobEvent]:
        """Replay then follow the job's events until it finishes."""
        stream = self._streams.get(job_id)
        if stream is None:
            job = self.store.get_job(job_id)
            stream = JobEventStream(job_id)
            stream.publish_status(job.status, job.error_code)
            stream.close()
        async for event in stream.subscribe():
            yield event

    # -- Worker ------------------------------------------------------------

    async def _run(self, job_id: int, target: ExportTarget, cancel: asyncio.Event) -> None:
        stream = self._streams[job_id]
        try:
            session = await self._extract(job_id, target, cancel, stream)

            if session.status == SessionStatus.FAILED:
                self._fail(job_id, JobStatus.PROCESSING, session.failure)
                return
            if session.status == SessionStatus.CANCELLED or cancel.is_set():
                self._fail(
                    job_id,
                    JobStatus.PROCESSING,
                    ExportCancelled(
                        f"Cancelled with {len(session.records)} record(s) gathered"
                    ),
                )
                return

            artifact = build_artifact(
                session.records, BuildOptions(source_query=target.search_text)
            )
            handle = self.sink.store(artifact)
            self.mark_completed(job_id, handle, artifact.row_count)

        except StorageUnavailable as exc:
            # left in processing for reconciliation; see stuck_jobs()
            logger.error("Export {} hit storage failure: {}", job_id, exc)
            stream.publish_status(JobStatus.PROCESSING, exc.code)
        except ExportError as exc:
            self._fail(job_id, JobStatus.PROCESSING, exc)
        except asyncio.CancelledError:
            self._fail(job_id, JobStatus.PROCESSING, ExportCancelled("Worker cancelled"))
            raise
        except Exception as exc:
            logger.exception("Export {} crashed", job_id)
            self._fail(job_id, JobStatus.PROCESSING, exc)
        finally:
            stream.close()
            self._retire_stream(job_id)
            self._cancels.pop(job_id, None)
            self._tasks.pop(job_id, None)

    async def _extract(
        self,
        job_id: int,
        target: ExportTarget,
        cancel: asyncio.Event,
        stream: JobEventStream,
    ) -> ExtractionSession:
        orchestrator = self.orchestrator
        if target.max_results is not None:
            orchestrator = ExtractionOrchestrator(
                orchestrator.extractor,
                orchestrator.settings.model_copy(
                    update={"max_results": target.max_results}
                ),
            )

        async with self.page_factory(target) as page:
            session = await orchestrator.run(
                page,
                target.query,
                target.location,
                cancel=cancel,
                on_progress=stream.publish_progress,
            )
            if session.status == SessionStatus.FAILED:
                await ErrorHandler.take_screenshot(page, f"export_{job_id}_failure")
        return session

    # -- Helpers -----------------------------------------------------------

    def _fail(self, job_id: int, expected: JobStatus, error: Optional[BaseException]) -> None:
        code = getattr(error, "code", "export_error")
        message = str(error) if error is not None else None
        moved = self.store.transition_job(
            job_id,
            expected,
            JobStatus.FAILED,
            error_code=code,
            error_message=message,
        )
        if moved:
            logger.error("Export {} failed [{}]: {}", job_id, code, message)
            stream = self._streams.get(job_id)
            if stream is not None:
                stream.publish_status(JobStatus.FAILED, code)

    def _publish_status(self, job: ExportJob) -> None:
        stream = self._streams.get(job.id)
        if stream is not None:
            stream.publish_status(job.status, job.error_code)

    def _retire_stream(self, job_id: int) -> None:
        # events() rebuilds a final status event for streams dropped here
        self._finished.append(job_id)
        while len(self._finished) > cfg.FINISHED_STREAMS_KEPT:
            self._streams.pop(self._finished.popleft(), None)
