"""
Integration tests for the export state machine.

Each test drives ExportService end to end: admission, extraction against a
fake page, workbook build, sink, and settlement on an in-memory store.
"""

import asyncio
from datetime import timedelta

import pytest
from openpyxl import load_workbook
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

import gmb_export.config as cfg
from conftest import FakeListingPage, FlakyExtractor, PageFactory
from gmb_export.billing.exports import ExportService
from gmb_export.core.errors import InsufficientCredits
from gmb_export.core.orchestrator import ExtractionOrchestrator
from gmb_export.models.billing import ExportTarget, JobStatus, TransactionKind
from gmb_export.models.business import utcnow
from gmb_export.storage.database import Store, export_jobs
from gmb_export.utils.exporter import LocalArtifactSink

USER = 7
TARGET = ExportTarget(query="plumbers", location="New York")


@pytest.fixture
def make_service(store, fast_settings, tmp_path):
    def factory(page_builder):
        pages = PageFactory(page_builder)
        service = ExportService(
            store,
            page_factory=pages,
            orchestrator=ExtractionOrchestrator(settings=fast_settings),
            sink=LocalArtifactSink(tmp_path),
        )
        return service, pages

    return factory


def _consumptions(store, user_id=USER):
    return store.transactions(user_id, kind=TransactionKind.CONSUMPTION)


@pytest.mark.integration
def test_completed_export_consumes_once(store, make_service, listings):
    """A successful export writes the file and exactly one consumption"""
    service, pages = make_service(lambda: FakeListingPage([listings]))
    service.purchase_credits(USER, 10)

    async def scenario():
        job_id = await service.request_export(USER, TARGET, cost=3)
        return await service.wait(job_id)

    job = asyncio.run(scenario())

    assert job.status == JobStatus.COMPLETED
    assert job.record_count == 23
    assert job.download_url.endswith(".xlsx")
    assert pages.calls == 1
    assert service.get_balance(USER) == 7
    consumptions = _consumptions(store)
    assert len(consumptions) == 1
    assert consumptions[0].job_id == job.id


@pytest.mark.integration
def test_broken_listing_exports_remaining_rows(store, fast_settings, tmp_path, listings):
    """query="dentist", 23 listings with #7 broken: a 22-row workbook"""
    pages = PageFactory(lambda: FakeListingPage([listings]))
    service = ExportService(
        store,
        page_factory=pages,
        orchestrator=ExtractionOrchestrator(
            FlakyExtractor({"Business 7"}), fast_settings
        ),
        sink=LocalArtifactSink(tmp_path),
    )
    service.purchase_credits(USER, 1)

    async def scenario():
        job_id = await service.request_export(USER, ExportTarget(query="dentist"))
        return await service.wait(job_id)

    job = asyncio.run(scenario())

    assert job.status == JobStatus.COMPLETED
    assert job.record_count == 22
    ws = load_workbook(job.download_url)["Businesses"]
    assert ws.max_row == 23
    assert service.get_balance(USER) == 0


@pytest.mark.integration
def test_empty_harvest_fails_without_charge(store, make_service):
    """Zero records means no file and no consumption"""
    service, _ = make_service(lambda: FakeListingPage([]))
    service.purchase_credits(USER, 10)

    async def scenario():
        job_id = await service.request_export(USER, TARGET)
        return await service.wait(job_id)

    job = asyncio.run(scenario())

    assert job.status == JobStatus.FAILED
    assert job.error_code == "no_data"
    assert job.download_url is None
    assert _consumptions(store) == []
    assert service.get_balance(USER) == 10


@pytest.mark.integration
def test_page_load_timeout_fails_without_charge(store, make_service):
    service, _ = make_service(lambda: FakeListingPage(never_ready=True))
    service.purchase_credits(USER, 10)

    async def scenario():
        job_id = await service.request_export(USER, TARGET)
        return await service.wait(job_id)

    job = asyncio.run(scenario())

    assert job.status == JobStatus.FAILED
    assert job.error_code == "page_load_timeout"
    assert service.get_balance(USER) == 10


@pytest.mark.integration
def test_mark_completed_is_idempotent(store, make_service, listings):
    service, _ = make_service(lambda: FakeListingPage([listings[:3]]))
    service.purchase_credits(USER, 10)

    async def scenario():
        job_id = await service.request_export(USER, TARGET, cost=2)
        return await service.wait(job_id)

    job = asyncio.run(scenario())
    again = service.mark_completed(job.id, "/elsewhere.xlsx", 99)

    assert again.status == JobStatus.COMPLETED
    assert again.download_url == job.download_url
    assert again.record_count == 3
    assert len(_consumptions(store)) == 1
    assert service.get_balance(USER) == 8


@pytest.mark.integration
def test_insufficient_balance_rejected_before_extraction(store, make_service, listings):
    """Balance 3 against cost 5: failed job, no page opened, nothing charged"""
    service, pages = make_service(lambda: FakeListingPage([listings]))
    service.purchase_credits(USER, 3)

    async def scenario():
        return await service.request_export(USER, TARGET, cost=5)

    with pytest.raises(InsufficientCredits) as exc_info:
        asyncio.run(scenario())

    job = service.get_job_status(exc_info.value.job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_code == "insufficient_credits"
    assert pages.calls == 0
    assert service.get_balance(USER) == 3


@pytest.mark.integration
@pytest.mark.parametrize("cost", [0, -3])
def test_non_positive_cost_rejected_before_job(store, make_service, listings, cost):
    service, pages = make_service(lambda: FakeListingPage([listings]))
    service.purchase_credits(USER, 10)

    with pytest.raises(ValueError, match="must be positive"):
        asyncio.run(service.request_export(USER, TARGET, cost=cost))

    assert service.list_jobs(USER) == []
    assert pages.calls == 0
    assert service.get_balance(USER) == 10


@pytest.mark.integration
def test_settlement_failure_rolls_back_debit(store, make_service, monkeypatch, listings):
    """Completion fails after the debit is written: neither survives"""
    service, _ = make_service(lambda: FakeListingPage([listings[:3]]))
    service.purchase_credits(USER, 10)
    transition = Store._transition

    def failing_transition(conn, job_id, expected, status, **values):
        if status == JobStatus.COMPLETED:
            raise SQLAlchemyError("disk I/O error")
        return transition(conn, job_id, expected, status, **values)

    monkeypatch.setattr(Store, "_transition", staticmethod(failing_transition))

    async def scenario():
        job_id = await service.request_export(USER, TARGET, cost=3)
        return await service.wait(job_id)

    job = asyncio.run(scenario())

    assert job.status == JobStatus.PROCESSING
    assert job.download_url is None
    assert _consumptions(store) == []
    assert service.get_balance(USER) == 10
    assert job.id in [j.id for j in service.stuck_jobs(older_than=0)]

@pytest.mark.integration
def test_concurrent_exports_never_overdraw(store, make_service, listings):
    """Balance 10, two exports costing 8: one completes, one fails"""
    service, _ = make_service(lambda: FakeListingPage([listings[:10], listings[10:]]))
    service.purchase_credits(USER, 10)

    async def scenario():
        first = await service.request_export(USER, TARGET, cost=8)
        second = await service.request_export(USER, TARGET, cost=8)
        return await asyncio.gather(service.wait(first), service.wait(second))

    jobs = asyncio.run(scenario())
    statuses = sorted(job.status.value for job in jobs)

    assert statuses == ["completed", "failed"]
    failed = next(job for job in jobs if job.status == JobStatus.FAILED)
    assert failed.error_code == "insufficient_credits"
    assert service.get_balance(USER) == 2
    assert len(_consumptions(store)) == 1


@pytest.mark.integration
def test_cancel_job(store, make_service, fast_settings):
    service, _ = make_service(lambda: FakeListingPage(never_ready=True))
    service.orchestrator = ExtractionOrchestrator(
        settings=fast_settings.model_copy(
            update={"ready_poll_interval": 0.01, "ready_max_attempts": 10_000}
        )
    )
    service.purchase_credits(USER, 5)

    async def scenario():
        job_id = await service.request_export(USER, TARGET)
        await asyncio.sleep(0.05)
        assert service.cancel_job(job_id)
        job = await service.wait(job_id)
        assert not service.cancel_job(job_id)
        return job

    job = asyncio.run(scenario())

    assert job.status == JobStatus.FAILED
    assert job.error_code == "cancelled"
    assert service.get_balance(USER) == 5


@pytest.mark.integration
def test_event_stream_replays_history(store, make_service, listings):
    service, _ = make_service(lambda: FakeListingPage([listings[:5]]))
    service.purchase_credits(USER, 5)

    async def scenario():
        job_id = await service.request_export(USER, TARGET)
        live = [event async for event in service.events(job_id)]
        replay = [event async for event in service.events(job_id)]
        return live, replay

    live, replay = asyncio.run(scenario())

    statuses = [e.status for e in live if e.kind == "status"]
    assert statuses == [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED]
    progress = [e.progress.listings_extracted for e in live if e.kind == "progress"]
    assert progress and progress == sorted(progress)
    assert progress[-1] == 5
    assert [e.seq for e in live] == list(range(len(live)))
    assert replay == live


@pytest.mark.integration
def test_job_queries_and_stuck_jobs(store, make_service):
    service, _ = make_service(lambda: FakeListingPage([]))
    old = store.create_job(USER, TARGET, 1)
    fresh = store.create_job(USER, TARGET, 1)
    for job in (old, fresh):
        store.transition_job(job.id, JobStatus.PENDING, JobStatus.PROCESSING)
    with store.engine.begin() as conn:
        conn.execute(
            update(export_jobs)
            .where(export_jobs.c.id == old.id)
            .values(updated_at=utcnow() - timedelta(hours=2))
        )

    stuck = service.stuck_jobs(older_than=3600)

    assert [job.id for job in stuck] == [old.id]
    assert [job.id for job in service.list_jobs(USER)] == [fresh.id, old.id]
    assert service.list_jobs(USER + 1) == []


@pytest.mark.integration
def test_finished_streams_are_bounded(store, make_service, monkeypatch, listings):
    """Older finished jobs replay only their final status from the job row"""
    monkeypatch.setattr(cfg, "FINISHED_STREAMS_KEPT", 1)
    service, _ = make_service(lambda: FakeListingPage([listings[:3]]))
    service.purchase_credits(USER, 5)

    async def scenario():
        first = await service.request_export(USER, TARGET)
        await service.wait(first)
        second = await service.request_export(USER, TARGET)
        await service.wait(second)
        old = [event async for event in service.events(first)]
        new = [event async for event in service.events(second)]
        return old, new

    old, new = asyncio.run(scenario())

    assert len(service._streams) == 1
    assert [(e.kind, e.status) for e in old] == [("status", JobStatus.COMPLETED)]
    statuses = [e.status for e in new if e.kind == "status"]
    assert statuses == [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED]
