"""
Unit tests for the credit ledger and settlement on the in-memory store.
"""

import pytest

from gmb_export.billing.ledger import CreditLedger
from gmb_export.core.errors import InsufficientCredits, JobNotFound
from gmb_export.models.billing import ExportTarget, JobStatus, TransactionKind
from gmb_export.storage.database import Settlement

USER = 42


def _processing_job(store, cost, user_id=USER):
    job = store.create_job(user_id, ExportTarget(query="plumbers"), cost)
    assert store.transition_job(job.id, JobStatus.PENDING, JobStatus.PROCESSING)
    return job


@pytest.mark.unit
class TestBalance:
    """Balance is the signed sum of the ledger"""

    def test_new_user_has_zero(self, store):
        assert CreditLedger(store).balance(USER) == 0

    def test_purchase_then_consume(self, store):
        ledger = CreditLedger(store)
        ledger.purchase(USER, 50)
        job = _processing_job(store, cost=12)

        assert ledger.settle(job.id, "/tmp/x.xlsx", 3) == Settlement.SETTLED
        assert ledger.balance(USER) == 38

    def test_users_are_isolated(self, store):
        ledger = CreditLedger(store)
        ledger.purchase(USER, 10)
        ledger.purchase(USER + 1, 3)
        assert ledger.balance(USER) == 10
        assert ledger.balance(USER + 1) == 3

    def test_refund_adds_credit(self, store):
        ledger = CreditLedger(store)
        ledger.purchase(USER, 5)
        ledger.refund(USER, 2, "Goodwill")
        assert ledger.balance(USER) == 7

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_purchase_rejected(self, store, amount):
        with pytest.raises(ValueError):
            CreditLedger(store).purchase(USER, amount)


@pytest.mark.unit
class TestAdmission:
    """check_and_reserve never writes"""

    def test_sufficient_balance(self, store):
        ledger = CreditLedger(store)
        ledger.purchase(USER, 10)
        reservation = ledger.check_and_reserve(USER, 8)
        assert reservation.balance == 10
        assert ledger.balance(USER) == 10
        assert len(ledger.history(USER)) == 1

    def test_insufficient_balance(self, store):
        ledger = CreditLedger(store)
        ledger.purchase(USER, 3)
        with pytest.raises(InsufficientCredits) as exc_info:
            ledger.check_and_reserve(USER, 5)
        assert exc_info.value.balance == 3
        assert exc_info.value.cost == 5
        assert exc_info.value.code == "insufficient_credits"


@pytest.mark.unit
class TestSettlement:
    """Exactly one consumption per completed job"""

    def test_settle_twice_charges_once(self, store):
        ledger = CreditLedger(store)
        ledger.purchase(USER, 10)
        job = _processing_job(store, cost=4)

        assert ledger.settle(job.id, "/tmp/a.xlsx", 5) == Settlement.SETTLED
        assert ledger.settle(job.id, "/tmp/b.xlsx", 5) == Settlement.ALREADY_COMPLETED

        consumptions = store.transactions(USER, kind=TransactionKind.CONSUMPTION)
        assert len(consumptions) == 1
        assert consumptions[0].amount == -4
        assert consumptions[0].job_id == job.id
        completed = store.get_job(job.id)
        assert completed.status == JobStatus.COMPLETED
        assert completed.download_url == "/tmp/a.xlsx"
        assert completed.record_count == 5

    def test_settle_rechecks_balance(self, store):
        ledger = CreditLedger(store)
        ledger.purchase(USER, 10)
        first = _processing_job(store, cost=8)
        second = _processing_job(store, cost=8)

        assert ledger.settle(first.id, "/tmp/a.xlsx", 1) == Settlement.SETTLED
        assert ledger.settle(second.id, "/tmp/b.xlsx", 1) == Settlement.INSUFFICIENT

        assert ledger.balance(USER) == 2
        failed = store.get_job(second.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_code == "insufficient_credits"
        assert failed.download_url is None

    def test_pending_job_is_not_settled(self, store):
        ledger = CreditLedger(store)
        ledger.purchase(USER, 10)
        job = store.create_job(USER, ExportTarget(query="plumbers"), 1)
        assert ledger.settle(job.id, "/tmp/a.xlsx", 1) == Settlement.NOT_PROCESSING
        assert ledger.balance(USER) == 10

    def test_unknown_job(self, store):
        with pytest.raises(JobNotFound):
            CreditLedger(store).settle(999, "/tmp/a.xlsx", 1)


@pytest.mark.unit
class TestHistory:
    """History is newest first"""

    def test_history_order(self, store):
        ledger = CreditLedger(store)
        ledger.purchase(USER, 5, "first")
        ledger.purchase(USER, 7, "second")
        history = ledger.history(USER)
        assert [t.description for t in history] == ["second", "first"]
        assert all(t.kind == TransactionKind.PURCHASE for t in history)
