"""
Relational storage for credit transactions and export jobs (SQLAlchemy Core).

Two tables:
    credit_transactions   append-only; balance = SUM(amount) per user
    export_jobs           one row per export request, never deleted

Every public method runs in its own transaction. Driver errors surface as
``StorageUnavailable`` so callers can treat them as retryable.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional

from loguru import logger
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

import gmb_export.config as cfg
from gmb_export.core.errors import JobNotFound, StorageUnavailable
from gmb_export.models.billing import (
    CreditTransaction,
    ExportJob,
    ExportTarget,
    JobStatus,
    TransactionKind,
)
from gmb_export.models.business import utcnow

metadata = MetaData()

credit_transactions = Table(
    "credit_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("amount", Integer, nullable=False),
    Column("kind", String(16), nullable=False),
    Column("description", Text),
    # at most one ledger row per export job
    Column("job_id", Integer, unique=True),
    Column("created_at", DateTime, nullable=False),
)

export_jobs = Table(
    "export_jobs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("business_id", String(255)),
    Column("query", Text),
    Column("location", Text),
    Column("status", String(16), nullable=False, default=JobStatus.PENDING.value),
    Column("cost", Integer, nullable=False),
    Column("download_url", Text),
    Column("error_code", String(64)),
    Column("error_message", Text),
    Column("record_count", Integer),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)


class Settlement(str, Enum):
    """Outcome of ``Store.settle_export``."""

    SETTLED = "settled"                  # consumption written, job completed
    ALREADY_COMPLETED = "already_completed"
    INSUFFICIENT = "insufficient"        # job failed, nothing written
    NOT_PROCESSING = "not_processing"    # job failed/pending; left untouched


def make_engine(url: Optional[str] = None) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    url = url or cfg.DATABASE_URL
    if url == "sqlite://" or (url.startswith("sqlite") and ":memory:" in url):
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(url, pool_pre_ping=True)


class Store:
    """Transactional read/write access to the two tables."""

    def __init__(
        self,
        url: Optional[str] = None,
        engine: Optional[Engine] = None,
    ) -> None:
        self.engine = engine or make_engine(url)
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def create_schema(self) -> None:
        with self._tx() as conn:
            metadata.create_all(conn)
        logger.debug("Schema ensured on {}", self.engine.url)

    @contextmanager
    def _tx(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("Storage failure: {}", exc)
            raise StorageUnavailable(str(exc)) from exc

    @contextmanager
    def user_lock(self, user_id: int) -> Iterator[None]:
        """Serialise ledger writers for one user within this process."""
        with self._locks_guard:
            lock = self._locks.setdefault(user_id, threading.Lock())
        with lock:
            yield

    # -- Credit transactions -----------------------------------------------

    def insert_transaction(self, txn: CreditTransaction) -> int:
        with self._tx() as conn:
            return self._insert_transaction(conn, txn)

    @staticmethod
    def _insert_transaction(conn: Connection, txn: CreditTransaction) -> int:
        result = conn.execute(
            insert(credit_transactions).values(
                user_id=txn.user_id,
                amount=txn.amount,
                kind=txn.kind.value,
                description=txn.description,
                job_id=txn.job_id,
                created_at=txn.created_at,
            )
        )
        return int(result.inserted_primary_key[0])

    def balance(self, user_id: int) -> int:
        with self._tx() as conn:
            return self._balance(conn, user_id)

    @staticmethod
    def _balance(conn: Connection, user_id: int) -> int:
        total = conn.execute(
            select(func.coalesce(func.sum(credit_transactions.c.amount), 0)).where(
                credit_transactions.c.user_id == user_id
            )
        ).scalar_one()
        return int(total)

    def transactions(
        self,
        user_id: int,
        kind: Optional[TransactionKind] = None,
        job_id: Optional[int] = None,
    ) -> List[CreditTransaction]:
        """Ledger rows for *user_id*, newest first."""
        stmt = select(credit_transactions).where(
            credit_transactions.c.user_id == user_id
        )
        if kind is not None:
            stmt = stmt.where(credit_transactions.c.kind == kind.value)
        if job_id is not None:
            stmt = stmt.where(credit_transactions.c.job_id == job_id)
        stmt = stmt.order_by(
            credit_transactions.c.created_at.desc(), credit_transactions.c.id.desc()
        )
        with self._tx() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [CreditTransaction.model_validate(dict(row)) for row in rows]

    # -- Export jobs -------------------------------------------------------

    def create_job(self, user_id: int, target: ExportTarget, cost: int) -> ExportJob:
        now = utcnow()
        with self._tx() as conn:
            result = conn.execute(
                insert(export_jobs).values(
                    user_id=user_id,
                    business_id=target.business_id,
                    query=target.query,
                    location=target.location,
                    status=JobStatus.PENDING.value,
                    cost=cost,
                    created_at=now,
                    updated_at=now,
                )
            )
            job_id = int(result.inserted_primary_key[0])
            return self._get_job(conn, job_id)

    def get_job(self, job_id: int) -> ExportJob:
        with self._tx() as conn:
            return self._get_job(conn, job_id)

    @staticmethod
    def _get_job(conn: Connection, job_id: int) -> ExportJob:
        row = conn.execute(
            select(export_jobs).where(export_jobs.c.id == job_id)
        ).mappings().first()
        if row is None:
            raise JobNotFound(job_id)
        return ExportJob.model_validate(dict(row))

    def transition_job(
        self,
        job_id: int,
        expected: JobStatus,
        status: JobStatus,
        **values,
    ) -> bool:
        """
        Compare-and-set the job status. Returns False (and writes nothing)
        when the job is not currently in *expected*.
        """
        with self._tx() as conn:
            return self._transition(conn, job_id, expected, status, **values)

    @staticmethod
    def _transition(
        conn: Connection,
        job_id: int,
        expected: JobStatus,
        status: JobStatus,
        **values,
    ) -> bool:
        result = conn.execute(
            update(export_jobs)
            .where(export_jobs.c.id == job_id)
            .where(export_jobs.c.status == expected.value)
            .values(status=status.value, updated_at=utcnow(), **values)
        )
        return result.rowcount == 1

    def list_jobs(self, user_id: int) -> List[ExportJob]:
        stmt = (
            select(export_jobs)
            .where(export_jobs.c.user_id == user_id)
            .order_by(export_jobs.c.created_at.desc(), export_jobs.c.id.desc())
        )
        with self._tx() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [ExportJob.model_validate(dict(row)) for row in rows]

    def jobs_in_status_before(self, status: JobStatus, before: datetime) -> List[ExportJob]:
        stmt = (
            select(export_jobs)
            .where(export_jobs.c.status == status.value)
            .where(export_jobs.c.updated_at < before)
            .order_by(export_jobs.c.updated_at)
        )
        with self._tx() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [ExportJob.model_validate(dict(row)) for row in rows]

    # -- Settlement --------------------------------------------------------

    def settle_export(
        self,
        job_id: int,
        download_url: str,
        record_count: int,
    ) -> Settlement:
        """
        Convert a processing job's cost into a consumption row and mark it
        completed, all in one transaction under the user's lock.

        The balance is re-checked here: admission only proved the balance
        was sufficient when the job started.
        """
        user_id = self.get_job(job_id).user_id
        with self.user_lock(user_id), self._tx() as conn:
            job = self._get_job(conn, job_id)
            if job.status == JobStatus.COMPLETED:
                return Settlement.ALREADY_COMPLETED
            if job.status != JobStatus.PROCESSING:
                return Settlement.NOT_PROCESSING

            balance = self._balance(conn, user_id)
            if balance < job.cost:
                self._transition(
                    conn,
                    job_id,
                    JobStatus.PROCESSING,
                    JobStatus.FAILED,
                    error_code="insufficient_credits",
                    error_message=(
                        f"Balance {balance} below cost {job.cost} at settlement"
                    ),
                    record_count=record_count,
                )
                return Settlement.INSUFFICIENT

            self._insert_transaction(
                conn,
                CreditTransaction(
                    user_id=user_id,
                    amount=-job.cost,
                    kind=TransactionKind.CONSUMPTION,
                    description=f"Export {job_id} completed",
                    job_id=job_id,
                ),
            )
            self._transition(
                conn,
                job_id,
                JobStatus.PROCESSING,
                JobStatus.COMPLETED,
                download_url=download_url,
                record_count=record_count,
            )
            return Settlement.SETTLED
