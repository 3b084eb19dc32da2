"""
Pydantic models for the credit ledger and export jobs.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from gmb_export.models.business import utcnow


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    REFUND = "refund"


class CreditTransaction(BaseModel):
    """Immutable ledger entry. Positive amounts credit, negative consume."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: Optional[int] = None
    user_id: int
    amount: int
    kind: TransactionKind
    description: Optional[str] = None
    job_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportTarget(BaseModel):
    """What to harvest for one export."""

    query: str = Field(..., min_length=1)
    location: Optional[str] = None
    business_id: Optional[str] = None
    max_results: Optional[int] = Field(None, gt=0)

    @property
    def search_text(self) -> str:
        if self.location:
            return f"{self.query} in {self.location}"
        return self.query


class ExportJob(BaseModel):
    """One export request. Never deleted; doubles as the audit trail."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    business_id: Optional[str] = None
    query: Optional[str] = None
    location: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    cost: int = Field(..., gt=0)
    download_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    record_count: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)
