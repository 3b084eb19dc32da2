"""
Error taxonomy for the export pipeline.

Every error carries a stable ``code`` tag so callers (CLI, UI) can offer a
specific remedy, and a ``retryable`` flag for conditions worth retrying.
"""

from typing import Optional


class ExportError(Exception):
    """Base class for all pipeline errors."""

    code: str = "export_error"
    retryable: bool = False


class SelectorNotFound(ExportError):
    """No strategy for a field matched. Non-fatal: the field is left absent."""

    code = "selector_not_found"

    def __init__(self, field: str) -> None:
        super().__init__(f"No strategy matched field '{field}'")
        self.field = field


class ListingExtractionError(ExportError):
    """One listing failed repeatedly and was skipped."""

    code = "listing_extraction_error"

    def __init__(self, index: int, attempts: int, cause: Exception) -> None:
        super().__init__(
            f"Listing #{index} failed after {attempts} attempt(s): {cause}"
        )
        self.index = index
        self.attempts = attempts
        self.cause = cause


class PageLoadTimeout(ExportError):
    """The page never showed a readiness landmark. Session-fatal."""

    code = "page_load_timeout"
    retryable = True

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Page not ready after {attempts} attempts")
        self.attempts = attempts


class NoDataError(ExportError):
    """Zero valid records reached the artifact builder."""

    code = "no_data"


class InsufficientCredits(ExportError):
    """Balance does not cover the export cost."""

    code = "insufficient_credits"

    def __init__(
        self,
        user_id: int,
        balance: int,
        cost: int,
        job_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            f"User {user_id} has {balance} credit(s), export costs {cost}"
        )
        self.user_id = user_id
        self.balance = balance
        self.cost = cost
        self.job_id = job_id


class StorageUnavailable(ExportError):
    """Ledger or job table read/write failed."""

    code = "storage_unavailable"
    retryable = True


class JobNotFound(ExportError):
    code = "job_not_found"

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Export job {job_id} not found")
        self.job_id = job_id


class ExportCancelled(ExportError):
    """The job was cancelled before settlement."""

    code = "cancelled"
