"""
Credit ledger -- append-only transaction log per user.

The balance is always re-derived as the signed sum of a user's
transactions; there is no separate counter to drift after a crash.
"""

from typing import List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict

from gmb_export.core.errors import InsufficientCredits
from gmb_export.models.billing import CreditTransaction, TransactionKind
from gmb_export.storage.database import Settlement, Store


class Reservation(BaseModel):
    """Proof that an admission check passed. Nothing has been written."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    cost: int
    balance: int


class CreditLedger:
    def __init__(self, store: Store) -> None:
        self.store = store

    def balance(self, user_id: int) -> int:
        """Sum of all transaction amounts for *user_id* (0 if none)."""
        return self.store.balance(user_id)

    def record_transaction(
        self,
        user_id: int,
        amount: int,
        kind: TransactionKind,
        description: Optional[str] = None,
    ) -> int:
        """Append one entry and return its id."""
        txn_id = self.store.insert_transaction(
            CreditTransaction(
                user_id=user_id,
                amount=amount,
                kind=kind,
                description=description,
            )
        )
        logger.info(
            "Ledger +{} [{}] {:+d} credit(s) for user {}",
            txn_id,
            kind.value,
            amount,
            user_id,
        )
        return txn_id

    def purchase(
        self,
        user_id: int,
        amount: int,
        description: Optional[str] = None,
    ) -> int:
        if amount <= 0:
            raise ValueError("Purchase amount must be positive")
        return self.record_transaction(
            user_id, amount, TransactionKind.PURCHASE, description or "Credit purchase"
        )

    def refund(
        self,
        user_id: int,
        amount: int,
        description: Optional[str] = None,
    ) -> int:
        if amount <= 0:
            raise ValueError("Refund amount must be positive")
        return self.record_transaction(
            user_id, amount, TransactionKind.REFUND, description or "Refund"
        )

    def check_and_reserve(self, user_id: int, cost: int) -> Reservation:
        """
        Non-mutating admission check.

        Raises ``InsufficientCredits`` when the balance does not cover
        *cost*. The debit itself only happens at settlement.
        """
        balance = self.balance(user_id)
        if balance < cost:
            logger.info(
                "Admission rejected for user {}: balance {} < cost {}",
                user_id,
                balance,
                cost,
            )
            raise InsufficientCredits(user_id, balance, cost)
        return Reservation(user_id=user_id, cost=cost, balance=balance)

    def settle(self, job_id: int, download_url: str, record_count: int) -> Settlement:
        """Atomic check-and-deduct for a processing export job."""
        return self.store.settle_export(job_id, download_url, record_count)

    def history(self, user_id: int) -> List[CreditTransaction]:
        """All transactions for *user_id*, newest first."""
        return self.store.transactions(user_id)
