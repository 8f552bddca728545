"""
Gem ledger.

Reserve (deduct) and release (refund) gems atomically. Each operation
changes the balance and appends exactly one transaction in a single data
store transaction, so the sum of an identity's transactions always equals
its current balance minus its initial balance.

Both operations are idempotent per job id: the ledger table is unique on
(job_id, kind), so repeating a reserve or a release for the same job
returns the current balance without moving any gems.
"""

import logging
import sqlite3
from typing import List

from .errors import DatabaseError, InsufficientFunds
from ..storage.models import GemTransaction, TransactionKind
from ..storage.repository import DuplicateTransaction, LedgerRepository

logger = logging.getLogger(__name__)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")


class GemLedger:
    """Balance store abstraction over a LedgerRepository.

    The repository connection acts with server-side privileges, so refunds
    never depend on the caller's session still being valid.
    """

    def __init__(self, repository: LedgerRepository):
        self.repository = repository

    def reserve(self, identity: str, amount: int, job_id: str) -> int:
        """Deduct gems for a job.

        Args:
            identity: Account identity
            amount: Gems to deduct (positive)
            job_id: Job the deduction pays for

        Returns:
            New balance

        Raises:
            InsufficientFunds: If the balance is lower than amount or the
                account does not exist. Nothing is deducted.
            DatabaseError: If the data store fails
        """
        _check_amount(amount)
        try:
            balance = self.repository.apply_transaction(
                identity, -amount, TransactionKind.DEDUCTION, job_id
            )
        except DuplicateTransaction as e:
            logger.warning("Deduction for job %s already recorded, not charging again", job_id)
            return e.balance
        except sqlite3.Error as e:
            raise DatabaseError(f"Reserve failed: {e}")

        if balance is None:
            current = self.repository.get_balance(identity)
            raise InsufficientFunds(
                f"Need {amount} gems, have {current if current is not None else 0}",
                balance=current,
                required=amount,
            )

        logger.info("Reserved %d gems from %s for job %s (balance %d)", amount, identity, job_id, balance)
        return balance

    def release(self, identity: str, amount: int, job_id: str) -> int:
        """Refund gems for a job.

        Returns:
            New balance

        Raises:
            DatabaseError: If the account does not exist or the store fails
        """
        _check_amount(amount)
        try:
            balance = self.repository.apply_transaction(
                identity, amount, TransactionKind.REFUND, job_id
            )
        except DuplicateTransaction as e:
            logger.warning("Refund for job %s already recorded, not refunding again", job_id)
            return e.balance
        except sqlite3.Error as e:
            raise DatabaseError(f"Release failed: {e}")

        if balance is None:
            raise DatabaseError(f"No account for {identity}")

        logger.info("Released %d gems to %s for job %s (balance %d)", amount, identity, job_id, balance)
        return balance

    def balance(self, identity: str) -> int:
        """Current balance; unknown identities have zero gems."""
        balance = self.repository.get_balance(identity)
        return balance if balance is not None else 0

    def open_account(self, identity: str, initial_balance: int = 0) -> None:
        self.repository.open_account(identity, initial_balance)

    def transactions(self, identity: str, limit: int = 100) -> List[GemTransaction]:
        return self.repository.list_transactions(identity, limit)
