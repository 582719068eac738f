import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Account, Transaction, TransactionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionEffect:
    """The values a transaction's balance effect was (or will be) applied with."""

    type: TransactionType
    amount_cents: int
    account_id: Optional[int]
    to_account_id: Optional[int]
    destination_applied: bool = True

    @classmethod
    def of(cls, txn: Transaction) -> "TransactionEffect":
        return cls(
            type=txn.type,
            amount_cents=txn.amount_cents,
            account_id=txn.account_id,
            to_account_id=txn.to_account_id,
            destination_applied=txn.destination_applied,
        )

    def deltas(self) -> list[tuple[Optional[int], int]]:
        amount = self.amount_cents
        if self.type == TransactionType.income:
            return [(self.account_id, amount)]
        if self.type == TransactionType.expense:
            return [(self.account_id, -amount)]
        moves = [(self.account_id, -amount)]
        if self.destination_applied:
            moves.append((self.to_account_id, amount))
        return moves


class BalanceEngine:
    """Keep account balances in step with the transactions that reference them.

    All account reads go through :meth:`load_account`, which locks the row for
    the rest of the session transaction where the database supports it. The
    caller owns the transaction boundary and commits once both the
    transaction record and the balances are in place.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def load_account(self, account_id: Optional[int]) -> Optional[Account]:
        if account_id is None:
            return None
        stmt = (
            select(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .with_for_update()
        )
        return self.session.scalar(stmt)

    def apply(self, effect: TransactionEffect) -> None:
        for account_id, delta in effect.deltas():
            self._apply_delta(account_id, delta, action="apply")

    def revert(self, effect: TransactionEffect) -> None:
        for account_id, delta in effect.deltas():
            self._apply_delta(account_id, -delta, action="revert")

    def _apply_delta(self, account_id: Optional[int], delta: int, *, action: str) -> None:
        account = self.load_account(account_id)
        if account is None:
            # References to deleted accounts have nothing left to adjust.
            logger.info(
                f"balance_{action}_skipped: account_id={account_id} delta={delta}"
            )
            return
        account.balance_cents = int(account.balance_cents or 0) + delta
