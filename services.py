from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from balances import BalanceEngine, TransactionEffect
from config import get_settings
from models import Account, Transaction, TransactionType
from periods import (
    GRANULARITIES,
    bucket_for,
    resolve_period,
    resolve_trend_range,
    to_local_naive,
)
from schemas import AccountIn, AccountUpdateIn, AnalyticsQuery, TransactionIn

logger = logging.getLogger(__name__)

DELETED_ACCOUNT_NAME = "Deleted account"
UNAVAILABLE_ACCOUNT_NAME = "Unavailable account"


class NotFoundError(ValueError):
    pass


class TransactionValidationError(ValueError):
    pass


class DestinationUnavailable(TransactionValidationError):
    pass


class StoreFailure(RuntimeError):
    pass


@contextmanager
def unit_of_work(session: Session, action: str, user_id: int) -> Iterator[None]:
    """Commit everything done inside the block at once, or nothing."""
    try:
        yield
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"store_failure: action={action} user_id={user_id} error={exc}")
        raise StoreFailure(f"Could not {action}") from exc
    except Exception:
        session.rollback()
        raise


def serialize_account(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "balance_cents": account.balance_cents,
        "currency": account.currency,
        "color": account.color,
        "icon": account.icon,
        "is_active": account.is_active,
        "created_at": account.created_at,
        "updated_at": account.updated_at,
    }


def account_ref(
    account: Optional[Account], missing_name: str = DELETED_ACCOUNT_NAME
) -> dict[str, object]:
    if account is None:
        return {"id": None, "name": missing_name, "type": None, "color": None}
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "color": account.color,
    }


def _normalize_tags(names: list[str]) -> list[str]:
    tags: list[str] = []
    seen: set[str] = set()
    for raw in names:
        name = (raw or "").strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        tags.append(name)
    return tags


@dataclass
class TransactionFilters:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    account_id: Optional[int] = None


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, *, active_only: bool = False) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        if active_only:
            stmt = stmt.where(Account.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        return account

    def by_ids(self, account_ids: set[int]) -> dict[int, Account]:
        if not account_ids:
            return {}
        stmt = select(Account).where(
            Account.user_id == self.user_id, Account.id.in_(account_ids)
        )
        return {account.id: account for account in self.session.scalars(stmt)}

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            balance_cents=data.balance_cents,
            currency=data.currency.upper(),
            color=data.color,
            icon=data.icon,
            is_active=data.is_active,
        )
        with unit_of_work(self.session, "create account", self.user_id):
            self.session.add(account)
        self.session.refresh(account)
        logger.info(
            f"account_created: id={account.id} user_id={self.user_id} "
            f"balance_cents={account.balance_cents}"
        )
        return account

    def update(self, account_id: int, data: AccountUpdateIn) -> Account:
        account = self.get(account_id)
        changes = data.model_dump(exclude_unset=True)
        with unit_of_work(self.session, "update account", self.user_id):
            for field, value in changes.items():
                if value is None:
                    continue
                if field == "name":
                    value = value.strip()
                elif field == "currency":
                    value = value.upper()
                setattr(account, field, value)
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        with unit_of_work(self.session, "delete account", self.user_id):
            # History stays; references to the account become dangling.
            for column in (Transaction.account_id, Transaction.to_account_id):
                self.session.execute(
                    update(Transaction)
                    .where(Transaction.user_id == self.user_id, column == account.id)
                    .values({column.key: None})
                )
            self.session.delete(account)
        logger.info(f"account_deleted: id={account_id} user_id={self.user_id}")


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        transfer_policy: Optional[str] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.transfer_policy = (
            transfer_policy or get_settings().transfer_destination_policy
        )
        self.engine = BalanceEngine(session, user_id)

    def _validate(self, data: TransactionIn) -> TransactionType:
        if data.amount_cents is None or data.amount_cents <= 0:
            raise TransactionValidationError("Amount must be greater than 0")
        if not (data.category or "").strip():
            raise TransactionValidationError("Category is required")
        try:
            txn_type = TransactionType(data.type)
        except ValueError as exc:
            raise TransactionValidationError("Invalid transaction type") from exc
        if data.account_id is None:
            raise TransactionValidationError("Account is required")
        if txn_type == TransactionType.transfer:
            if data.to_account_id is None:
                raise TransactionValidationError(
                    "Transfers require a destination account"
                )
            if data.to_account_id == data.account_id:
                raise TransactionValidationError(
                    "Transfer destination must differ from the source account"
                )
        elif data.to_account_id is not None:
            raise TransactionValidationError(
                "Only transfers can have a destination account"
            )
        return txn_type

    def _resolve_accounts(
        self, data: TransactionIn, txn_type: TransactionType
    ) -> tuple[int, Optional[int], bool]:
        source = self.engine.load_account(data.account_id)
        if source is None:
            raise NotFoundError("Account not found")
        if txn_type != TransactionType.transfer:
            return source.id, None, True

        destination = self.engine.load_account(data.to_account_id)
        if destination is not None:
            return source.id, destination.id, True
        if self.transfer_policy == "strict":
            raise DestinationUnavailable("Destination account not found")
        logger.warning(
            f"transfer_destination_unavailable: user_id={self.user_id} "
            f"account_id={source.id} to_account_id={data.to_account_id} "
            f"amount_cents={data.amount_cents} policy={self.transfer_policy}"
        )
        return source.id, None, False

    def create(self, data: TransactionIn) -> Transaction:
        txn_type = self._validate(data)
        with unit_of_work(self.session, "create transaction", self.user_id):
            account_id, to_account_id, destination_applied = self._resolve_accounts(
                data, txn_type
            )
            txn = Transaction(
                user_id=self.user_id,
                type=txn_type,
                category=data.category.strip(),
                amount_cents=data.amount_cents,
                description=data.description,
                occurred_at=to_local_naive(data.occurred_at),
                account_id=account_id,
                to_account_id=to_account_id,
                destination_applied=destination_applied,
                tags=_normalize_tags(data.tags),
            )
            self.session.add(txn)
            self.session.flush()
            self.engine.apply(TransactionEffect.of(txn))
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} user_id={self.user_id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def get(self, transaction_id: int, *, for_update: bool = False) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.id == transaction_id, Transaction.user_id == self.user_id
        )
        if for_update:
            # Re-read the stored row so a revert never works from a stale copy.
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        with unit_of_work(self.session, "update transaction", self.user_id):
            txn = self.get(transaction_id, for_update=True)
            txn_type = self._validate(data)
            account_id, to_account_id, destination_applied = self._resolve_accounts(
                data, txn_type
            )
            self.engine.revert(TransactionEffect.of(txn))

            txn.type = txn_type
            txn.category = data.category.strip()
            txn.amount_cents = data.amount_cents
            txn.description = data.description
            txn.occurred_at = to_local_naive(data.occurred_at)
            txn.account_id = account_id
            txn.to_account_id = to_account_id
            txn.destination_applied = destination_applied
            txn.tags = _normalize_tags(data.tags)
            self.session.flush()

            self.engine.apply(TransactionEffect.of(txn))
        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: id={txn.id} user_id={self.user_id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        with unit_of_work(self.session, "delete transaction", self.user_id):
            txn = self.get(transaction_id, for_update=True)
            self.engine.revert(TransactionEffect.of(txn))
            self.session.delete(txn)
        logger.info(f"transaction_deleted: id={transaction_id} user_id={self.user_id}")

    def _filtered(self, stmt, filters: TransactionFilters):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        if filters.start is not None:
            stmt = stmt.where(Transaction.occurred_at >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(Transaction.occurred_at <= filters.end)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        return stmt

    def list(
        self, filters: Optional[TransactionFilters] = None, *, newest_first: bool = True
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        order = (
            (Transaction.occurred_at.desc(), Transaction.id.desc())
            if newest_first
            else (Transaction.occurred_at.asc(), Transaction.id.asc())
        )
        stmt = self._filtered(select(Transaction), filters).order_by(*order)
        return self.session.scalars(stmt).all()

    def aggregate(
        self, group_by: str, filters: Optional[TransactionFilters] = None
    ) -> list[dict[str, object]]:
        columns = {
            "category": Transaction.category,
            "type": Transaction.type,
            "account": Transaction.account_id,
        }
        if group_by not in columns:
            raise ValueError(f"Cannot group transactions by {group_by}")
        column = columns[group_by]
        total = func.coalesce(func.sum(Transaction.amount_cents), 0)
        stmt = self._filtered(
            select(
                column.label("key"),
                total.label("sum"),
                func.count(Transaction.id).label("count"),
            ),
            filters or TransactionFilters(),
        ).group_by(column)
        rows = []
        for row in self.session.execute(stmt):
            key = row.key.value if isinstance(row.key, TransactionType) else row.key
            rows.append({"key": key, "sum": int(row.sum or 0), "count": int(row.count)})
        rows.sort(key=lambda r: (-int(r["sum"]), str(r["key"])))
        return rows

    def describe(
        self, txn: Transaction, accounts: Optional[dict[int, Account]] = None
    ) -> dict[str, object]:
        if accounts is None:
            ids = {i for i in (txn.account_id, txn.to_account_id) if i is not None}
            accounts = AccountService(self.session, self.user_id).by_ids(ids)
        to_account = None
        if txn.type == TransactionType.transfer:
            # A lenient transfer never had a destination to delete.
            missing_name = (
                DELETED_ACCOUNT_NAME
                if txn.destination_applied
                else UNAVAILABLE_ACCOUNT_NAME
            )
            to_account = account_ref(accounts.get(txn.to_account_id), missing_name)
        return {
            "id": txn.id,
            "type": txn.type.value,
            "category": txn.category,
            "amount_cents": txn.amount_cents,
            "description": txn.description,
            "occurred_at": txn.occurred_at,
            "account": account_ref(accounts.get(txn.account_id)),
            "to_account": to_account,
            "destination_applied": txn.destination_applied,
            "tags": list(txn.tags or []),
            "created_at": txn.created_at,
            "updated_at": txn.updated_at,
        }

    def describe_all(self, txns: list[Transaction]) -> list[dict[str, object]]:
        ids: set[int] = set()
        for txn in txns:
            ids.update(i for i in (txn.account_id, txn.to_account_id) if i is not None)
        accounts = AccountService(self.session, self.user_id).by_ids(ids)
        return [self.describe(txn, accounts) for txn in txns]


class AnalyticsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.transactions = TransactionService(session, user_id)
        self.accounts = AccountService(session, user_id)

    def _total_balance(self, account_id: Optional[int]) -> int:
        stmt = select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
            Account.user_id == self.user_id, Account.is_active.is_(True)
        )
        if account_id:
            stmt = stmt.where(Account.id == account_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def summary(
        self, query: AnalyticsQuery, *, now: Optional[datetime] = None
    ) -> dict[str, object]:
        """Income, expenses and category totals for a window.

        ``total_balance`` is the current balance of the active accounts in
        scope and does not depend on the window.
        """
        period = resolve_period(query.period, query.start, query.end, now=now)
        filters = TransactionFilters(
            start=period.start, end=period.end, account_id=query.account_id
        )
        by_type = {
            row["key"]: row for row in self.transactions.aggregate("type", filters)
        }
        income = int(by_type.get(TransactionType.income.value, {}).get("sum", 0))
        expenses = int(by_type.get(TransactionType.expense.value, {}).get("sum", 0))
        count = sum(int(row["count"]) for row in by_type.values())

        expense_filters = replace(filters, type=TransactionType.expense)
        breakdown = {
            str(row["key"]): int(row["sum"])
            for row in self.transactions.aggregate("category", expense_filters)
        }
        return {
            "period": period.slug,
            "start_date": period.start,
            "end_date": period.end,
            "income": income,
            "expenses": expenses,
            "balance": income - expenses,
            "total_balance": self._total_balance(query.account_id),
            "transaction_count": count,
            "category_breakdown": breakdown,
        }

    def trends(
        self,
        query: AnalyticsQuery,
        transaction_type: TransactionType = TransactionType.expense,
        granularity: Optional[str] = None,
        *,
        include_accounts: bool = False,
        now: Optional[datetime] = None,
    ) -> list[dict[str, object]]:
        period = resolve_trend_range(query.period, query.start, query.end, now=now)
        granularity = granularity or period.slug
        if granularity not in GRANULARITIES:
            raise ValueError(f"Unknown granularity: {granularity}")

        txns = self.transactions.list(
            TransactionFilters(
                start=period.start,
                end=period.end,
                type=transaction_type,
                account_id=query.account_id,
            ),
            newest_first=False,
        )
        buckets: dict[tuple[int, ...], dict[str, object]] = {}
        per_account: dict[tuple[int, ...], dict[Optional[int], dict[str, int]]] = {}
        for txn in txns:
            bucket = bucket_for(txn.occurred_at, granularity)
            entry = buckets.setdefault(
                bucket.sort_key, {"period": bucket.label, "total": 0, "count": 0}
            )
            entry["total"] = int(entry["total"]) + txn.amount_cents
            entry["count"] = int(entry["count"]) + 1
            if include_accounts:
                sub = per_account.setdefault(bucket.sort_key, {}).setdefault(
                    txn.account_id, {"total": 0, "count": 0}
                )
                sub["total"] += txn.amount_cents
                sub["count"] += 1

        accounts: dict[int, Account] = {}
        if include_accounts:
            accounts = self.accounts.by_ids(
                {txn.account_id for txn in txns if txn.account_id is not None}
            )

        out: list[dict[str, object]] = []
        for sort_key in sorted(buckets):
            entry = buckets[sort_key]
            total = int(entry["total"])
            count = int(entry["count"])
            row: dict[str, object] = {
                "period": entry["period"],
                "total": total,
                "count": count,
                "average": total / count,
            }
            if include_accounts:
                subtotals = []
                for account_id, sub in per_account[sort_key].items():
                    ref = account_ref(accounts.get(account_id))
                    subtotals.append(
                        {
                            "account_id": account_id,
                            "name": ref["name"],
                            "color": ref["color"],
                            "total": sub["total"],
                            "count": sub["count"],
                        }
                    )
                subtotals.sort(key=lambda s: (-int(s["total"]), str(s["name"])))
                row["accounts"] = subtotals
            out.append(row)
        return out

    def categories(
        self, query: AnalyticsQuery, *, now: Optional[datetime] = None
    ) -> list[dict[str, object]]:
        period = resolve_period(query.period, query.start, query.end, now=now)
        rows = self.transactions.aggregate(
            "category",
            TransactionFilters(
                start=period.start,
                end=period.end,
                type=TransactionType.expense,
                account_id=query.account_id,
            ),
        )
        grand_total = sum(int(row["sum"]) for row in rows)
        out = []
        for row in rows:
            amount = int(row["sum"])
            percentage = round(amount / grand_total * 100, 2) if grand_total else 0.0
            out.append(
                {
                    "category": row["key"],
                    "total": amount,
                    "count": int(row["count"]),
                    "percentage": percentage,
                }
            )
        return out

    def account_stats(self) -> list[dict[str, object]]:
        counts = {
            row["key"]: int(row["count"])
            for row in self.transactions.aggregate("account")
        }
        return [
            {
                "id": account.id,
                "name": account.name,
                "type": account.type.value,
                "balance": account.balance_cents,
                "color": account.color,
                "transaction_count": counts.get(account.id, 0),
            }
            for account in self.accounts.list_all()
        ]
