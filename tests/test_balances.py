import logging
import random
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from balances import BalanceEngine, TransactionEffect
from config import get_settings
from database import Base
from models import Account, AccountType, Transaction, TransactionType
from schemas import AccountIn, TransactionIn
from services import (
    AccountService,
    DestinationUnavailable,
    NotFoundError,
    StoreFailure,
    TransactionFilters,
    TransactionService,
    TransactionValidationError,
    unit_of_work,
)

USER = 1
OTHER_USER = 2
WHEN = datetime(2025, 3, 5, 12, 0)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_account(session, name: str, balance_cents: int = 0, user_id: int = USER):
    return AccountService(session, user_id).create(
        AccountIn(name=name, type=AccountType.bank, balance_cents=balance_cents)
    )


def balance(session, account_id: int) -> int:
    return session.get(Account, account_id).balance_cents


def income(account_id: int, amount_cents: int, category: str = "Salary") -> TransactionIn:
    return TransactionIn(
        type=TransactionType.income,
        category=category,
        amount_cents=amount_cents,
        occurred_at=WHEN,
        account_id=account_id,
    )


def expense(account_id: int, amount_cents: int, category: str = "Food") -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        category=category,
        amount_cents=amount_cents,
        occurred_at=WHEN,
        account_id=account_id,
    )


def transfer(account_id: int, to_account_id: int, amount_cents: int) -> TransactionIn:
    return TransactionIn(
        type=TransactionType.transfer,
        category="Transfer",
        amount_cents=amount_cents,
        occurred_at=WHEN,
        account_id=account_id,
        to_account_id=to_account_id,
    )


def test_income_credits_the_source_account() -> None:
    session = make_session()
    a = make_account(session, "A")

    TransactionService(session, USER).create(income(a.id, 10_000))

    assert balance(session, a.id) == 10_000


def test_expense_debits_the_source_account() -> None:
    session = make_session()
    a = make_account(session, "A", 10_000)

    TransactionService(session, USER).create(expense(a.id, 2_550))

    assert balance(session, a.id) == 7_450


def test_transfer_edit_and_delete_keep_both_sides_consistent() -> None:
    session = make_session()
    a = make_account(session, "A", 10_000)
    b = make_account(session, "B", 0)
    txns = TransactionService(session, USER, transfer_policy="strict")

    txn = txns.create(transfer(a.id, b.id, 4_000))
    assert balance(session, a.id) == 6_000
    assert balance(session, b.id) == 4_000

    txns.update(txn.id, transfer(a.id, b.id, 6_000))
    assert balance(session, a.id) == 4_000
    assert balance(session, b.id) == 6_000

    txns.delete(txn.id)
    assert balance(session, a.id) == 10_000
    assert balance(session, b.id) == 0
    assert session.get(Transaction, txn.id) is None


def test_update_reverts_against_original_accounts() -> None:
    session = make_session()
    a = make_account(session, "A")
    b = make_account(session, "B")
    c = make_account(session, "C", 5_000)
    d = make_account(session, "D")
    txns = TransactionService(session, USER)

    txn = txns.create(transfer(a.id, b.id, 1_000))
    txns.update(txn.id, transfer(c.id, d.id, 2_500))

    assert balance(session, a.id) == 0
    assert balance(session, b.id) == 0
    assert balance(session, c.id) == 2_500
    assert balance(session, d.id) == 2_500


def test_update_can_change_type_and_account() -> None:
    session = make_session()
    a = make_account(session, "A")
    b = make_account(session, "B")
    txns = TransactionService(session, USER)

    txn = txns.create(income(a.id, 1_000))
    updated = txns.update(txn.id, expense(b.id, 1_500, category="Rent"))

    assert updated.type == TransactionType.expense
    assert updated.account_id == b.id
    assert updated.category == "Rent"
    assert balance(session, a.id) == 0
    assert balance(session, b.id) == -1_500


def test_update_matches_delete_then_create() -> None:
    left = make_session()
    right = make_session()
    for session in (left, right):
        make_account(session, "A", 10_000)
        make_account(session, "B", 2_000)
    a_id, b_id = 1, 2

    left_txns = TransactionService(left, USER)
    txn = left_txns.create(transfer(a_id, b_id, 3_000))
    left_txns.update(txn.id, transfer(a_id, b_id, 700))

    right_txns = TransactionService(right, USER)
    txn = right_txns.create(transfer(a_id, b_id, 3_000))
    right_txns.delete(txn.id)
    right_txns.create(transfer(a_id, b_id, 700))

    for account_id in (a_id, b_id):
        assert balance(left, account_id) == balance(right, account_id)


def test_revert_undoes_apply() -> None:
    session = make_session()
    a = make_account(session, "A", 1_234)
    b = make_account(session, "B", -50)
    engine = BalanceEngine(session, USER)

    for effect in (
        TransactionEffect(TransactionType.income, 999, a.id, None),
        TransactionEffect(TransactionType.expense, 999, a.id, None),
        TransactionEffect(TransactionType.transfer, 999, a.id, b.id),
        TransactionEffect(TransactionType.transfer, 999, a.id, None, False),
    ):
        engine.apply(effect)
        engine.revert(effect)
        assert balance(session, a.id) == 1_234
        assert balance(session, b.id) == -50


def test_balances_match_replay_of_surviving_transactions() -> None:
    rng = random.Random(20251018)
    session = make_session()
    accounts = [make_account(session, f"Account {i}") for i in range(4)]
    ids = [a.id for a in accounts]
    txns = TransactionService(session, USER)

    def random_input() -> TransactionIn:
        kind = rng.choice(list(TransactionType))
        amount = rng.randint(1, 50_000)
        if kind == TransactionType.transfer:
            source, destination = rng.sample(ids, 2)
            return transfer(source, destination, amount)
        if kind == TransactionType.income:
            return income(rng.choice(ids), amount)
        return expense(rng.choice(ids), amount)

    live: list[int] = []
    for _ in range(200):
        action = rng.random()
        if not live or action < 0.5:
            live.append(txns.create(random_input()).id)
        elif action < 0.8:
            txns.update(rng.choice(live), random_input())
        else:
            victim = live.pop(rng.randrange(len(live)))
            txns.delete(victim)

    expected = {account_id: 0 for account_id in ids}
    for txn in session.scalars(select(Transaction)):
        for account_id, delta in TransactionEffect.of(txn).deltas():
            expected[account_id] += delta

    assert {account_id: balance(session, account_id) for account_id in ids} == expected


def test_missing_transfer_destination_is_rejected_when_strict() -> None:
    session = make_session()
    a = make_account(session, "A", 10_000)
    foreign = make_account(session, "Not mine", 0, user_id=OTHER_USER)
    txns = TransactionService(session, USER, transfer_policy="strict")

    with pytest.raises(DestinationUnavailable):
        txns.create(transfer(a.id, 999, 4_000))
    with pytest.raises(DestinationUnavailable):
        txns.create(transfer(a.id, foreign.id, 4_000))

    assert balance(session, a.id) == 10_000
    assert balance(session, foreign.id) == 0
    assert session.scalars(select(Transaction)).all() == []


def test_missing_transfer_destination_debits_source_only_when_lenient(caplog) -> None:
    session = make_session()
    a = make_account(session, "A", 10_000)
    foreign = make_account(session, "Not mine", 0, user_id=OTHER_USER)
    txns = TransactionService(session, USER, transfer_policy="lenient")

    with caplog.at_level(logging.WARNING, logger="services"):
        txn = txns.create(transfer(a.id, foreign.id, 4_000))

    # Known degraded transfer: the debit lands, the credit is dropped.
    assert balance(session, a.id) == 6_000
    assert balance(session, foreign.id) == 0
    assert txn.destination_applied is False
    assert txn.to_account_id is None
    assert "transfer_destination_unavailable" in caplog.text

    txns.delete(txn.id)
    assert balance(session, a.id) == 10_000
    assert balance(session, foreign.id) == 0


def test_source_account_must_belong_to_caller() -> None:
    session = make_session()
    foreign = make_account(session, "Not mine", 500, user_id=OTHER_USER)

    with pytest.raises(NotFoundError):
        TransactionService(session, USER).create(income(foreign.id, 1_000))
    assert balance(session, foreign.id) == 500


def test_transactions_are_scoped_to_their_owner() -> None:
    session = make_session()
    a = make_account(session, "A")
    txn = TransactionService(session, USER).create(income(a.id, 1_000))

    other = TransactionService(session, OTHER_USER)
    with pytest.raises(NotFoundError):
        other.get(txn.id)
    with pytest.raises(NotFoundError):
        other.update(txn.id, income(a.id, 5))
    with pytest.raises(NotFoundError):
        other.delete(txn.id)
    assert balance(session, a.id) == 1_000


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"amount_cents": 0}, "Amount"),
        ({"amount_cents": -5}, "Amount"),
        ({"category": "   "}, "Category"),
        ({"type": "refund"}, "Invalid transaction type"),
        ({"account_id": None}, "Account is required"),
        ({"type": TransactionType.transfer, "to_account_id": None}, "destination"),
        ({"type": TransactionType.transfer, "to_account_id": 1}, "differ"),
        ({"type": TransactionType.income, "to_account_id": 2}, "Only transfers"),
    ],
)
def test_invalid_input_is_rejected_before_balances_change(overrides, message) -> None:
    session = make_session()
    a = make_account(session, "A", 1_000)
    make_account(session, "B", 1_000)
    fields = {
        "type": TransactionType.expense,
        "category": "Food",
        "amount_cents": 100,
        "description": None,
        "occurred_at": WHEN,
        "account_id": a.id,
        "to_account_id": None,
        "tags": [],
    }
    fields.update(overrides)

    with pytest.raises(TransactionValidationError, match=message):
        TransactionService(session, USER).create(TransactionIn.model_construct(**fields))
    assert balance(session, a.id) == 1_000


def test_invalid_update_leaves_transaction_and_balances_alone() -> None:
    session = make_session()
    a = make_account(session, "A", 1_000)
    b = make_account(session, "B")
    txns = TransactionService(session, USER)
    txn = txns.create(transfer(a.id, b.id, 300))

    with pytest.raises(TransactionValidationError):
        txns.update(txn.id, transfer(a.id, a.id, 300))
    with pytest.raises(NotFoundError):
        txns.update(txn.id, transfer(999, b.id, 300))

    assert balance(session, a.id) == 700
    assert balance(session, b.id) == 300
    assert txns.get(txn.id).amount_cents == 300


def test_store_failure_rolls_back_the_whole_unit(monkeypatch) -> None:
    session = make_session()
    a = make_account(session, "A", 1_000)

    def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(session, "commit", failing_commit)
    with pytest.raises(StoreFailure):
        TransactionService(session, USER).create(expense(a.id, 400))

    assert balance(session, a.id) == 1_000
    assert session.scalars(select(Transaction)).all() == []


def test_deleted_account_leaves_dangling_history_that_reverts_cleanly() -> None:
    session = make_session()
    a = make_account(session, "A", 10_000)
    b = make_account(session, "B")
    txns = TransactionService(session, USER)
    txn = txns.create(transfer(a.id, b.id, 4_000))

    AccountService(session, USER).delete(b.id)

    kept = txns.get(txn.id)
    assert kept.to_account_id is None
    described = txns.describe(kept)
    assert described["account"]["name"] == "A"
    assert described["to_account"] == {
        "id": None,
        "name": "Deleted account",
        "type": None,
        "color": None,
    }

    txns.delete(txn.id)
    assert balance(session, a.id) == 10_000


def test_create_returns_transaction_with_account_display_fields() -> None:
    session = make_session()
    a = make_account(session, "Checking", 0)
    b = make_account(session, "Savings", 0)
    txns = TransactionService(session, USER)

    txn = txns.create(transfer(a.id, b.id, 100))
    described = txns.describe(txn)

    assert described["account"] == {
        "id": a.id,
        "name": "Checking",
        "type": "bank",
        "color": "#3B82F6",
    }
    assert described["to_account"]["name"] == "Savings"
    assert described["amount_cents"] == 100


def test_tags_are_deduplicated_case_insensitive() -> None:
    session = make_session()
    a = make_account(session, "A")
    data = expense(a.id, 1_299)
    data.tags = ["Dining", "dining", " DINING ", "", "Work"]

    txn = TransactionService(session, USER).create(data)

    assert txn.tags == ["Dining", "Work"]


def make_file_sessionmaker(tmp_path):
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'finance.db'}")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def test_update_reverts_the_stored_amount_after_a_concurrent_edit(tmp_path) -> None:
    SessionLocal = make_file_sessionmaker(tmp_path)
    first, second = SessionLocal(), SessionLocal()
    a = make_account(first, "A")
    txn = TransactionService(first, USER).create(income(a.id, 100))

    TransactionService(second, USER).get(txn.id)
    TransactionService(first, USER).update(txn.id, income(a.id, 200))
    TransactionService(second, USER).update(txn.id, income(a.id, 300))

    check = SessionLocal()
    assert balance(check, a.id) == 300
    assert check.get(Transaction, txn.id).amount_cents == 300
    assert check.get(Transaction, txn.id).version == 3


def test_delete_reverts_the_stored_amount_after_a_concurrent_edit(tmp_path) -> None:
    SessionLocal = make_file_sessionmaker(tmp_path)
    first, second = SessionLocal(), SessionLocal()
    a = make_account(first, "A", 1_000)
    txn = TransactionService(first, USER).create(expense(a.id, 100))

    TransactionService(second, USER).get(txn.id)
    TransactionService(first, USER).update(txn.id, expense(a.id, 250))
    TransactionService(second, USER).delete(txn.id)

    check = SessionLocal()
    assert balance(check, a.id) == 1_000
    assert check.scalars(select(Transaction)).all() == []


def test_stale_account_version_rolls_back_as_store_failure(tmp_path) -> None:
    SessionLocal = make_file_sessionmaker(tmp_path)
    first, second = SessionLocal(), SessionLocal()
    a = make_account(first, "A", 1_000)
    b = make_account(first, "B")
    txn = TransactionService(first, USER).create(expense(a.id, 100))

    # second holds version 1 of A while first moves it on.
    AccountService(second, USER).get(a.id)
    TransactionService(first, USER).create(expense(a.id, 50))

    with pytest.raises(StoreFailure):
        TransactionService(second, USER).create(transfer(a.id, b.id, 400))

    check = SessionLocal()
    assert balance(check, a.id) == 850
    assert balance(check, b.id) == 0
    assert len(check.scalars(select(Transaction)).all()) == 2

    AccountService(second, USER).get(a.id)
    TransactionService(first, USER).create(income(a.id, 10))

    with pytest.raises(StoreFailure):
        TransactionService(second, USER).update(txn.id, expense(a.id, 700))

    check = SessionLocal()
    assert balance(check, a.id) == 860
    assert check.get(Transaction, txn.id).amount_cents == 100


def test_stale_transaction_row_cannot_be_written(tmp_path) -> None:
    SessionLocal = make_file_sessionmaker(tmp_path)
    first, second = SessionLocal(), SessionLocal()
    a = make_account(first, "A")
    txn = TransactionService(first, USER).create(income(a.id, 100))

    stale = TransactionService(second, USER).get(txn.id)
    TransactionService(first, USER).update(txn.id, income(a.id, 200, "Bonus"))

    with pytest.raises(StoreFailure):
        with unit_of_work(second, "edit transaction", USER):
            stale.description = "edited from an old copy"

    check = SessionLocal()
    stored = check.get(Transaction, txn.id)
    assert stored.category == "Bonus"
    assert stored.description is None
    assert balance(check, a.id) == 200


def test_lenient_transfer_shows_destination_as_unavailable() -> None:
    session = make_session()
    a = make_account(session, "A", 1_000)
    txns = TransactionService(session, USER, transfer_policy="lenient")

    txn = txns.create(transfer(a.id, 999, 100))

    assert txns.describe(txn)["to_account"]["name"] == "Unavailable account"


def test_aware_occurred_at_is_stored_as_local_wall_clock(monkeypatch) -> None:
    monkeypatch.setenv("FINANCE_TIMEZONE", "UTC")
    get_settings.cache_clear()
    try:
        session = make_session()
        a = make_account(session, "A", 1_000)
        data = expense(a.id, 100)
        data.occurred_at = datetime(2025, 3, 31, 23, 30, tzinfo=timezone(timedelta(hours=-5)))

        txns = TransactionService(session, USER)
        txn = txns.create(data)

        assert txn.occurred_at == datetime(2025, 4, 1, 4, 30)
        march = txns.list(
            TransactionFilters(start=datetime(2025, 3, 1), end=datetime(2025, 3, 31, 23, 59))
        )
        assert march == []
    finally:
        monkeypatch.undo()
        get_settings.cache_clear()
