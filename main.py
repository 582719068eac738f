import logging
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from auth import InvalidToken, resolve_user_id
from database import SessionLocal
from models import TransactionType
from periods import end_of_day, start_of_day
from schemas import AccountIn, AccountUpdateIn, AnalyticsQuery, Granularity, TransactionIn
from services import (
    AccountService,
    AnalyticsService,
    NotFoundError,
    StoreFailure,
    TransactionFilters,
    TransactionService,
    TransactionValidationError,
    serialize_account,
)

logging.basicConfig(level=logging.INFO)

app = FastAPI(title="Finance Tracker")
bearer_scheme = HTTPBearer(auto_error=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> int:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return resolve_user_id(credentials.credentials)
    except InvalidToken as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


@contextmanager
def domain_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TransactionValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def analytics_query(
    period: str = "month",
    account_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> AnalyticsQuery:
    return AnalyticsQuery(period=period, account_id=account_id, start=start, end=end)


@app.get("/api/health")
def health():
    return {"status": "OK", "message": "Finance tracker API is running"}


@app.get("/api/accounts")
def list_accounts(
    active_only: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    accounts = AccountService(db, user_id).list_all(active_only=active_only)
    return [serialize_account(account) for account in accounts]


@app.post("/api/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    with domain_errors():
        account = AccountService(db, user_id).create(payload)
    return serialize_account(account)


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    with domain_errors():
        account = AccountService(db, user_id).get(account_id)
    return serialize_account(account)


@app.put("/api/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    with domain_errors():
        account = AccountService(db, user_id).update(account_id, payload)
    return serialize_account(account)


@app.delete("/api/accounts/{account_id}")
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    with domain_errors():
        AccountService(db, user_id).delete(account_id)
    return {"message": "Account deleted successfully"}


@app.get("/api/transactions")
def list_transactions(
    start: Optional[date] = None,
    end: Optional[date] = None,
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    filters = TransactionFilters(
        start=start_of_day(start) if start else None,
        end=end_of_day(end) if end else None,
        type=type,
        category=category,
        account_id=account_id,
    )
    service = TransactionService(db, user_id)
    return service.describe_all(service.list(filters))


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    with domain_errors():
        txn = service.get(transaction_id)
    return service.describe(txn)


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    with domain_errors():
        txn = service.create(payload)
    return service.describe(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    with domain_errors():
        txn = service.update(transaction_id, payload)
    return service.describe(txn)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    with domain_errors():
        TransactionService(db, user_id).delete(transaction_id)
    return {"message": "Transaction deleted successfully"}


@app.get("/api/analytics/summary")
def analytics_summary(
    query: AnalyticsQuery = Depends(analytics_query),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    with domain_errors():
        return AnalyticsService(db, user_id).summary(query)


@app.get("/api/analytics/trends")
def analytics_trends(
    query: AnalyticsQuery = Depends(analytics_query),
    type: TransactionType = TransactionType.expense,
    granularity: Optional[Granularity] = None,
    include_accounts: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    with domain_errors():
        return AnalyticsService(db, user_id).trends(
            query, type, granularity, include_accounts=include_accounts
        )


@app.get("/api/analytics/categories")
def analytics_categories(
    query: AnalyticsQuery = Depends(analytics_query),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    with domain_errors():
        return AnalyticsService(db, user_id).categories(query)


@app.get("/api/analytics/accounts")
def analytics_accounts(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return AnalyticsService(db, user_id).account_stats()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
