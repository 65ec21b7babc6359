import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import SessionLocal
from models import EntrySource, ExpenseType, Transaction, TransactionType
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import (
    AssetAdjustIn,
    AssetHistoryOut,
    AssetIn,
    AssetOut,
    GoalFundIn,
    GoalFundOut,
    GoalFundUpdate,
    GoalLogAction,
    SettlementIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
)
from services import (
    AssetHistoryService,
    AssetService,
    GoalFundService,
    InvalidFieldError,
    NotFoundError,
    SettlementConflict,
    SettlementService,
    SnapshotService,
    TransactionService,
    reflect_due_all,
    settle_all_users,
)

logger = logging.getLogger(__name__)

scheduler_manager = SchedulerManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler_manager.start()
    try:
        yield
    finally:
        scheduler_manager.stop()


app = FastAPI(title="Finledger", lifespan=lifespan)


class Ledger(str, Enum):
    expenses = "expenses"
    incomes = "incomes"

    @property
    def txn_type(self) -> TransactionType:
        if self is Ledger.expenses:
            return TransactionType.expense
        return TransactionType.income


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(request: Request) -> str:
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if user_id:
        return user_id
    settings = get_settings()
    if settings.allow_dev_header_auth:
        return settings.default_user_id
    raise HTTPException(status_code=401, detail="Missing X-User-Id header")


def ok(data: object, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"data": data, "error": None}),
    )


def fail(
    code: str, message: str, status_code: int, details: Optional[object] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            {
                "data": None,
                "error": {"code": code, "message": message, "details": details},
            }
        ),
    )


@app.exception_handler(InvalidFieldError)
def invalid_field_handler(request: Request, exc: InvalidFieldError):
    return fail("VALIDATION_ERROR", str(exc), 400)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    return fail("VALIDATION_ERROR", "Invalid request", 400, exc.errors())


@app.exception_handler(NotFoundError)
def not_found_handler(request: Request, exc: NotFoundError):
    return fail("NOT_FOUND", str(exc), 404)


@app.exception_handler(SettlementConflict)
def conflict_handler(request: Request, exc: SettlementConflict):
    return fail("SETTLEMENT_CONFLICT", str(exc), 409)


@app.exception_handler(SQLAlchemyError)
def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(
        f"request_failed: method={request.method} path={request.url.path}",
        exc_info=exc,
    )
    return fail("SERVER_ERROR", "Database operation failed", 500)


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    codes = {401: "UNAUTHORIZED", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
    return fail(codes.get(exc.status_code, "HTTP_ERROR"), str(exc.detail), exc.status_code)


def _txn_out(txn: Transaction) -> dict:
    return TransactionOut.model_validate(txn).model_dump(mode="json")


def _typed(service: TransactionService, ledger: Ledger, transaction_id: str) -> Transaction:
    txn = service.get(transaction_id)
    if txn.type != ledger.txn_type:
        raise NotFoundError("Transaction not found")
    return txn


@app.get("/api/ping")
def ping():
    return ok({"status": "ok", "today": local_today().isoformat()})


@app.get("/api/assets")
def list_assets(
    category: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    assets = AssetService(db, user_id).list_all(category)
    return ok([AssetOut.model_validate(a).model_dump(mode="json") for a in assets])


@app.post("/api/assets")
def create_asset(
    payload: AssetIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    asset = AssetService(db, user_id).create(payload)
    return ok(AssetOut.model_validate(asset).model_dump(mode="json"), 201)


@app.get("/api/assets/{asset_id}")
def get_asset(
    asset_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    asset = AssetService(db, user_id).get(asset_id)
    return ok(AssetOut.model_validate(asset).model_dump(mode="json"))


@app.post("/api/assets/{asset_id}/adjust")
def adjust_asset(
    asset_id: str,
    payload: AssetAdjustIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    asset = AssetService(db, user_id).adjust(asset_id, payload.delta)
    return ok(AssetOut.model_validate(asset).model_dump(mode="json"))


@app.get("/api/asset-history")
def asset_history(
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    records = AssetHistoryService(db, user_id).windows()
    return ok([AssetHistoryOut.model_validate(r).model_dump(mode="json") for r in records])


@app.get("/api/goal-funds")
def list_goal_funds(
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    funds = GoalFundService(db, user_id).list_all()
    return ok([GoalFundOut.model_validate(f).model_dump(mode="json") for f in funds])


@app.post("/api/goal-funds")
def create_goal_fund(
    payload: GoalFundIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    fund = GoalFundService(db, user_id).create(payload)
    return ok(GoalFundOut.model_validate(fund).model_dump(mode="json"), 201)


@app.get("/api/goal-funds/{fund_id}")
def get_goal_fund(
    fund_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    fund = GoalFundService(db, user_id).get(fund_id)
    return ok(GoalFundOut.model_validate(fund).model_dump(mode="json"))


@app.put("/api/goal-funds/{fund_id}")
def update_goal_fund(
    fund_id: str,
    payload: GoalFundUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    fund = GoalFundService(db, user_id).update(fund_id, payload)
    return ok(GoalFundOut.model_validate(fund).model_dump(mode="json"))


@app.delete("/api/goal-funds/{fund_id}")
def delete_goal_fund(
    fund_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    GoalFundService(db, user_id).delete(fund_id)
    return ok({"id": fund_id, "deleted": True})


@app.post("/api/goal-funds/{fund_id}/logs")
def goal_fund_log(
    fund_id: str,
    payload: GoalLogAction,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = GoalFundService(db, user_id)
    if payload.action == "add-log":
        if payload.amount is None or payload.amount <= 0:
            raise InvalidFieldError("amount must be positive for add-log")
        fund = service.sync_log(fund_id, payload.month, payload.amount, "add", payload.note)
    else:
        fund = service.remove_month(fund_id, payload.month)
    return ok(GoalFundOut.model_validate(fund).model_dump(mode="json"))


@app.post("/api/jobs/monthly-settlement")
def monthly_settlement_job(
    force: bool = False,
    db: Session = Depends(get_db),
    _user_id: str = Depends(current_user_id),
):
    # always the current month; other months are settled per user
    settings = get_settings()
    today = local_today(settings)
    if not force and today.day != settings.settlement_day:
        return ok({"skipped": True, "reason": "not_settlement_day"})
    return ok(settle_all_users(db, None, today=today, settings=settings))


@app.post("/api/jobs/due-reflection")
def due_reflection_job(
    db: Session = Depends(get_db), _user_id: str = Depends(current_user_id)
):
    return ok({"reflected_count": reflect_due_all(db)})


@app.post("/api/jobs/monthly-snapshot")
def monthly_snapshot_job(
    force: bool = False,
    db: Session = Depends(get_db),
    _user_id: str = Depends(current_user_id),
):
    written = SnapshotService(db).run(force=force)
    return ok({"processed_users": written})


@app.get("/api/{ledger}")
def list_transactions(
    ledger: Ledger,
    month: Optional[str] = None,
    expense_type: Optional[ExpenseType] = None,
    entry_source: Optional[EntrySource] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    items = TransactionService(db, user_id).list(
        ledger.txn_type,
        expense_type=expense_type,
        entry_source=entry_source,
        month=month,
    )
    return ok([_txn_out(txn) for txn in items])


@app.post("/api/{ledger}")
def create_transaction(
    ledger: Ledger,
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    if payload.type is not None and payload.type != ledger.txn_type:
        raise InvalidFieldError(f"type must be {ledger.txn_type.value} for /api/{ledger.value}")
    data = payload.model_copy(update={"type": ledger.txn_type})
    txn = TransactionService(db, user_id).create(data)
    return ok(_txn_out(txn), 201)


@app.get("/api/{ledger}/settlement-status")
def settlement_status(
    ledger: Ledger,
    month: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return ok(SettlementService(db, user_id).status(month, ledger.txn_type))


@app.post("/api/{ledger}/settle-month")
def settle_month(
    ledger: Ledger,
    payload: Optional[SettlementIn] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    target_month = payload.target_month if payload else None
    summary = SettlementService(db, user_id).settle(target_month, ledger.txn_type)
    return ok(summary)


@app.post("/api/{ledger}/rollback-month")
def rollback_month(
    ledger: Ledger,
    payload: Optional[SettlementIn] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    target_month = payload.target_month if payload else None
    summary = SettlementService(db, user_id).rollback(target_month, ledger.txn_type)
    return ok(summary)


@app.get("/api/{ledger}/{transaction_id}")
def get_transaction(
    ledger: Ledger,
    transaction_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    return ok(_txn_out(_typed(service, ledger, transaction_id)))


@app.put("/api/{ledger}/{transaction_id}")
def update_transaction(
    ledger: Ledger,
    transaction_id: str,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    _typed(service, ledger, transaction_id)
    return ok(_txn_out(service.update(transaction_id, payload)))


@app.delete("/api/{ledger}/{transaction_id}")
def delete_transaction(
    ledger: Ledger,
    transaction_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = TransactionService(db, user_id)
    service.remove(_typed(service, ledger, transaction_id))
    return ok({"id": transaction_id, "deleted": True})


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
