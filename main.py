import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from typing import Any, Callable, Literal, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from auth import AuthService, InvalidCredentials, Principal
from config import get_settings
from database import get_db, init_db
from invalidation import ViewInvalidator
from results import Err, ErrorKind, Ok, Result, ValidationErr
from schemas import (
    CategoryDetailOut,
    CategoryOut,
    CategoryStatsOut,
    CategoryWithCountOut,
    DailyBucketOut,
    ExpenseOut,
    ExpensePageOut,
    ExpenseStatsOut,
    UserOut,
)
from services import (
    CategoryService,
    ExpenseFilters,
    ExpenseService,
    NotFound,
    StatsService,
    Unauthorized,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"

ERROR_STATUS = {
    ErrorKind.unauthorized: 401,
    ErrorKind.not_found: 404,
    ErrorKind.conflict: 409,
    ErrorKind.validation: 422,
    ErrorKind.internal: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Application startup")
    yield
    logger.info("Application shutdown")


app = FastAPI(title="Expense Tracker", lifespan=lifespan)


@app.exception_handler(Unauthorized)
async def unauthorized_handler(request: Request, exc: Unauthorized) -> JSONResponse:
    return JSONResponse({"error": str(exc) or "Unauthorized"}, status_code=401)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=404)


def get_principal(
    request: Request, db: Session = Depends(get_db)
) -> Optional[Principal]:
    token = None
    scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        token = credentials.strip()
    if not token:
        token = request.cookies.get(SESSION_COOKIE)
    return AuthService(db).principal_from_token(token)


def get_invalidator() -> ViewInvalidator:
    return ViewInvalidator()


def expense_json(expense) -> dict[str, Any]:
    return ExpenseOut.model_validate(expense).model_dump(mode="json")


def category_json(category) -> dict[str, Any]:
    return CategoryOut.model_validate(category).model_dump(mode="json")


def render_result(
    result: Result,
    invalidator: ViewInvalidator,
    serialize: Optional[Callable[[Any], Any]] = None,
    *,
    status_code: int = 200,
) -> JSONResponse:
    if isinstance(result, Ok):
        body: dict[str, Any] = {"success": True}
        if result.count is not None:
            body["count"] = result.count
        elif result.data is not None and serialize is not None:
            body["data"] = serialize(result.data)
        headers = {}
        trigger = invalidator.hx_trigger()
        if trigger:
            headers["HX-Trigger"] = trigger
        return JSONResponse(body, status_code=status_code, headers=headers)
    if isinstance(result, ValidationErr):
        return JSONResponse({"error": result.fields}, status_code=422)
    if isinstance(result, Err):
        return JSONResponse(
            {"error": result.message}, status_code=ERROR_STATUS[result.kind]
        )
    raise TypeError(f"Unexpected result: {result!r}")


def _day_start(value: Optional[date]) -> Optional[datetime]:
    return datetime.combine(value, time.min) if value else None


def _day_end(value: Optional[date]) -> Optional[datetime]:
    return datetime.combine(value, time.max) if value else None


@app.get("/health")
def health_check():
    return {"status": "ok"}


# ---------------------------------------------------------------- auth


@app.post("/auth/register")
def register(data: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    result = AuthService(db).register(data)
    return render_result(
        result,
        ViewInvalidator(),
        lambda user: UserOut.model_validate(user).model_dump(),
        status_code=201,
    )


@app.post("/auth/login")
def login(data: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    service = AuthService(db)
    try:
        principal = service.authorize(data.get("email"), data.get("password"))
    except InvalidCredentials as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    token = service.issue_token(principal)
    response = JSONResponse(
        {
            "access_token": token,
            "token_type": "bearer",
            "user": {
                "id": principal.user_id,
                "email": principal.email,
                "name": principal.name,
            },
        }
    )
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=settings.session_max_age_hours * 3600,
        httponly=True,
        samesite="lax",
    )
    return response


@app.post("/auth/logout", status_code=204)
def logout():
    response = Response(status_code=204)
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.get("/auth/me", response_model=UserOut)
def me(principal: Optional[Principal] = Depends(get_principal)):
    if principal is None:
        raise Unauthorized("Unauthorized")
    return UserOut(id=principal.user_id, email=principal.email, name=principal.name)


# ---------------------------------------------------------------- categories


@app.get("/api/categories", response_model=list[CategoryWithCountOut])
def list_categories(
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
):
    summaries = CategoryService(db).list(principal)
    return [
        CategoryWithCountOut(
            **CategoryOut.model_validate(item.category).model_dump(),
            expense_count=item.expense_count,
        )
        for item in summaries
    ]


@app.post("/api/categories")
def create_category(
    data: dict[str, Any] = Body(...),
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
    invalidator: ViewInvalidator = Depends(get_invalidator),
):
    result = CategoryService(db, invalidator).create(principal, data)
    return render_result(result, invalidator, category_json, status_code=201)


@app.post("/api/categories/bulk-delete")
def bulk_delete_categories(
    ids: list[str] = Body(..., embed=True),
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
    invalidator: ViewInvalidator = Depends(get_invalidator),
):
    result = CategoryService(db, invalidator).bulk_delete(principal, ids)
    return render_result(result, invalidator)


@app.get("/api/categories/{category_id}", response_model=CategoryDetailOut)
def get_category(
    category_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
):
    detail = CategoryService(db).get(principal, category_id)
    return CategoryDetailOut(
        **CategoryOut.model_validate(detail.category).model_dump(),
        expense_count=detail.expense_count,
        recent_expenses=[
            ExpenseOut.model_validate(expense) for expense in detail.recent_expenses
        ],
    )


@app.get("/api/categories/{category_id}/stats", response_model=CategoryStatsOut)
def category_stats(
    category_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
):
    stats = CategoryService(db).stats(principal, category_id)
    return CategoryStatsOut.model_validate(stats)


@app.patch("/api/categories/{category_id}")
def update_category(
    category_id: str,
    data: dict[str, Any] = Body(...),
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
    invalidator: ViewInvalidator = Depends(get_invalidator),
):
    result = CategoryService(db, invalidator).update(principal, category_id, data)
    return render_result(result, invalidator, category_json)


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
    invalidator: ViewInvalidator = Depends(get_invalidator),
):
    result = CategoryService(db, invalidator).delete(principal, category_id)
    return render_result(result, invalidator)


# ---------------------------------------------------------------- expenses


@app.get("/api/expenses", response_model=ExpensePageOut)
def list_expenses(
    category_id: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
    sort_by: Literal["date", "amount", "description"] = "date",
    sort_order: Literal["asc", "desc"] = "desc",
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
):
    filters = ExpenseFilters(
        category_id=category_id,
        start=_day_start(start),
        end=_day_end(end),
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )
    try:
        page = ExpenseService(db).list(principal, filters)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExpensePageOut.model_validate(page)


@app.post("/api/expenses")
def create_expense(
    data: dict[str, Any] = Body(...),
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
    invalidator: ViewInvalidator = Depends(get_invalidator),
):
    result = ExpenseService(db, invalidator).create(principal, data)
    return render_result(result, invalidator, expense_json, status_code=201)


@app.get("/api/expenses/search", response_model=list[ExpenseOut])
def search_expenses(
    q: str,
    limit: int = Query(10, ge=1, le=100),
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return [
        ExpenseOut.model_validate(expense)
        for expense in ExpenseService(db).search(principal, q, limit)
    ]


@app.get("/api/expenses/recent", response_model=list[ExpenseOut])
def recent_expenses(
    limit: int = Query(10, ge=1, le=100),
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return [
        ExpenseOut.model_validate(expense)
        for expense in ExpenseService(db).recent(principal, limit)
    ]


@app.post("/api/expenses/bulk-delete")
def bulk_delete_expenses(
    ids: list[str] = Body(..., embed=True),
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
    invalidator: ViewInvalidator = Depends(get_invalidator),
):
    result = ExpenseService(db, invalidator).bulk_delete(principal, ids)
    return render_result(result, invalidator)


@app.post("/api/expenses/bulk-category")
def bulk_update_category(
    ids: list[str] = Body(...),
    category_id: str = Body(...),
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
    invalidator: ViewInvalidator = Depends(get_invalidator),
):
    result = ExpenseService(db, invalidator).bulk_update_category(
        principal, ids, category_id
    )
    return render_result(result, invalidator)


@app.get("/api/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return ExpenseOut.model_validate(ExpenseService(db).get(principal, expense_id))


@app.patch("/api/expenses/{expense_id}")
def update_expense(
    expense_id: str,
    data: dict[str, Any] = Body(...),
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
    invalidator: ViewInvalidator = Depends(get_invalidator),
):
    result = ExpenseService(db, invalidator).update(principal, expense_id, data)
    return render_result(result, invalidator, expense_json)


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
    invalidator: ViewInvalidator = Depends(get_invalidator),
):
    result = ExpenseService(db, invalidator).delete(principal, expense_id)
    return render_result(result, invalidator)


@app.post("/api/expenses/{expense_id}/duplicate")
def duplicate_expense(
    expense_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
    invalidator: ViewInvalidator = Depends(get_invalidator),
):
    result = ExpenseService(db, invalidator).duplicate(principal, expense_id)
    return render_result(result, invalidator, expense_json, status_code=201)


# ---------------------------------------------------------------- stats


@app.get("/api/stats", response_model=ExpenseStatsOut)
def expense_stats(
    period: Literal["week", "month", "year"] = "month",
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return ExpenseStatsOut.model_validate(
        StatsService(db).expense_stats(principal, period)
    )


@app.get("/api/stats/daily", response_model=list[DailyBucketOut])
def expenses_by_day(
    start: date,
    end: date,
    principal: Optional[Principal] = Depends(get_principal),
    db: Session = Depends(get_db),
):
    if start > end:
        raise HTTPException(status_code=400, detail="Start date must be before end date")
    buckets = StatsService(db).by_date_range(
        principal, _day_start(start), _day_end(end)
    )
    return [DailyBucketOut.model_validate(bucket) for bucket in buckets]


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
