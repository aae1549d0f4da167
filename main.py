import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from functools import lru_cache
from typing import Any, Iterator
from zoneinfo import ZoneInfo

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

import aggregation
from client import ApiClient
from config import get_settings
from csrf import CSRF_HEADER, generate_csrf_token, validate_csrf_token
from database import init_db
from errors import (
    FinanceAPIError,
    ParseFailed,
    RequestFailed,
    SessionExpired,
    Unauthenticated,
    ValidationFailed,
)
from exports import format_for_export, render_pdf, rows_to_csv
from resources import FinanceAPI, Resource
from schemas import (
    AmountIn,
    Credentials,
    GoalRecord,
    PasswordChangeIn,
    ProfileUpdateIn,
    RemoteModel,
)
from session_store import get_default_store

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finanzas Dashboard")

EXPORT_SECTIONS = ("general", "transactions", "goals", "savings")


@lru_cache(maxsize=1)
def _default_finance_api() -> FinanceAPI:
    return FinanceAPI(ApiClient(get_default_store()))


def get_finance_api() -> FinanceAPI:
    return _default_finance_api()


def require_csrf(request: Request) -> None:
    if not validate_csrf_token(request.headers.get(CSRF_HEADER, "")):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


class InFlightGuard:
    """Rejects a second save/delete of a record while the first is still running."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._busy: set[tuple[str, int]] = set()

    @contextmanager
    def hold(self, resource: str, record_id: int) -> Iterator[None]:
        key = (resource, record_id)
        with self._lock:
            if key in self._busy:
                raise HTTPException(
                    status_code=409, detail="This record is already being saved"
                )
            self._busy.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._busy.discard(key)


in_flight = InFlightGuard()


@app.on_event("startup")
def startup_event():
    init_db()


@app.exception_handler(FinanceAPIError)
def finance_api_error_handler(request: Request, exc: FinanceAPIError) -> JSONResponse:
    if isinstance(exc, (Unauthenticated, SessionExpired)):
        status = 401
    elif isinstance(exc, ParseFailed):
        status = 502
    elif isinstance(exc, RequestFailed) and exc.status and 400 <= exc.status < 500:
        status = exc.status
    else:
        status = 502
    logger.warning(
        f"api_error: path={request.url.path} kind={type(exc).__name__} status={status}"
    )
    return JSONResponse(status_code=status, content={"detail": exc.message})


@app.exception_handler(ValidationFailed)
def validation_failed_handler(request: Request, exc: ValidationFailed) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    messages = [error.get("msg", "") for error in exc.errors()]
    return JSONResponse(status_code=400, content={"detail": "; ".join(messages)})


def dump(record: RemoteModel) -> dict[str, Any]:
    data = record.model_dump(mode="json")
    if isinstance(record, GoalRecord):
        data["completion_percentage"] = record.completion_percentage
        data["completed"] = record.completed
    return data


def _today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def _months_param(months: int) -> int:
    if months not in aggregation.EVOLUTION_WINDOWS:
        raise HTTPException(
            status_code=400,
            detail=f"months must be one of {aggregation.EVOLUTION_WINDOWS}",
        )
    return months


# --- auth -----------------------------------------------------------------


@app.get("/auth/csrf")
def csrf_token():
    return {"token": generate_csrf_token()}


@app.post("/auth/login", dependencies=[Depends(require_csrf)])
def login(credentials: Credentials, api: FinanceAPI = Depends(get_finance_api)):
    user = api.api.login(credentials.username, credentials.password)
    return {"user": user.model_dump(exclude_none=True)}


@app.post("/auth/register", dependencies=[Depends(require_csrf)])
def register(credentials: Credentials, api: FinanceAPI = Depends(get_finance_api)):
    api.api.register(credentials.username, credentials.password)
    user = api.api.login(credentials.username, credentials.password)
    return {"user": user.model_dump(exclude_none=True)}


@app.post("/auth/logout", dependencies=[Depends(require_csrf)])
def logout(api: FinanceAPI = Depends(get_finance_api)):
    api.api.logout()
    return {"authenticated": False}


@app.get("/auth/me")
def me(api: FinanceAPI = Depends(get_finance_api)):
    user = api.api.current_user()
    return {
        "authenticated": api.api.store.is_authenticated(),
        "user": user.model_dump(exclude_none=True) if user else None,
    }


@app.put("/auth/profile", dependencies=[Depends(require_csrf)])
def update_profile(data: ProfileUpdateIn, api: FinanceAPI = Depends(get_finance_api)):
    profile = api.api.update_profile(data)
    return {"user": profile.model_dump(exclude_none=True)}


@app.post("/auth/password", dependencies=[Depends(require_csrf)])
def change_password(data: PasswordChangeIn, api: FinanceAPI = Depends(get_finance_api)):
    api.api.change_password(data)
    return {"changed": True}


# --- resources ------------------------------------------------------------


def _register_crud(slug: str, attribute: str) -> None:
    def _resource(api: FinanceAPI) -> Resource:
        return getattr(api, attribute)

    def list_records(api: FinanceAPI = Depends(get_finance_api)):
        return [dump(record) for record in _resource(api).list()]

    def create_record(
        payload: dict[str, Any] = Body(...), api: FinanceAPI = Depends(get_finance_api)
    ):
        return dump(_resource(api).create(payload))

    def update_record(
        record_id: int,
        payload: dict[str, Any] = Body(...),
        api: FinanceAPI = Depends(get_finance_api),
    ):
        with in_flight.hold(slug, record_id):
            return dump(_resource(api).update(record_id, payload))

    def delete_record(record_id: int, api: FinanceAPI = Depends(get_finance_api)):
        with in_flight.hold(slug, record_id):
            _resource(api).delete(record_id)
        return {"deleted": record_id}

    csrf = [Depends(require_csrf)]
    app.add_api_route(f"/api/{slug}", list_records, methods=["GET"], name=f"list_{attribute}")
    app.add_api_route(
        f"/api/{slug}", create_record, methods=["POST"], dependencies=csrf,
        name=f"create_{attribute}",
    )
    app.add_api_route(
        f"/api/{slug}/{{record_id}}", update_record, methods=["PUT"], dependencies=csrf,
        name=f"update_{attribute}",
    )
    app.add_api_route(
        f"/api/{slug}/{{record_id}}", delete_record, methods=["DELETE"], dependencies=csrf,
        name=f"delete_{attribute}",
    )


_register_crud("incomes", "incomes")
_register_crud("expenses", "expenses")
_register_crud("recurring-expenses", "recurring_expenses")
_register_crud("savings", "savings")
_register_crud("goals", "goals")


@app.post("/api/savings/{record_id}/deposit", dependencies=[Depends(require_csrf)])
def deposit_savings(
    record_id: int, data: AmountIn, api: FinanceAPI = Depends(get_finance_api)
):
    with in_flight.hold("savings", record_id):
        record = api.savings.get(record_id)
        return dump(api.savings.deposit(record, data.amount))


@app.post("/api/goals/{record_id}/contribute", dependencies=[Depends(require_csrf)])
def contribute_goal(
    record_id: int, data: AmountIn, api: FinanceAPI = Depends(get_finance_api)
):
    with in_flight.hold("goals", record_id):
        goal = api.goals.get(record_id)
        transition = api.goals.contribute(goal, data.amount)
    return {"goal": dump(transition.goal), "completed_now": transition.completed_now}


@app.get("/api/frequencies")
def list_frequencies(api: FinanceAPI = Depends(get_finance_api)):
    return [dump(record) for record in api.frequencies.list()]


@app.get("/api/categories")
def list_categories(api: FinanceAPI = Depends(get_finance_api)):
    return [dump(record) for record in api.categories.list()]


# --- reports --------------------------------------------------------------


@app.get("/api/dashboard")
def dashboard(api: FinanceAPI = Depends(get_finance_api)):
    data = api.dashboard()
    return {
        "totals": data["totals"],
        "recent": aggregation.recent_transactions(data["incomes"], data["expenses"]),
        "active_goals": aggregation.active_goals(data["goals"]),
        "savings_by_kind": aggregation.savings_by_kind(data["savings"]),
    }


@app.get("/api/reports/evolution")
def report_evolution(months: int = 6, api: FinanceAPI = Depends(get_finance_api)):
    months = _months_param(months)
    return aggregation.monthly_evolution(
        api.incomes.list(),
        api.expenses.list(),
        api.savings.list(),
        months=months,
        today=_today(),
    )


@app.get("/api/reports/categories")
def report_categories(
    kind: str = "expense",
    mode: str = "keyword",
    api: FinanceAPI = Depends(get_finance_api),
):
    if kind == "expense":
        records = api.expenses.list()
    elif kind == "income":
        records = api.incomes.list()
    elif kind == "goal":
        records = api.goals.list()
    else:
        raise HTTPException(status_code=400, detail="kind must be income, expense or goal")
    amount = aggregation.goal_amount_of if kind == "goal" else aggregation.amount_of
    if mode == "keyword":
        return aggregation.group_by_category(records, amount=amount)
    if mode == "exact":
        key = "name" if kind == "goal" else "description"
        return aggregation.group_by_key(records, key=key, amount=amount)
    raise HTTPException(status_code=400, detail="mode must be keyword or exact")


@app.get("/api/reports/top")
def report_top(
    kind: str = "expense", limit: int = aggregation.TOP_N,
    api: FinanceAPI = Depends(get_finance_api),
):
    if kind == "expense":
        records = api.expenses.list()
    elif kind == "income":
        records = api.incomes.list()
    else:
        raise HTTPException(status_code=400, detail="kind must be income or expense")
    return [dump(record) for record in aggregation.top_n(records, limit)]


@app.get("/api/reports/goals")
def report_goals(api: FinanceAPI = Depends(get_finance_api)):
    return aggregation.goal_progress(api.goals.list())


def _export_rows(section: str, months: int, api: FinanceAPI) -> list[dict[str, object]]:
    if section == "general":
        points = aggregation.monthly_evolution(
            api.incomes.list(),
            api.expenses.list(),
            api.savings.list(),
            months=months,
            today=_today(),
        )
        return [
            {
                "Month": point["label"],
                "Income": point["income"],
                "Expense": point["expense"],
                "Savings": point["savings"],
                "Balance": point["balance"],
            }
            for point in points
        ]
    if section == "transactions":
        rows: list[dict[str, object]] = []
        for kind, records in (
            ("income", api.incomes.list()),
            ("expense", api.expenses.list()),
        ):
            rows.extend(
                {
                    "type": kind,
                    "description": record.description,
                    "category": record.category,
                    "date": record.date,
                    "amount": record.amount,
                }
                for record in records
            )
        return format_for_export(rows, "transactions")
    if section == "goals":
        return format_for_export(api.goals.list(), "goals")
    return format_for_export(api.savings.list(), "savings")


def _export_section(section: str) -> str:
    if section not in EXPORT_SECTIONS:
        raise HTTPException(
            status_code=400, detail=f"section must be one of {EXPORT_SECTIONS}"
        )
    return section


@app.get("/reports/export.csv")
def export_csv(
    section: str = "general", months: int = 6, api: FinanceAPI = Depends(get_finance_api)
):
    section = _export_section(section)
    rows = _export_rows(section, _months_param(months), api)
    csv_text = rows_to_csv(rows)
    filename = f"report_{section}_{_today().isoformat()}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/reports/export.pdf")
def export_pdf(
    section: str = "general", months: int = 6, api: FinanceAPI = Depends(get_finance_api)
):
    section = _export_section(section)
    rows = _export_rows(section, _months_param(months), api)
    title = f"Report: {section.capitalize()}"
    start_time = datetime.now()
    try:
        pdf_bytes = render_pdf(rows, title)
    except (ImportError, OSError) as exc:
        raise HTTPException(
            status_code=500,
            detail="PDF export requires WeasyPrint system dependencies; install them for your OS and retry.",
        ) from exc
    pdf_duration = (datetime.now() - start_time).total_seconds()
    logger.info(
        f"report_generated: section={section} rows={len(rows)} "
        f"pdf_size_bytes={len(pdf_bytes)} pdf_duration={pdf_duration:.2f}s"
    )
    filename = f"report_{section}_{_today().isoformat()}.pdf"
    return StreamingResponse(
        iter([pdf_bytes]),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(pdf_bytes)),
        },
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
