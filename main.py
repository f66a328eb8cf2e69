import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import (
    HTMLResponse,
    JSONResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

import httpx

from auth import (
    AuthService,
    ReauthenticationRequired,
    SessionManager,
    SessionTokens,
    UserSession,
    generate_csrf_token,
    validate_csrf_token,
)
from chat import ChatConfigError, ChatProxy, ChatUpstreamError, build_messages
from config import Settings, get_settings
from csv_utils import export_filename, export_transactions, parse_amount
from database import build_engine, build_session_factory
from fetch import FetchCache, TransactionFetcher
from installments import NoInstallmentsRemaining
from models import TransactionType
from periods import local_now, local_today
from scheduler import SchedulerManager
from schemas import (
    ChatRequest,
    ProfileIn,
    QuickTransactionIn,
    SignupIn,
    TransactionIn,
)
from services import (
    SORT_ORDERS,
    ProfileService,
    ReportService,
    ReportsView,
    TransactionFilter,
    TransactionService,
)
from store import StoreError, TransactionNotFound, TransactionStore

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))
router = APIRouter()


def format_currency(cents: Optional[int], options: Optional[dict] = None) -> str:
    if cents is None:
        cents = 0
    include_cents = True
    if isinstance(options, dict):
        include_cents = options.get("include_cents", True)
    if include_cents:
        return f"{cents / 100:,.2f}".replace(",", " ").replace(".", ",")
    return f"{cents / 100:,.0f}".replace(",", " ")


templates.env.filters["currency"] = format_currency
templates.env.globals["TransactionType"] = TransactionType


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_user_session(request: Request) -> UserSession:
    user_session = UserSession(
        request.app.state.session_manager,
        request.cookies.get(ACCESS_COOKIE),
        request.cookies.get(REFRESH_COOKIE),
    )
    request.state.user_session = user_session
    return user_session


def get_store(
    db: Session = Depends(get_db),
    user_session: UserSession = Depends(get_user_session),
) -> TransactionStore:
    return TransactionStore(db, user_session)


def get_fetcher(
    request: Request, store: TransactionStore = Depends(get_store)
) -> TransactionFetcher:
    settings = request.app.state.settings
    return TransactionFetcher(
        store,
        request.app.state.fetch_cache,
        dedup_secs=settings.fetch_dedup_secs,
        max_retries=settings.fetch_max_retries,
        backoff_secs=settings.fetch_backoff_secs,
    )


def set_session_cookies(response: Response, tokens: SessionTokens, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access,
        max_age=settings.refresh_token_ttl_secs,
        httponly=True,
        samesite="lax",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh,
        max_age=settings.refresh_token_ttl_secs,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)


def render(
    request: Request,
    template: str,
    context: dict[str, object],
    user_id: int = 0,
    status_code: int = 200,
) -> HTMLResponse:
    ctx: dict[str, object] = {
        "csrf_token": generate_csrf_token(request.app.state.settings, user_id),
        "signed_in": bool(user_id),
    }
    ctx.update(context)
    return templates.TemplateResponse(request, template, ctx, status_code=status_code)


def check_csrf(request: Request, form, user_id: int = 0) -> None:
    token = str(form.get("csrf_token", "") or "")
    if not validate_csrf_token(request.app.state.settings, token, user_id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def transaction_payload_from_form(form, timezone: str) -> TransactionIn:
    raw_date = str(form.get("date") or "").strip()
    is_credit = form.get("is_credit") == "on"
    raw_installments = str(form.get("installments") or "").strip()
    return TransactionIn(
        amount_cents=parse_amount(str(form.get("amount") or "")),
        description=str(form.get("description") or ""),
        date=datetime.fromisoformat(raw_date) if raw_date else local_now(timezone),
        type=TransactionType(form.get("type") or TransactionType.expense.value),
        category=form.get("category") or None,
        notes=form.get("notes") or None,
        is_credit=is_credit,
        installments=int(raw_installments) if is_credit and raw_installments else None,
    )


def transaction_json(txn) -> dict[str, Any]:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "description": txn.description,
        "amount_cents": txn.amount_cents,
        "type": txn.type.value,
        "category": txn.category,
        "notes": txn.notes,
        "is_credit": txn.is_credit,
        "installments": txn.installments,
        "original_amount_cents": txn.original_amount_cents,
        "remaining_installments": txn.remaining_installments,
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
    }


def reports_json(view: ReportsView) -> dict[str, Any]:
    return {
        "trends": {
            "months": [
                {
                    "key": m.key,
                    "label": m.label,
                    "income_cents": m.income_cents,
                    "expense_cents": m.expense_cents,
                    "savings_cents": m.savings_cents,
                    "savings_rate": m.savings_rate,
                }
                for m in view.trends.months
            ],
            "income_change": view.trends.income_change,
            "expense_change": view.trends.expense_change,
        },
        "stats": view.stats,
        "daily": [
            {"day": d.day.isoformat(), "label": d.label, "amount_cents": d.amount_cents}
            for d in view.daily
        ],
        "recurring": view.recurring,
        "credit": [
            {
                "id": c.id,
                "description": c.description,
                "category": c.category,
                "amount_cents": c.amount_cents,
                "original_amount_cents": c.original_amount_cents,
                "remaining": c.remaining,
                "total": c.total,
                "paid": c.paid,
                "outstanding_cents": c.outstanding_cents,
                "date": c.date.isoformat(),
            }
            for c in view.credit
        ],
        "yearly": {
            year: {
                "income_cents": t.income_cents,
                "expense_cents": t.expense_cents,
                "net_cents": t.net_cents,
            }
            for year, t in view.yearly.items()
        },
        "top_categories": {
            "income": view.top_income,
            "expense": view.top_expenses,
            "all": view.top_all,
        },
    }


def _wants_json(request: Request) -> bool:
    return request.url.path.startswith("/api/")


async def reauthentication_handler(request: Request, exc: ReauthenticationRequired):
    logger.info(f"reauth_required: path={request.url.path} reason={exc}")
    if _wants_json(request):
        response: Response = JSONResponse(
            {"detail": "Session expired, please log in again"}, status_code=401
        )
    else:
        response = RedirectResponse(url="/login", status_code=303)
    clear_session_cookies(response)
    return response


async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"store_unavailable: path={request.url.path} reason={exc}")
    if _wants_json(request):
        return JSONResponse({"detail": str(exc)}, status_code=503)
    return templates.TemplateResponse(
        request,
        "error.html",
        {
            "message": str(exc),
            "retry_url": str(request.url),
            "signed_in": True,
        },
        status_code=503,
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    engine = build_engine(settings)
    session_factory = build_session_factory(engine)
    scheduler_manager = (
        SchedulerManager(session_factory, settings) if settings.scheduler_enabled else None
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if scheduler_manager is not None:
            scheduler_manager.start()
        try:
            yield
        finally:
            if scheduler_manager is not None:
                scheduler_manager.stop()
            engine.dispose()

    app = FastAPI(title="Finance Tracker", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.session_manager = SessionManager(settings)
    app.state.fetch_cache = FetchCache()
    app.state.chat_proxy = ChatProxy(settings)

    app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")
    app.add_exception_handler(ReauthenticationRequired, reauthentication_handler)
    app.add_exception_handler(StoreError, store_error_handler)

    @app.middleware("http")
    async def reissue_refreshed_session(request: Request, call_next):
        response = await call_next(request)
        user_session = getattr(request.state, "user_session", None)
        if user_session is not None and user_session.refreshed:
            set_session_cookies(response, user_session.tokens, settings)
        return response

    app.include_router(router)
    return app


@router.get("/login", response_class=HTMLResponse)
def login_page(request: Request):
    return render(request, "login.html", {"error": None, "username": ""})


@router.post("/login")
async def login(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    check_csrf(request, form)
    username = str(form.get("username") or "")
    try:
        profile = AuthService(db).authenticate(username, str(form.get("password") or ""))
    except ValueError as exc:
        logger.info(f"login_failed: username={username.strip().lower()}")
        return render(
            request,
            "login.html",
            {"error": str(exc), "username": username},
            status_code=400,
        )
    response = RedirectResponse(url="/", status_code=303)
    set_session_cookies(
        response, request.app.state.session_manager.issue(profile.id), request.app.state.settings
    )
    logger.info(f"login: user_id={profile.id}")
    return response


@router.get("/signup", response_class=HTMLResponse)
def signup_page(request: Request):
    return render(request, "signup.html", {"error": None, "username": ""})


@router.post("/signup")
async def signup(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    check_csrf(request, form)
    username = str(form.get("username") or "").strip()
    try:
        data = SignupIn(
            username=username,
            password=str(form.get("password") or ""),
            full_name=form.get("full_name") or None,
        )
        profile = AuthService(db).signup(data)
    except (ValidationError, ValueError) as exc:
        return render(
            request,
            "signup.html",
            {"error": str(exc), "username": username},
            status_code=400,
        )
    response = RedirectResponse(url="/", status_code=303)
    set_session_cookies(
        response, request.app.state.session_manager.issue(profile.id), request.app.state.settings
    )
    return response


@router.post("/logout")
async def logout(request: Request):
    response = RedirectResponse(url="/login", status_code=303)
    clear_session_cookies(response)
    return response


@router.get("/", response_class=HTMLResponse, name="dashboard")
def dashboard(
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    user_id = store.owner_id()
    settings = request.app.state.settings
    view = ReportService(fetcher, settings.timezone).dashboard()
    return render(
        request,
        "dashboard.html",
        {"view": view, "categories": store.categories()},
        user_id=user_id,
    )


@router.get("/transactions", response_class=HTMLResponse)
def transactions_page(
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    user_id = store.owner_id()
    filters = TransactionFilter.from_params(request.query_params)
    return render(
        request,
        "transactions.html",
        {
            "transactions": filters.apply(fetcher.list()),
            "categories": store.categories(),
            "filters": filters,
            "sort_orders": SORT_ORDERS,
            "today": local_today(request.app.state.settings.timezone),
        },
        user_id=user_id,
    )


@router.post("/transactions")
async def create_transaction(
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    user_id = await run_in_threadpool(store.owner_id)
    form = await request.form()
    check_csrf(request, form, user_id)
    timezone = request.app.state.settings.timezone
    try:
        data = transaction_payload_from_form(form, timezone)
    except (ValidationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service = TransactionService(store, timezone, fetcher)
    try:
        await run_in_threadpool(service.create, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RedirectResponse(url="/transactions", status_code=303)


@router.post("/transactions/quick")
async def quick_add_transaction(
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    user_id = await run_in_threadpool(store.owner_id)
    form = await request.form()
    check_csrf(request, form, user_id)
    try:
        data = QuickTransactionIn(
            amount_cents=parse_amount(str(form.get("amount") or "")),
            description=str(form.get("description") or ""),
            type=TransactionType(form.get("type") or TransactionType.expense.value),
            category=form.get("category") or None,
        )
    except (ValidationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service = TransactionService(store, request.app.state.settings.timezone, fetcher)
    try:
        await run_in_threadpool(service.quick_add, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RedirectResponse(url=request.app.url_path_for("dashboard"), status_code=303)


@router.get("/transactions/export.csv")
def export_transactions_endpoint(
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    store.owner_id()
    csv_text = export_transactions(fetcher.list())
    filename = export_filename(local_today(request.app.state.settings.timezone))
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/transactions/{transaction_id}/edit", response_class=HTMLResponse)
def edit_transaction_page(
    transaction_id: int,
    request: Request,
    store: TransactionStore = Depends(get_store),
):
    user_id = store.owner_id()
    try:
        txn = store.get(transaction_id)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return render(
        request,
        "edit.html",
        {"txn": txn, "categories": store.categories()},
        user_id=user_id,
    )


@router.post("/transactions/{transaction_id}/edit")
async def update_transaction(
    transaction_id: int,
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    user_id = await run_in_threadpool(store.owner_id)
    form = await request.form()
    check_csrf(request, form, user_id)
    timezone = request.app.state.settings.timezone
    try:
        data = transaction_payload_from_form(form, timezone)
    except (ValidationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service = TransactionService(store, timezone, fetcher)
    try:
        await run_in_threadpool(service.update, transaction_id, data)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RedirectResponse(url="/transactions", status_code=303)


@router.post("/transactions/{transaction_id}/delete")
async def delete_transaction(
    transaction_id: int,
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    user_id = await run_in_threadpool(store.owner_id)
    form = await request.form()
    check_csrf(request, form, user_id)
    service = TransactionService(store, request.app.state.settings.timezone, fetcher)
    try:
        await run_in_threadpool(service.delete, transaction_id)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return RedirectResponse(url="/transactions", status_code=303)


@router.post("/transactions/{transaction_id}/pay-installment")
async def pay_installment(
    transaction_id: int,
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    user_id = await run_in_threadpool(store.owner_id)
    form = await request.form()
    check_csrf(request, form, user_id)
    service = TransactionService(store, request.app.state.settings.timezone, fetcher)
    try:
        await run_in_threadpool(service.pay_installment, transaction_id)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except NoInstallmentsRemaining as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RedirectResponse(url="/reports", status_code=303)


@router.get("/reports", response_class=HTMLResponse)
def reports_page(
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    user_id = store.owner_id()
    view = ReportService(fetcher, request.app.state.settings.timezone).reports()
    max_daily = max((d.amount_cents for d in view.daily), default=0)
    return render(
        request,
        "reports.html",
        {"view": view, "max_daily": max_daily},
        user_id=user_id,
    )


@router.get("/settings", response_class=HTMLResponse)
def settings_page(
    request: Request,
    db: Session = Depends(get_db),
    user_session: UserSession = Depends(get_user_session),
):
    profile = ProfileService(db, user_session).get()
    return render(
        request,
        "settings.html",
        {"profile": profile, "error": None, "saved": False},
        user_id=profile.id,
    )


@router.post("/settings")
async def update_settings(
    request: Request,
    db: Session = Depends(get_db),
    user_session: UserSession = Depends(get_user_session),
):
    service = ProfileService(db, user_session)
    profile = await run_in_threadpool(service.get)
    form = await request.form()
    check_csrf(request, form, profile.id)
    try:
        data = ProfileIn(
            username=str(form.get("username") or "").strip(),
            full_name=form.get("full_name") or None,
            avatar_url=form.get("avatar_url") or None,
        )
        profile = await run_in_threadpool(service.update, data)
    except (ValidationError, ValueError) as exc:
        return render(
            request,
            "settings.html",
            {"profile": profile, "error": str(exc), "saved": False},
            user_id=profile.id,
            status_code=400,
        )
    return render(
        request,
        "settings.html",
        {"profile": profile, "error": None, "saved": True},
        user_id=profile.id,
    )


@router.get("/api/transactions")
def api_transactions(
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    store.owner_id()
    if request.query_params.get("revalidate") in {"1", "true"}:
        items = fetcher.revalidate()
    else:
        items = fetcher.list()
    items = TransactionFilter.from_params(request.query_params).apply(items)
    return {"items": [transaction_json(txn) for txn in items]}


@router.get("/api/reports")
def api_reports(
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    store.owner_id()
    service = ReportService(fetcher, request.app.state.settings.timezone)
    dashboard_view = service.dashboard()
    summary = dashboard_view.summary
    payload = reports_json(service.reports())
    payload["summary"] = {
        "transaction_count": summary.transaction_count,
        "total_income_cents": summary.total_income_cents,
        "total_expense_cents": summary.total_expense_cents,
        "balance_cents": summary.balance_cents,
        "this_month_income_cents": summary.this_month_income_cents,
        "this_month_expense_cents": summary.this_month_expense_cents,
        "this_month_net_cents": summary.this_month_net_cents,
        "expense_change": summary.expense_change,
        "savings_rate": summary.savings_rate,
        "top_expense_category": summary.top_expense_category,
    }
    return payload


@router.post("/api/chat")
async def api_chat(
    request: Request,
    store: TransactionStore = Depends(get_store),
    fetcher: TransactionFetcher = Depends(get_fetcher),
):
    await run_in_threadpool(store.owner_id)
    try:
        payload = ChatRequest.model_validate(await request.json())
    except (ValidationError, json.JSONDecodeError) as exc:
        return JSONResponse({"error": f"Invalid chat request: {exc}"}, status_code=400)

    transactions = payload.transactions
    summary = payload.financial_summary
    if transactions is None or summary is None:
        service = ReportService(fetcher, request.app.state.settings.timezone)
        own_transactions, own_summary = await run_in_threadpool(service.chat_context)
        transactions = own_transactions if transactions is None else transactions
        summary = own_summary if summary is None else summary

    messages = build_messages(payload.messages, transactions, summary)
    proxy: ChatProxy = request.app.state.chat_proxy
    try:
        upstream = await proxy.open(messages)
    except ChatConfigError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)
    except ChatUpstreamError as exc:
        return JSONResponse(
            {"error": f"Completion API error: {exc.body}"}, status_code=exc.status_code
        )
    except httpx.HTTPError as exc:
        logger.error(f"chat_upstream_unreachable: error={exc.__class__.__name__}")
        return JSONResponse({"error": "Completion API unreachable"}, status_code=502)

    # Starlette cancels this generator when the client disconnects, which closes
    # the upstream stream through events().
    async def ndjson():
        async for kind, text in upstream.events():
            yield json.dumps({"type": kind, "text": text}) + "\n"

    return StreamingResponse(
        ndjson(),
        media_type="application/x-ndjson",
        background=BackgroundTask(upstream.aclose),
    )


def main():
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
