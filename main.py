import logging
from contextlib import contextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, UploadFile
from fastapi.responses import PlainTextResponse, StreamingResponse
from sqlalchemy.orm import Session

from aggregation import ReportData, ReportService
from auth import InvalidInitData, verify_init_data
from config import get_settings
from database import SessionLocal, init_db
from debts import ContactBalance, DebtService
from errors import (
    AtomicityFailure,
    ConfirmationExpired,
    CredentialsExhausted,
    ExtractionTimeout,
    ExtractionUnintelligible,
    NotFound,
)
from extraction import Extractor
from models import (
    Category,
    CurrencyCode,
    DebtEntry,
    PersonalBalance,
    Project,
    SelectionKind,
    Transaction,
    TransactionType,
    User,
)
from pending import PendingBatch, PendingConfirmationStore
from periods import compute_window
from projections import render_chat_text, render_pdf, render_spreadsheet
from scheduler import SchedulerManager
from schemas import (
    BalanceIn,
    DebtEntryIn,
    ExtractionIn,
    ProjectIn,
    SelectionIn,
    TransactionIn,
    TransferIn,
)
from scopes import Selection
from services import (
    BalanceService,
    CategoryService,
    IngestService,
    ProjectService,
    TransactionService,
    UserService,
)
from transfers import TransferService

app = FastAPI(title="Construction Ledger")

pending_store = PendingConfirmationStore(get_settings().pending_ttl_secs)
scheduler_manager = SchedulerManager(pending_store)
_extractor: Optional[Extractor] = None


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_pending() -> PendingConfirmationStore:
    return pending_store


def get_extractor() -> Extractor:
    global _extractor
    if _extractor is None:
        _extractor = Extractor()
    return _extractor


def current_user(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    scheme, _, init_data = (authorization or "").partition(" ")
    if scheme.lower() != "tma" or not init_data:
        raise HTTPException(status_code=401, detail="Missing launch parameters")
    try:
        launch_user = verify_init_data(init_data)
    except InvalidInitData as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return UserService(db).get_or_create(launch_user.telegram_id, launch_user.username)


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@contextmanager
def service_errors():
    try:
        yield
    except ConfirmationExpired as exc:
        raise HTTPException(status_code=410, detail=str(exc)) from exc
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ExtractionUnintelligible as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ExtractionTimeout as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except CredentialsExhausted as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except AtomicityFailure as exc:
        raise HTTPException(
            status_code=500, detail="The operation failed and was rolled back"
        ) from exc


def transaction_json(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "kind": txn.kind.value,
        "amount": txn.amount,
        "currency": txn.currency.value,
        "description": txn.description,
        "category": txn.category.name if txn.category else None,
        "project_id": txn.project_id,
        "balance_id": txn.balance_id,
        "transfer_id": txn.transfer_id,
        "created_at": txn.created_at.isoformat(),
    }


def project_json(project: Project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "created_at": project.created_at.isoformat(),
    }


def balance_json(balance: PersonalBalance) -> dict:
    return {
        "id": balance.id,
        "title": balance.title,
        "currency": balance.currency.value,
        "amount": balance.amount,
        "opening_amount": balance.opening_amount,
        "emoji": balance.emoji,
        "color": balance.color,
    }


def category_json(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "kind": category.kind.value,
        "icon": category.icon,
        "color": category.color,
        "is_default": category.is_default,
        "is_labor": category.is_labor,
    }


def debt_entry_json(entry: DebtEntry) -> dict:
    return {
        "id": entry.id,
        "contact_id": entry.contact_id,
        "contact": entry.contact.name,
        "kind": entry.kind.value,
        "amount": entry.amount,
        "currency": entry.currency.value,
        "date": entry.occurred_on.isoformat(),
        "note": entry.note,
    }


def contact_balance_json(balance: ContactBalance) -> dict:
    return {
        "contact_id": balance.contact_id,
        "name": balance.name,
        "currency": balance.currency.value,
        "i_owe": balance.i_owe,
        "owed_to_me": balance.owed_to_me,
    }


def selection_json(selection: Selection) -> dict:
    return {"kind": selection.kind.value, "ref": selection.ref}


@app.get("/api/user/profile")
def api_profile(user: User = Depends(current_user), db: Session = Depends(get_db)):
    selection = UserService(db).current_selection(user.id)
    return {
        "id": user.id,
        "telegram_id": user.telegram_id,
        "username": user.username,
        "selection": selection_json(selection),
        "balances": [balance_json(b) for b in BalanceService(db, user.id).list_all()],
        "projects": [project_json(p) for p in ProjectService(db, user.id).list_all()],
    }


@app.get("/api/selection")
def api_get_selection(
    user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return selection_json(UserService(db).current_selection(user.id))


@app.put("/api/selection")
def api_set_selection(
    payload: SelectionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        selection = UserService(db).set_selection(
            user.id, Selection(payload.kind, payload.ref)
        )
    return selection_json(selection)


@app.get("/api/transactions")
def api_transactions(
    limit: int = 10,
    kind: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    limit = min(max(limit, 1), 100)
    with service_errors():
        items = TransactionService(db, user.id).recent(
            limit,
            kind=kind,
            category_id=category_id,
            start=start_date,
            end=end_date,
        )
    return {"items": [transaction_json(txn) for txn in items]}


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    payload: TransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = TransactionService(db, user.id)
    with service_errors():
        if payload.project_id is None and payload.balance_id is None:
            selection = UserService(db).current_selection(user.id)
            txn = service.create_in_selection(payload, selection)
        else:
            txn = service.create(payload)
    return transaction_json(txn)


@app.delete("/api/transactions/{kind}/{transaction_id}", status_code=204)
def api_delete_transaction(
    kind: TransactionType,
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        TransactionService(db, user.id).delete(kind, transaction_id)


@app.get("/api/projects")
def api_projects(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return [project_json(p) for p in ProjectService(db, user.id).list_all()]


@app.post("/api/projects", status_code=201)
def api_create_project(
    payload: ProjectIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        project = ProjectService(db, user.id).create(payload)
    return project_json(project)


@app.patch("/api/projects/{project_id}")
def api_rename_project(
    project_id: int,
    payload: ProjectIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        project = ProjectService(db, user.id).rename(project_id, payload)
    return project_json(project)


@app.delete("/api/projects/{project_id}")
def api_delete_project(
    project_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        removed = ProjectService(db, user.id).delete(project_id)
    return {"deleted_transactions": removed}


@app.get("/api/balances")
def api_balances(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return [balance_json(b) for b in BalanceService(db, user.id).list_all()]


@app.post("/api/balances", status_code=201)
def api_create_balance(
    payload: BalanceIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        balance = BalanceService(db, user.id).create(payload)
    return balance_json(balance)


@app.get("/api/categories")
def api_categories(
    kind: Optional[TransactionType] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    return [category_json(c) for c in CategoryService(db, user.id).list_all(kind)]


@app.post("/api/transfers", status_code=201)
def api_transfer(
    payload: TransferIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        result = TransferService(db, user.id).transfer(payload)
    balances = BalanceService(db, user.id)
    return {
        "id": result.transfer.id,
        "state": result.state.value,
        "legs": [transaction_json(leg) for leg in result.legs],
        "from_balance": balance_json(balances.get(payload.from_balance_id)),
        "to_balance": balance_json(balances.get(payload.to_balance_id)),
    }


@app.get("/api/debts")
def api_debts(
    currency: CurrencyCode = CurrencyCode.uzs,
    contact_id: Optional[int] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = DebtService(db, user.id)
    with service_errors():
        if contact_id is not None:
            service.get_contact(contact_id)
        entries = service.list_entries(contact_id=contact_id, currency=currency)
    return [debt_entry_json(entry) for entry in entries]


@app.get("/api/debts/summary")
def api_debt_summary(
    currency: CurrencyCode = CurrencyCode.uzs,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = DebtService(db, user.id)
    return {
        "currency": currency.value,
        "contacts": [contact_balance_json(b) for b in service.aggregate(currency)],
        "totals": service.totals(currency),
    }


@app.post("/api/debts", status_code=201)
def api_create_debt(
    payload: DebtEntryIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        entry = DebtService(db, user.id).add_entry(payload)
    return debt_entry_json(entry)


@app.delete("/api/debts/{entry_id}", status_code=204)
def api_delete_debt(
    entry_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        DebtService(db, user.id).delete_entry(entry_id)


def build_report(
    db: Session,
    user: User,
    period: str,
    scope: Optional[SelectionKind],
    ref: Optional[int],
    start: Optional[str],
    end: Optional[str],
    currency: Optional[CurrencyCode],
) -> ReportData:
    with service_errors():
        window = compute_window(period, start=start, end=end)
        if scope is None:
            selection = UserService(db).current_selection(user.id)
        else:
            payload = SelectionIn(kind=scope, ref=ref)
            selection = Selection(payload.kind, payload.ref)
        return ReportService(db, user.id).aggregate(selection, window, currency)


def report_filename(report: ReportData, extension: str) -> str:
    window = report.window
    return f"report_{window.slug}_{window.start}_{window.end}.{extension}"


@app.get("/api/reports/{period}")
def api_report(
    period: str,
    scope: Optional[SelectionKind] = None,
    ref: Optional[int] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    currency: Optional[CurrencyCode] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    report = build_report(db, user, period, scope, ref, start, end, currency)
    return report.as_dict()


@app.get("/api/analytics/by-category")
def api_category_breakdown(
    period: str = "month",
    scope: Optional[SelectionKind] = None,
    ref: Optional[int] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    currency: Optional[CurrencyCode] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    report = build_report(db, user, period, scope, ref, start, end, currency)
    return {
        "period": {
            "slug": report.window.slug,
            "start": report.window.start.isoformat(),
            "end": report.window.end.isoformat(),
        },
        "currency": report.currency.value,
        "categories": [totals.as_dict() for totals in report.categories],
    }


@app.get("/api/reports/{period}/text", response_class=PlainTextResponse)
def api_report_text(
    period: str,
    scope: Optional[SelectionKind] = None,
    ref: Optional[int] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    currency: Optional[CurrencyCode] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    report = build_report(db, user, period, scope, ref, start, end, currency)
    return render_chat_text(report, limit=get_settings().chat_item_limit)


@app.get("/api/reports/{period}/pdf")
def api_report_pdf(
    period: str,
    scope: Optional[SelectionKind] = None,
    ref: Optional[int] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    currency: Optional[CurrencyCode] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    report = build_report(db, user, period, scope, ref, start, end, currency)
    try:
        pdf_bytes = render_pdf(report, owner_name=user.username)
    except Exception as exc:
        logging.exception("Error generating PDF report")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return StreamingResponse(
        iter([pdf_bytes]),
        media_type="application/pdf",
        headers={
            "Content-Disposition": (
                f'attachment; filename="{report_filename(report, "pdf")}"'
            ),
            "Content-Length": str(len(pdf_bytes)),
        },
    )


@app.get("/api/reports/{period}/xlsx")
def api_report_xlsx(
    period: str,
    scope: Optional[SelectionKind] = None,
    ref: Optional[int] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    currency: Optional[CurrencyCode] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    report = build_report(db, user, period, scope, ref, start, end, currency)
    try:
        xlsx_bytes = render_spreadsheet(report)
    except Exception as exc:
        logging.exception("Error generating spreadsheet report")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return StreamingResponse(
        iter([xlsx_bytes]),
        media_type=(
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        ),
        headers={
            "Content-Disposition": (
                f'attachment; filename="{report_filename(report, "xlsx")}"'
            ),
            "Content-Length": str(len(xlsx_bytes)),
        },
    )


def candidate_json(candidate) -> dict:
    return {
        "kind": candidate.kind.value,
        "amount": candidate.amount,
        "description": candidate.description,
        "category": candidate.category,
        "currency": candidate.currency.value if candidate.currency else None,
    }


def pending_json(pending: PendingConfirmationStore, batch: PendingBatch) -> dict:
    return {
        "state": batch.state.value,
        "expires_in": pending.ttl_secs,
        "candidates": [candidate_json(c) for c in batch.candidates],
    }


@app.post("/api/extraction")
async def api_extraction(
    payload: ExtractionIn,
    user: User = Depends(current_user),
    pending: PendingConfirmationStore = Depends(get_pending),
    extractor: Extractor = Depends(get_extractor),
):
    with service_errors():
        candidates = await extractor.extract(text=payload.text)
    return pending_json(pending, pending.put(user.id, candidates))


@app.post("/api/extraction/voice")
async def api_extraction_voice(
    file: UploadFile = File(...),
    user: User = Depends(current_user),
    pending: PendingConfirmationStore = Depends(get_pending),
    extractor: Extractor = Depends(get_extractor),
):
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty voice message")
    if len(content) > 10 * 1024 * 1024:
        raise HTTPException(status_code=400, detail="Voice message too large (max 10MB)")
    mime_type = file.content_type or "audio/ogg"
    with service_errors():
        candidates = await extractor.extract(audio=content, mime_type=mime_type)
    return pending_json(pending, pending.put(user.id, candidates))


@app.post("/api/pending/confirm", status_code=201)
def api_pending_confirm(
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    pending: PendingConfirmationStore = Depends(get_pending),
):
    with service_errors():
        created = pending.confirm(
            user.id, lambda candidates: IngestService(db, user.id).confirm(candidates)
        )
    return {"items": [transaction_json(txn) for txn in created]}


@app.post("/api/pending/cancel")
def api_pending_cancel(
    user: User = Depends(current_user),
    pending: PendingConfirmationStore = Depends(get_pending),
):
    with service_errors():
        batch = pending.cancel(user.id)
    return {"state": batch.state.value, "discarded": len(batch.candidates)}


