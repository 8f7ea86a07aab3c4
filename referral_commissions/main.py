from __future__ import annotations

import dataclasses
import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from . import ledger
from .commissions import (
    STATUS_ACTIVE,
    CommissionStateError,
    activate_pending_commissions,
    apply_commission,
    cancel_commission,
    client_application_history,
    client_summary,
    list_client_commissions,
    list_pending_commissions,
)
from .config import load_config
from .leads import LeadError, add_lead_note, register_client, register_lead, update_lead_status
from .ledger import NotFoundError, ReferralLedgerError
from .reconciliation import get_upload_details, list_uploads, process_invoice_csv, reprocess_upload

CONFIG = load_config()
ledger.LEDGER_DB = CONFIG.ledger_db

logging.basicConfig(level=CONFIG.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Referral Commissions", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {key: _jsonable(item) for key, item in dataclasses.asdict(value).items()}
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _http_error(exc: ReferralLedgerError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (CommissionStateError, LeadError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _parse_form_date(value: str | None, *, field_name: str) -> date:
    raw = (value or "").strip()
    if not raw:
        raise HTTPException(status_code=400, detail=f"{field_name} is required.")
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"{field_name} must be an ISO date (YYYY-MM-DD).") from exc


def _parse_amount(payload: dict[str, Any], field_name: str = "amount") -> Decimal | None:
    raw = payload.get(field_name)
    if raw is None or raw == "":
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise HTTPException(status_code=400, detail=f"{field_name} must be a number.") from exc
    if not value.is_finite():
        raise HTTPException(status_code=400, detail=f"{field_name} must be a number.")
    return value


def _store_upload(filename: str, raw: bytes) -> Path:
    CONFIG.upload_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    target = CONFIG.upload_dir / f"invoices-{stamp}-{Path(filename).name}"
    target.write_bytes(raw)
    return target


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/invoices/upload")
async def upload_invoices(
    file: UploadFile = File(...),
    period_start: str = Form(...),
    period_end: str = Form(...),
    uploaded_by: str = Form(...),
) -> dict[str, Any]:
    if not file.filename:
        raise HTTPException(status_code=400, detail="An invoice CSV file is required.")
    if not (uploaded_by or "").strip():
        raise HTTPException(status_code=400, detail="uploaded_by is required.")
    start = _parse_form_date(period_start, field_name="period_start")
    end = _parse_form_date(period_end, field_name="period_end")
    if end < start:
        raise HTTPException(status_code=400, detail="period_end cannot be before period_start.")

    raw = await file.read()
    if not raw:
        raise HTTPException(status_code=400, detail=f"{file.filename}: empty file.")

    stored = _store_upload(file.filename, raw)
    try:
        return process_invoice_csv(
            file.filename,
            raw,
            uploaded_by=uploaded_by.strip(),
            period_start=start,
            period_end=end,
            file_path=str(stored),
            strict_dates=CONFIG.strict_dates,
        )
    except ReferralLedgerError as exc:
        logger.error("Processing %s failed: %s", file.filename, exc)
        raise _http_error(exc) from exc


@app.get("/api/invoices/uploads")
def get_invoice_uploads(processed: bool | None = None, page: int = 1, limit: int = 20) -> dict[str, Any]:
    return _jsonable(list_uploads(processed=processed, page=page, limit=limit))


@app.get("/api/invoices/uploads/{upload_id}")
def get_invoice_upload(upload_id: int) -> dict[str, Any]:
    try:
        upload, records = get_upload_details(upload_id)
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return {**_jsonable(upload), "invoices": _jsonable(records)}


@app.post("/api/invoices/uploads/{upload_id}/reprocess")
def reprocess_invoice_upload(upload_id: int) -> dict[str, Any]:
    try:
        stats = reprocess_upload(upload_id)
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return _jsonable(stats)


@app.get("/api/commissions/active")
def get_active_commissions() -> dict[str, Any]:
    with ledger.connect() as conn:
        commissions = ledger.list_commissions(conn, status=STATUS_ACTIVE)
    return {"count": len(commissions), "commissions": _jsonable(commissions)}


@app.get("/api/commissions/pending")
def get_pending_commissions(page: int = 1, limit: int = 50) -> dict[str, Any]:
    with ledger.connect() as conn:
        return _jsonable(list_pending_commissions(conn, page=page, limit=limit))


@app.post("/api/commissions/{commission_id}/apply")
def apply_commission_to_invoice(commission_id: int, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    invoice_id = str(payload.get("invoice_id") or "").strip()
    if not invoice_id:
        raise HTTPException(status_code=400, detail="invoice_id is required.")
    amount = _parse_amount(payload)
    invoice_amount = _parse_amount(payload, "invoice_amount")
    try:
        with ledger.connect() as conn:
            commission = apply_commission(
                conn,
                commission_id,
                invoice_id=invoice_id,
                amount=amount,
                applied_by=(payload.get("applied_by") or None),
                invoice_month=(payload.get("invoice_month") or None),
                invoice_amount=invoice_amount,
                notes=(payload.get("notes") or None),
            )
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return _jsonable(commission)


@app.post("/api/commissions/{commission_id}/cancel")
def cancel_commission_route(commission_id: int, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    try:
        with ledger.connect() as conn:
            commission = cancel_commission(conn, commission_id, str(payload.get("reason") or ""))
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return _jsonable(commission)


@app.post("/api/clients")
def register_client_route(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    try:
        with ledger.connect() as conn:
            client = register_client(
                conn,
                str(payload.get("external_id") or ""),
                str(payload.get("name") or ""),
                payload.get("email") or None,
                is_payment_current=bool(payload.get("is_payment_current", False)),
            )
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return _jsonable(client)


@app.get("/api/clients/{client_id}/commissions")
def get_client_commissions(client_id: int, status: str | None = None, type: str | None = None) -> dict[str, Any]:
    try:
        with ledger.connect() as conn:
            commissions = list_client_commissions(
                conn,
                client_id,
                status=status.strip().upper() if status else None,
                type=type.strip().upper() if type else None,
            )
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return {"count": len(commissions), "commissions": _jsonable(commissions)}


@app.get("/api/clients/{client_id}/summary")
def get_client_summary(client_id: int) -> dict[str, Any]:
    try:
        with ledger.connect() as conn:
            client = ledger.get_client(conn, client_id)
            summary = client_summary(conn, client_id)
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return {"client": _jsonable(client), "summary": _jsonable(summary)}


@app.get("/api/clients/{client_id}/applications")
def get_client_applications(client_id: int) -> dict[str, Any]:
    try:
        with ledger.connect() as conn:
            applications = client_application_history(conn, client_id)
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return {"count": len(applications), "applications": _jsonable(applications)}


@app.post("/api/clients/{client_id}/activate-commissions")
def activate_client_commissions(client_id: int) -> dict[str, Any]:
    try:
        with ledger.connect() as conn:
            activated = activate_pending_commissions(conn, client_id)
            client = ledger.get_client(conn, client_id)
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return {"activated": activated, "client": _jsonable(client)}


@app.post("/api/leads")
def register_lead_route(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    try:
        with ledger.connect() as conn:
            referral = register_lead(
                conn,
                str(payload.get("referral_code") or ""),
                str(payload.get("name") or ""),
                str(payload.get("phone") or ""),
                email=payload.get("email") or None,
                address=payload.get("address") or None,
            )
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return _jsonable(referral)


@app.post("/api/leads/{referral_id}/notes")
def add_lead_note_route(referral_id: int, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    try:
        with ledger.connect() as conn:
            referral = add_lead_note(conn, referral_id, str(payload.get("note") or ""))
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return _jsonable(referral)


@app.put("/api/leads/{referral_id}/status")
def update_lead_status_route(referral_id: int, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    try:
        with ledger.connect() as conn:
            referral = update_lead_status(
                conn,
                referral_id,
                str(payload.get("status") or ""),
                external_client_id=payload.get("external_client_id"),
                notes=payload.get("notes"),
            )
    except ReferralLedgerError as exc:
        raise _http_error(exc) from exc
    return _jsonable(referral)
