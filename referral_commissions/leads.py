from __future__ import annotations

import logging
import random
import sqlite3
from datetime import datetime, timezone

from . import ledger
from .commissions import generate_installation_commission
from .ledger import ReferralLedgerError

logger = logging.getLogger(__name__)

REFERRAL_STATUSES = ("PENDING", "CONTACTED", "INSTALLED", "REJECTED", "CANCELLED")
REFERRAL_CODE_PREFIX = "EASY-"
REFERRAL_CODE_ATTEMPTS = 20


class LeadError(ReferralLedgerError):
    pass


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def generate_referral_code(conn: sqlite3.Connection, rng: random.Random | None = None) -> str:
    rng = rng or random.Random()
    for _ in range(REFERRAL_CODE_ATTEMPTS):
        code = f"{REFERRAL_CODE_PREFIX}{rng.randint(10000, 99999)}"
        if not ledger.referral_code_exists(conn, code):
            return code
    raise LeadError("Could not allocate a unique referral code.")


def register_client(
    conn: sqlite3.Connection,
    external_id: str,
    name: str,
    email: str | None = None,
    *,
    is_payment_current: bool = False,
) -> ledger.Client:
    if not (external_id or "").strip():
        raise LeadError("A client external id is required.")
    try:
        client = ledger.create_client(
            conn,
            external_id=external_id,
            name=name,
            email=email,
            referral_code=generate_referral_code(conn),
            is_payment_current=is_payment_current,
        )
    except sqlite3.IntegrityError as exc:
        raise LeadError(f"Client {external_id.strip()!r} is already registered.") from exc
    logger.info("Registered client %s with code %s", client.id, client.referral_code)
    return client


def register_lead(
    conn: sqlite3.Connection,
    referral_code: str,
    name: str,
    phone: str,
    email: str | None = None,
    address: str | None = None,
) -> ledger.Referral:
    client = ledger.find_client_by_referral_code(conn, referral_code or "")
    if client is None:
        raise LeadError(f"Invalid referral code: {referral_code!r}")
    if not (name or "").strip():
        raise LeadError("Lead name is required.")

    referral = ledger.create_referral(
        conn,
        client_id=client.id,
        name=name,
        phone=phone or "",
        email=email,
        address=address,
    )
    logger.info("Registered lead %s for client %s", referral.id, client.id)
    return referral


def update_lead_status(
    conn: sqlite3.Connection,
    referral_id: int,
    status: str,
    *,
    external_client_id: str | None = None,
    notes: str | None = None,
) -> ledger.Referral:
    """Move a lead to ``status``; entering INSTALLED earns the installation commission."""
    normalized = (status or "").strip().upper()
    if normalized not in REFERRAL_STATUSES:
        raise LeadError(f"Unknown referral status {status!r}. Expected one of: {', '.join(REFERRAL_STATUSES)}.")

    referral = ledger.get_referral(conn, referral_id)
    fields: dict[str, object] = {"status": normalized}
    if external_client_id and external_client_id.strip():
        fields["external_client_id"] = external_client_id.strip()
    if notes and notes.strip():
        fields["notes"] = notes.strip()
    if normalized == "CONTACTED" and referral.contacted_at is None:
        fields["contacted_at"] = _utc_now()
    if normalized == "INSTALLED" and referral.installed_at is None:
        fields["installed_at"] = _utc_now()

    ledger.update_referral(conn, referral_id, **fields)

    if normalized == "INSTALLED" and referral.status != "INSTALLED":
        generate_installation_commission(conn, referral_id, ledger.load_settings(conn))

    return ledger.get_referral(conn, referral_id)


def add_lead_note(conn: sqlite3.Connection, referral_id: int, note: str) -> ledger.Referral:
    cleaned = (note or "").strip()
    if not cleaned:
        raise LeadError("Note text is required.")
    referral = ledger.get_referral(conn, referral_id)
    entry = f"[{_utc_now()}] {cleaned}"
    notes = f"{referral.notes}\n{entry}" if referral.notes else entry
    ledger.update_referral(conn, referral_id, notes=notes)
    return ledger.get_referral(conn, referral_id)
