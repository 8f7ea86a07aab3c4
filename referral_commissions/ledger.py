from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from .matching import WISPHUB_PREFIX, best_match, normalize_external_id

LEDGER_DB = Path(__file__).resolve().parent / "data" / "referrals.sqlite3"

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

COMMISSION_INSTALLATION = "INSTALLATION"
COMMISSION_MONTHLY = "MONTHLY"

DEFAULT_INSTALLATION_AMOUNT = Decimal("200.00")
DEFAULT_MONTHLY_AMOUNT = Decimal("50.00")
DEFAULT_MONTHS_TO_EARN = 6
DEFAULT_CURRENCY = "MXN"


class ReferralLedgerError(RuntimeError):
    pass


class SettingsNotFoundError(ReferralLedgerError):
    pass


class NotFoundError(ReferralLedgerError):
    pass


class ClientNotFoundError(NotFoundError):
    pass


class ReferralNotFoundError(NotFoundError):
    pass


class CommissionNotFoundError(NotFoundError):
    pass


class UploadNotFoundError(NotFoundError):
    pass


@dataclass
class CommissionSettings:
    installation_amount: Decimal
    monthly_amount: Decimal
    months_to_earn: int
    currency: str


@dataclass
class Client:
    id: int
    external_id: str
    name: str
    email: str | None
    referral_code: str
    is_payment_current: bool
    last_invoice_status: str | None
    last_invoice_date: date | None
    total_earned: Decimal
    total_active: Decimal
    total_applied: Decimal
    active: bool
    created_at: str
    updated_at: str


@dataclass
class Referral:
    id: int
    client_id: int
    name: str
    phone: str
    email: str | None
    address: str | None
    status: str
    external_client_id: str | None
    contacted_at: str | None
    installed_at: str | None
    last_invoice_status: str | None
    last_invoice_date: date | None
    notes: str | None
    created_at: str
    updated_at: str


@dataclass
class Commission:
    id: int
    client_id: int
    referral_id: int
    type: str
    month_number: int | None
    month_date: date | None
    month_key: str | None
    amount: Decimal
    status: str
    status_reason: str | None
    applied_invoice_id: str | None
    applied_amount: Decimal
    applied_at: str | None
    applied_by: str | None
    created_at: str
    updated_at: str

    @property
    def remaining(self) -> Decimal:
        return (self.amount - self.applied_amount).quantize(CENTS)


@dataclass
class CommissionApplication:
    id: int
    commission_id: int
    client_id: int
    invoice_id: str
    amount: Decimal
    invoice_month: str | None
    invoice_amount: Decimal | None
    applied_by: str | None
    notes: str | None
    applied_at: str


@dataclass
class InvoiceUpload:
    id: int
    file_name: str
    file_path: str | None
    upload_date: str
    period_start: date | None
    period_end: date | None
    total_invoices: int
    paid_invoices: int
    pending_invoices: int
    commissions_generated: int
    commissions_activated: int
    processed: bool
    processed_at: str | None
    uploaded_by: str


@dataclass
class InvoiceRecord:
    id: int
    upload_id: int
    external_client_id: str
    external_invoice_id: str
    client_name: str
    invoice_date: date
    due_date: date | None
    amount: Decimal
    status: str
    is_referrer: bool
    is_referral: bool
    matched_referral_id: int | None
    matched_commission_id: int | None


SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    id TEXT PRIMARY KEY,
    installation_amount TEXT NOT NULL,
    monthly_amount TEXT NOT NULL,
    months_to_earn INTEGER NOT NULL,
    currency TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS clients (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL DEFAULT '',
    email TEXT,
    referral_code TEXT NOT NULL UNIQUE,
    is_payment_current INTEGER NOT NULL DEFAULT 0,
    last_invoice_status TEXT,
    last_invoice_date TEXT,
    total_earned TEXT NOT NULL DEFAULT '0.00',
    total_active TEXT NOT NULL DEFAULT '0.00',
    total_applied TEXT NOT NULL DEFAULT '0.00',
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS referrals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id INTEGER NOT NULL REFERENCES clients(id),
    name TEXT NOT NULL,
    phone TEXT NOT NULL DEFAULT '',
    email TEXT,
    address TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING',
    external_client_id TEXT,
    contacted_at TEXT,
    installed_at TEXT,
    last_invoice_status TEXT,
    last_invoice_date TEXT,
    notes TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_referrals_external ON referrals(external_client_id, status);

CREATE TABLE IF NOT EXISTS commissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id INTEGER NOT NULL REFERENCES clients(id),
    referral_id INTEGER NOT NULL REFERENCES referrals(id),
    type TEXT NOT NULL,
    month_number INTEGER,
    month_date TEXT,
    month_key TEXT,
    amount TEXT NOT NULL,
    status TEXT NOT NULL,
    status_reason TEXT,
    applied_invoice_id TEXT,
    applied_amount TEXT NOT NULL DEFAULT '0.00',
    applied_at TEXT,
    applied_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_commission_installation
    ON commissions(referral_id) WHERE type = 'INSTALLATION';
CREATE UNIQUE INDEX IF NOT EXISTS uq_commission_month_number
    ON commissions(referral_id, month_number) WHERE type = 'MONTHLY';
CREATE UNIQUE INDEX IF NOT EXISTS uq_commission_month_key
    ON commissions(referral_id, month_key) WHERE type = 'MONTHLY';

CREATE TABLE IF NOT EXISTS commission_applications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    commission_id INTEGER NOT NULL REFERENCES commissions(id),
    client_id INTEGER NOT NULL REFERENCES clients(id),
    invoice_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    invoice_month TEXT,
    invoice_amount TEXT,
    applied_by TEXT,
    notes TEXT,
    applied_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_applications_client ON commission_applications(client_id, applied_at);

CREATE TABLE IF NOT EXISTS invoice_uploads (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file_name TEXT NOT NULL,
    file_path TEXT,
    upload_date TEXT NOT NULL,
    period_start TEXT,
    period_end TEXT,
    total_invoices INTEGER NOT NULL DEFAULT 0,
    paid_invoices INTEGER NOT NULL DEFAULT 0,
    pending_invoices INTEGER NOT NULL DEFAULT 0,
    commissions_generated INTEGER NOT NULL DEFAULT 0,
    commissions_activated INTEGER NOT NULL DEFAULT 0,
    processed INTEGER NOT NULL DEFAULT 0,
    processed_at TEXT,
    uploaded_by TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS invoice_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    upload_id INTEGER NOT NULL REFERENCES invoice_uploads(id),
    external_client_id TEXT NOT NULL,
    external_invoice_id TEXT NOT NULL DEFAULT '',
    client_name TEXT NOT NULL DEFAULT '',
    invoice_date TEXT NOT NULL,
    due_date TEXT,
    amount TEXT NOT NULL,
    status TEXT NOT NULL,
    is_referrer INTEGER NOT NULL DEFAULT 0,
    is_referral INTEGER NOT NULL DEFAULT 0,
    matched_referral_id INTEGER REFERENCES referrals(id),
    matched_commission_id INTEGER REFERENCES commissions(id)
);
CREATE INDEX IF NOT EXISTS idx_invoice_records_upload ON invoice_records(upload_id);
"""

CLIENT_COLUMNS = {
    "name",
    "email",
    "is_payment_current",
    "last_invoice_status",
    "last_invoice_date",
    "total_earned",
    "total_active",
    "total_applied",
    "active",
}
REFERRAL_COLUMNS = {
    "status",
    "external_client_id",
    "contacted_at",
    "installed_at",
    "last_invoice_status",
    "last_invoice_date",
    "notes",
}
COMMISSION_COLUMNS = {
    "status",
    "status_reason",
    "applied_invoice_id",
    "applied_amount",
    "applied_at",
    "applied_by",
}
UPLOAD_COLUMNS = {
    "paid_invoices",
    "pending_invoices",
    "commissions_generated",
    "commissions_activated",
    "processed",
    "processed_at",
}
RECORD_COLUMNS = {"matched_referral_id", "matched_commission_id"}
TIMESTAMPED_TABLES = {"clients", "referrals", "commissions"}


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value.quantize(CENTS))
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _money(value: Any) -> Decimal:
    return Decimal(str(value or "0")).quantize(CENTS)


def _date_or_none(value: str | None) -> date | None:
    if not value:
        return None
    return date.fromisoformat(value[:10])


def _connect() -> sqlite3.Connection:
    LEDGER_DB.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(LEDGER_DB)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_ledger() -> None:
    with _connect() as conn:
        conn.executescript(SCHEMA)
        exists = conn.execute("SELECT 1 FROM settings WHERE id = 'default'").fetchone()
        if not exists:
            conn.execute(
                """
                INSERT INTO settings (id, installation_amount, monthly_amount, months_to_earn, currency, updated_at)
                VALUES ('default', ?, ?, ?, ?, ?)
                """,
                (
                    _to_db(DEFAULT_INSTALLATION_AMOUNT),
                    _to_db(DEFAULT_MONTHLY_AMOUNT),
                    DEFAULT_MONTHS_TO_EARN,
                    DEFAULT_CURRENCY,
                    _utc_now(),
                ),
            )
        conn.commit()


def connect() -> sqlite3.Connection:
    init_ledger()
    return _connect()


def _update(conn: sqlite3.Connection, table: str, row_id: int, allowed: set[str], fields: dict[str, Any]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"cannot update {table} columns: {', '.join(sorted(unknown))}")
    if not fields:
        return
    assignments = ", ".join(f"{name} = ?" for name in fields)
    params = [_to_db(value) for value in fields.values()]
    if table in TIMESTAMPED_TABLES:
        assignments += ", updated_at = ?"
        params.append(_utc_now())
    params.append(row_id)
    conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params)


# Settings


def load_settings(conn: sqlite3.Connection) -> CommissionSettings:
    row = conn.execute("SELECT * FROM settings WHERE id = 'default'").fetchone()
    if row is None:
        raise SettingsNotFoundError("Commission settings are not configured.")
    return CommissionSettings(
        installation_amount=_money(row["installation_amount"]),
        monthly_amount=_money(row["monthly_amount"]),
        months_to_earn=int(row["months_to_earn"]),
        currency=row["currency"],
    )


def save_settings(conn: sqlite3.Connection, settings: CommissionSettings) -> None:
    if settings.months_to_earn < 0:
        raise ValueError("months_to_earn cannot be negative")
    conn.execute(
        """
        INSERT INTO settings (id, installation_amount, monthly_amount, months_to_earn, currency, updated_at)
        VALUES ('default', ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            installation_amount=excluded.installation_amount,
            monthly_amount=excluded.monthly_amount,
            months_to_earn=excluded.months_to_earn,
            currency=excluded.currency,
            updated_at=excluded.updated_at
        """,
        (
            _to_db(settings.installation_amount),
            _to_db(settings.monthly_amount),
            settings.months_to_earn,
            settings.currency,
            _utc_now(),
        ),
    )


# Clients


def _client_from_row(row: sqlite3.Row) -> Client:
    return Client(
        id=row["id"],
        external_id=row["external_id"],
        name=row["name"] or "",
        email=row["email"],
        referral_code=row["referral_code"],
        is_payment_current=bool(row["is_payment_current"]),
        last_invoice_status=row["last_invoice_status"],
        last_invoice_date=_date_or_none(row["last_invoice_date"]),
        total_earned=_money(row["total_earned"]),
        total_active=_money(row["total_active"]),
        total_applied=_money(row["total_applied"]),
        active=bool(row["active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create_client(
    conn: sqlite3.Connection,
    *,
    external_id: str,
    name: str,
    referral_code: str,
    email: str | None = None,
    is_payment_current: bool = False,
) -> Client:
    now = _utc_now()
    cursor = conn.execute(
        """
        INSERT INTO clients (external_id, name, email, referral_code, is_payment_current, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (normalize_external_id(external_id), name.strip(), email, referral_code, int(is_payment_current), now, now),
    )
    return get_client(conn, cursor.lastrowid)


def get_client(conn: sqlite3.Connection, client_id: int) -> Client:
    row = conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone()
    if row is None:
        raise ClientNotFoundError(f"Client {client_id} not found.")
    return _client_from_row(row)


def find_client_by_referral_code(conn: sqlite3.Connection, referral_code: str) -> Client | None:
    row = conn.execute(
        "SELECT * FROM clients WHERE referral_code = ?", (referral_code.strip().upper(),)
    ).fetchone()
    return _client_from_row(row) if row else None


def referral_code_exists(conn: sqlite3.Connection, referral_code: str) -> bool:
    return conn.execute("SELECT 1 FROM clients WHERE referral_code = ?", (referral_code,)).fetchone() is not None


def find_client_by_external_id(conn: sqlite3.Connection, external_id: str) -> Client | None:
    """Find the referrer an invoice id belongs to, tolerating id-shape variants."""
    candidate = normalize_external_id(external_id)
    if not candidate:
        return None
    escaped = candidate.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    rows = conn.execute(
        """
        SELECT * FROM clients
        WHERE external_id = ?
           OR external_id = ?
           OR external_id LIKE ? ESCAPE '\\'
        """,
        (candidate, f"{WISPHUB_PREFIX}{candidate}", f"%\\_{escaped}"),
    ).fetchall()

    by_external_id = {row["external_id"]: row for row in rows}
    matched = best_match(by_external_id, candidate)
    return _client_from_row(by_external_id[matched]) if matched else None


def update_client(conn: sqlite3.Connection, client_id: int, **fields: Any) -> None:
    _update(conn, "clients", client_id, CLIENT_COLUMNS, fields)


def adjust_client_totals(
    conn: sqlite3.Connection,
    client_id: int,
    *,
    earned: Decimal = ZERO,
    active: Decimal = ZERO,
    applied: Decimal = ZERO,
) -> Client:
    client = get_client(conn, client_id)
    update_client(
        conn,
        client_id,
        total_earned=client.total_earned + earned,
        total_active=client.total_active + active,
        total_applied=client.total_applied + applied,
    )
    return get_client(conn, client_id)


# Referrals


def _referral_from_row(row: sqlite3.Row) -> Referral:
    return Referral(
        id=row["id"],
        client_id=row["client_id"],
        name=row["name"],
        phone=row["phone"] or "",
        email=row["email"],
        address=row["address"],
        status=row["status"],
        external_client_id=row["external_client_id"],
        contacted_at=row["contacted_at"],
        installed_at=row["installed_at"],
        last_invoice_status=row["last_invoice_status"],
        last_invoice_date=_date_or_none(row["last_invoice_date"]),
        notes=row["notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create_referral(
    conn: sqlite3.Connection,
    *,
    client_id: int,
    name: str,
    phone: str = "",
    email: str | None = None,
    address: str | None = None,
    status: str = "PENDING",
    external_client_id: str | None = None,
) -> Referral:
    now = _utc_now()
    cursor = conn.execute(
        """
        INSERT INTO referrals (client_id, name, phone, email, address, status, external_client_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            client_id,
            name.strip(),
            phone.strip(),
            email,
            address,
            status,
            normalize_external_id(external_client_id) or None,
            now,
            now,
        ),
    )
    return get_referral(conn, cursor.lastrowid)


def get_referral(conn: sqlite3.Connection, referral_id: int) -> Referral:
    row = conn.execute("SELECT * FROM referrals WHERE id = ?", (referral_id,)).fetchone()
    if row is None:
        raise ReferralNotFoundError(f"Referral {referral_id} not found.")
    return _referral_from_row(row)


def find_installed_referral(conn: sqlite3.Connection, external_id: str) -> Referral | None:
    row = conn.execute(
        """
        SELECT * FROM referrals
        WHERE external_client_id = ? AND status = 'INSTALLED'
        ORDER BY id
        LIMIT 1
        """,
        (normalize_external_id(external_id),),
    ).fetchone()
    return _referral_from_row(row) if row else None


def update_referral(conn: sqlite3.Connection, referral_id: int, **fields: Any) -> None:
    _update(conn, "referrals", referral_id, REFERRAL_COLUMNS, fields)


# Commissions


def _commission_from_row(row: sqlite3.Row) -> Commission:
    return Commission(
        id=row["id"],
        client_id=row["client_id"],
        referral_id=row["referral_id"],
        type=row["type"],
        month_number=row["month_number"],
        month_date=_date_or_none(row["month_date"]),
        month_key=row["month_key"],
        amount=_money(row["amount"]),
        status=row["status"],
        status_reason=row["status_reason"],
        applied_invoice_id=row["applied_invoice_id"],
        applied_amount=_money(row["applied_amount"]),
        applied_at=row["applied_at"],
        applied_by=row["applied_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create_commission(
    conn: sqlite3.Connection,
    *,
    client_id: int,
    referral_id: int,
    type: str,
    amount: Decimal,
    status: str,
    status_reason: str | None = None,
    month_number: int | None = None,
    month_date: date | None = None,
    month_key: str | None = None,
) -> Commission:
    now = _utc_now()
    cursor = conn.execute(
        """
        INSERT INTO commissions (
            client_id, referral_id, type, month_number, month_date, month_key,
            amount, status, status_reason, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            client_id,
            referral_id,
            type,
            month_number,
            _to_db(month_date),
            month_key,
            _to_db(amount),
            status,
            status_reason,
            now,
            now,
        ),
    )
    return get_commission(conn, cursor.lastrowid)


def get_commission(conn: sqlite3.Connection, commission_id: int) -> Commission:
    row = conn.execute("SELECT * FROM commissions WHERE id = ?", (commission_id,)).fetchone()
    if row is None:
        raise CommissionNotFoundError(f"Commission {commission_id} not found.")
    return _commission_from_row(row)


def find_commission(
    conn: sqlite3.Connection,
    referral_id: int,
    type: str,
    month_number: int | None = None,
) -> Commission | None:
    if month_number is None:
        row = conn.execute(
            "SELECT * FROM commissions WHERE referral_id = ? AND type = ? ORDER BY id LIMIT 1",
            (referral_id, type),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM commissions WHERE referral_id = ? AND type = ? AND month_number = ?",
            (referral_id, type, month_number),
        ).fetchone()
    return _commission_from_row(row) if row else None


def list_monthly_commissions(conn: sqlite3.Connection, referral_id: int) -> list[Commission]:
    rows = conn.execute(
        """
        SELECT * FROM commissions
        WHERE referral_id = ? AND type = 'MONTHLY'
        ORDER BY month_number ASC
        """,
        (referral_id,),
    ).fetchall()
    return [_commission_from_row(row) for row in rows]


def _equality_filters(**filters: Any) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in filters.items():
        if value is not None:
            clauses.append(f"{column} = ?")
            params.append(value)
    return (f"WHERE {' AND '.join(clauses)}" if clauses else ""), params


def list_commissions(
    conn: sqlite3.Connection,
    *,
    client_id: int | None = None,
    referral_id: int | None = None,
    status: str | None = None,
    type: str | None = None,
    newest_first: bool = False,
    limit: int | None = None,
    offset: int = 0,
) -> list[Commission]:
    where, params = _equality_filters(client_id=client_id, referral_id=referral_id, status=status, type=type)
    order = "created_at DESC, id DESC" if newest_first else "id"
    query = f"SELECT * FROM commissions {where} ORDER BY {order}"
    if limit is not None:
        query += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])
    rows = conn.execute(query, params).fetchall()
    return [_commission_from_row(row) for row in rows]


def count_commissions(
    conn: sqlite3.Connection,
    *,
    client_id: int | None = None,
    status: str | None = None,
) -> int:
    where, params = _equality_filters(client_id=client_id, status=status)
    return int(conn.execute(f"SELECT COUNT(*) FROM commissions {where}", params).fetchone()[0])


def update_commission(conn: sqlite3.Connection, commission_id: int, **fields: Any) -> None:
    _update(conn, "commissions", commission_id, COMMISSION_COLUMNS, fields)


# Commission applications


def _application_from_row(row: sqlite3.Row) -> CommissionApplication:
    return CommissionApplication(
        id=row["id"],
        commission_id=row["commission_id"],
        client_id=row["client_id"],
        invoice_id=row["invoice_id"],
        amount=_money(row["amount"]),
        invoice_month=row["invoice_month"],
        invoice_amount=_money(row["invoice_amount"]) if row["invoice_amount"] is not None else None,
        applied_by=row["applied_by"],
        notes=row["notes"],
        applied_at=row["applied_at"],
    )


def create_application(
    conn: sqlite3.Connection,
    *,
    commission_id: int,
    client_id: int,
    invoice_id: str,
    amount: Decimal,
    invoice_month: str | None = None,
    invoice_amount: Decimal | None = None,
    applied_by: str | None = None,
    notes: str | None = None,
) -> CommissionApplication:
    cursor = conn.execute(
        """
        INSERT INTO commission_applications (
            commission_id, client_id, invoice_id, amount, invoice_month,
            invoice_amount, applied_by, notes, applied_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            commission_id,
            client_id,
            invoice_id,
            _to_db(amount),
            invoice_month,
            _to_db(invoice_amount),
            applied_by,
            notes,
            _utc_now(),
        ),
    )
    row = conn.execute("SELECT * FROM commission_applications WHERE id = ?", (cursor.lastrowid,)).fetchone()
    return _application_from_row(row)


def list_applications(
    conn: sqlite3.Connection,
    *,
    commission_id: int | None = None,
    client_id: int | None = None,
) -> list[CommissionApplication]:
    where, params = _equality_filters(commission_id=commission_id, client_id=client_id)
    rows = conn.execute(
        f"SELECT * FROM commission_applications {where} ORDER BY applied_at DESC, id DESC",
        params,
    ).fetchall()
    return [_application_from_row(row) for row in rows]


def sum_applications(conn: sqlite3.Connection, commission_id: int) -> Decimal:
    total = ZERO
    for application in list_applications(conn, commission_id=commission_id):
        total += application.amount
    return total.quantize(CENTS)


# Uploads and invoice records


def _upload_from_row(row: sqlite3.Row) -> InvoiceUpload:
    return InvoiceUpload(
        id=row["id"],
        file_name=row["file_name"],
        file_path=row["file_path"],
        upload_date=row["upload_date"],
        period_start=_date_or_none(row["period_start"]),
        period_end=_date_or_none(row["period_end"]),
        total_invoices=row["total_invoices"],
        paid_invoices=row["paid_invoices"],
        pending_invoices=row["pending_invoices"],
        commissions_generated=row["commissions_generated"],
        commissions_activated=row["commissions_activated"],
        processed=bool(row["processed"]),
        processed_at=row["processed_at"],
        uploaded_by=row["uploaded_by"],
    )


def create_upload(
    conn: sqlite3.Connection,
    *,
    file_name: str,
    uploaded_by: str,
    total_invoices: int,
    period_start: date | None = None,
    period_end: date | None = None,
    file_path: str | None = None,
) -> InvoiceUpload:
    cursor = conn.execute(
        """
        INSERT INTO invoice_uploads (file_name, file_path, upload_date, period_start, period_end, total_invoices, uploaded_by)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            file_name,
            file_path,
            _utc_now(),
            _to_db(period_start),
            _to_db(period_end),
            total_invoices,
            uploaded_by,
        ),
    )
    return get_upload(conn, cursor.lastrowid)


def get_upload(conn: sqlite3.Connection, upload_id: int) -> InvoiceUpload:
    row = conn.execute("SELECT * FROM invoice_uploads WHERE id = ?", (upload_id,)).fetchone()
    if row is None:
        raise UploadNotFoundError(f"Upload {upload_id} not found.")
    return _upload_from_row(row)


def update_upload(conn: sqlite3.Connection, upload_id: int, **fields: Any) -> None:
    _update(conn, "invoice_uploads", upload_id, UPLOAD_COLUMNS, fields)


def list_uploads(
    conn: sqlite3.Connection,
    *,
    processed: bool | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[InvoiceUpload], int]:
    where = ""
    params: list[Any] = []
    if processed is not None:
        where = "WHERE processed = ?"
        params.append(int(processed))
    total = conn.execute(f"SELECT COUNT(*) FROM invoice_uploads {where}", params).fetchone()[0]
    rows = conn.execute(
        f"SELECT * FROM invoice_uploads {where} ORDER BY upload_date DESC, id DESC LIMIT ? OFFSET ?",
        [*params, limit, offset],
    ).fetchall()
    return [_upload_from_row(row) for row in rows], int(total)


def _record_from_row(row: sqlite3.Row) -> InvoiceRecord:
    return InvoiceRecord(
        id=row["id"],
        upload_id=row["upload_id"],
        external_client_id=row["external_client_id"],
        external_invoice_id=row["external_invoice_id"] or "",
        client_name=row["client_name"] or "",
        invoice_date=date.fromisoformat(row["invoice_date"]),
        due_date=_date_or_none(row["due_date"]),
        amount=_money(row["amount"]),
        status=row["status"],
        is_referrer=bool(row["is_referrer"]),
        is_referral=bool(row["is_referral"]),
        matched_referral_id=row["matched_referral_id"],
        matched_commission_id=row["matched_commission_id"],
    )


def create_invoice_record(
    conn: sqlite3.Connection,
    *,
    upload_id: int,
    external_client_id: str,
    external_invoice_id: str,
    client_name: str,
    invoice_date: date,
    due_date: date | None,
    amount: Decimal,
    status: str,
    is_referrer: bool,
    is_referral: bool,
) -> InvoiceRecord:
    cursor = conn.execute(
        """
        INSERT INTO invoice_records (
            upload_id, external_client_id, external_invoice_id, client_name,
            invoice_date, due_date, amount, status, is_referrer, is_referral
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            upload_id,
            normalize_external_id(external_client_id),
            external_invoice_id,
            client_name,
            _to_db(invoice_date),
            _to_db(due_date),
            _to_db(amount),
            status,
            int(is_referrer),
            int(is_referral),
        ),
    )
    row = conn.execute("SELECT * FROM invoice_records WHERE id = ?", (cursor.lastrowid,)).fetchone()
    return _record_from_row(row)


def list_invoice_records(
    conn: sqlite3.Connection,
    upload_id: int,
    *,
    is_referrer: bool | None = None,
    is_referral: bool | None = None,
    status: str | None = None,
    newest_first: bool = False,
) -> list[InvoiceRecord]:
    clauses = ["upload_id = ?"]
    params: list[Any] = [upload_id]
    if is_referrer is not None:
        clauses.append("is_referrer = ?")
        params.append(int(is_referrer))
    if is_referral is not None:
        clauses.append("is_referral = ?")
        params.append(int(is_referral))
    if status is not None:
        clauses.append("status = ?")
        params.append(status)
    direction = "DESC" if newest_first else "ASC"
    rows = conn.execute(
        f"""
        SELECT * FROM invoice_records
        WHERE {' AND '.join(clauses)}
        ORDER BY invoice_date {direction}, id {direction}
        """,
        params,
    ).fetchall()
    return [_record_from_row(row) for row in rows]


def update_invoice_record(conn: sqlite3.Connection, record_id: int, **fields: Any) -> None:
    _update(conn, "invoice_records", record_id, RECORD_COLUMNS, fields)
