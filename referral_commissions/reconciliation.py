"""Invoice CSV reconciliation.

An upload runs as a sequence of independently committed steps: parse the
file, classify each row against referrers and installed referrals, refresh
each referrer's payment standing from their latest invoice, then generate
monthly commissions for paid referral invoices.
"""
from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from . import ledger
from .commissions import CommissionStats, process_commissions
from .processing import STATUS_PAID, InvoiceRow, parse_invoice_csv

logger = logging.getLogger(__name__)


@dataclass
class ClassificationResult:
    paid: int = 0
    pending: int = 0
    referrer: int = 0
    referral: int = 0
    errors: list[str] = field(default_factory=list)


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def classify_invoice_rows(conn: sqlite3.Connection, upload_id: int, rows: list[InvoiceRow]) -> ClassificationResult:
    result = ClassificationResult()

    for row in rows:
        try:
            client = ledger.find_client_by_external_id(conn, row.external_id)
            referral = ledger.find_installed_referral(conn, row.external_id)
            ledger.create_invoice_record(
                conn,
                upload_id=upload_id,
                external_client_id=row.external_id,
                external_invoice_id=row.invoice_number,
                client_name=row.client_name,
                invoice_date=row.invoice_date,
                due_date=row.due_date,
                amount=row.amount,
                status=row.status,
                is_referrer=client is not None,
                is_referral=referral is not None,
            )
        except sqlite3.Error as exc:
            logger.warning("Invoice %s (row %s) failed: %s", row.invoice_number, row.line_number, exc)
            result.errors.append(f"Invoice {row.invoice_number or 'N/A'} (row {row.line_number}): {exc}")
            continue

        if row.status == STATUS_PAID:
            result.paid += 1
        else:
            result.pending += 1
        if client is not None:
            result.referrer += 1
        if referral is not None:
            result.referral += 1
        if row.in_review:
            logger.debug("Invoice %s is under review", row.invoice_number)

    return result


def update_referrers_payment_status(conn: sqlite3.Connection, upload_id: int) -> int:
    """Set each referrer's payment standing from their latest invoice in the upload."""
    records = ledger.list_invoice_records(conn, upload_id, is_referrer=True, newest_first=True)
    seen: set[int] = set()

    for record in records:
        client = ledger.find_client_by_external_id(conn, record.external_client_id)
        if client is None or client.id in seen:
            continue
        seen.add(client.id)
        ledger.update_client(
            conn,
            client.id,
            is_payment_current=record.status == STATUS_PAID,
            last_invoice_status=record.status,
            last_invoice_date=record.invoice_date,
        )

    logger.info("%s referrers updated from upload %s", len(seen), upload_id)
    return len(seen)


def process_invoice_csv(
    file_name: str,
    raw: bytes,
    *,
    uploaded_by: str,
    period_start: date | None = None,
    period_end: date | None = None,
    file_path: str | None = None,
    strict_dates: bool = False,
) -> dict[str, Any]:
    with ledger.connect() as conn:
        settings = ledger.load_settings(conn)

    parsed = parse_invoice_csv(file_name, raw, strict_dates=strict_dates)
    logger.info(
        "Processing %s: %s rows, delimiter %r, columns %s",
        file_name,
        parsed.total_rows,
        parsed.delimiter,
        parsed.columns,
    )
    for error in parsed.errors:
        logger.warning("%s: %s", file_name, error)

    with ledger.connect() as conn:
        upload = ledger.create_upload(
            conn,
            file_name=file_name,
            file_path=file_path,
            uploaded_by=uploaded_by,
            total_invoices=parsed.total_rows,
            period_start=period_start,
            period_end=period_end,
        )

    with ledger.connect() as conn:
        classification = classify_invoice_rows(conn, upload.id, parsed.rows)
        ledger.update_upload(
            conn,
            upload.id,
            paid_invoices=classification.paid,
            pending_invoices=classification.pending,
        )
    logger.info("Upload %s: %s paid, %s pending", upload.id, classification.paid, classification.pending)

    with ledger.connect() as conn:
        update_referrers_payment_status(conn, upload.id)

    with ledger.connect() as conn:
        stats = process_commissions(conn, upload.id, settings)

    with ledger.connect() as conn:
        ledger.update_upload(
            conn,
            upload.id,
            processed=True,
            processed_at=_utc_now(),
            commissions_generated=stats.generated,
            commissions_activated=stats.activated,
        )

    return {
        "uploadId": upload.id,
        "stats": {
            "totalInvoices": parsed.total_rows,
            "referrerInvoices": classification.referrer,
            "referralInvoices": classification.referral,
            "commissionsGenerated": stats.generated,
            "commissionsActivated": stats.activated,
            "errors": [*parsed.errors, *classification.errors],
        },
    }


def reprocess_upload(upload_id: int) -> CommissionStats:
    """Re-run payment-status and commission steps over stored invoice records.

    Months that already carry a commission are skipped, so re-running an
    unchanged upload generates nothing.
    """
    with ledger.connect() as conn:
        ledger.get_upload(conn, upload_id)
        settings = ledger.load_settings(conn)

    logger.info("Reprocessing upload %s", upload_id)
    with ledger.connect() as conn:
        update_referrers_payment_status(conn, upload_id)
    with ledger.connect() as conn:
        return process_commissions(conn, upload_id, settings)


def list_uploads(processed: bool | None = None, page: int = 1, limit: int = 20) -> dict[str, Any]:
    page = max(page, 1)
    limit = max(limit, 1)
    with ledger.connect() as conn:
        uploads, total = ledger.list_uploads(conn, processed=processed, limit=limit, offset=(page - 1) * limit)
    return {
        "uploads": uploads,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit),
        },
    }


def get_upload_details(upload_id: int) -> tuple[ledger.InvoiceUpload, list[ledger.InvoiceRecord]]:
    with ledger.connect() as conn:
        upload = ledger.get_upload(conn, upload_id)
        records = ledger.list_invoice_records(conn, upload_id, newest_first=True)
    return upload, records
