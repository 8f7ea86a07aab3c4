from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from . import ledger
from .ledger import (
    COMMISSION_INSTALLATION,
    COMMISSION_MONTHLY,
    CENTS,
    ZERO,
    Commission,
    CommissionSettings,
    ReferralLedgerError,
)
from .processing import STATUS_PAID, month_key

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_EARNED = "EARNED"
STATUS_ACTIVE = "ACTIVE"
STATUS_APPLIED = "APPLIED"
STATUS_CANCELLED = "CANCELLED"

COMMISSION_STATUSES = (STATUS_PENDING, STATUS_EARNED, STATUS_ACTIVE, STATUS_APPLIED, STATUS_CANCELLED)
CANCELLABLE_STATUSES = {STATUS_PENDING, STATUS_EARNED, STATUS_ACTIVE}

NOT_CURRENT_REASON = "referring client is not current on payments"


class CommissionStateError(ReferralLedgerError):
    pass


@dataclass
class CommissionStats:
    generated: int = 0
    activated: int = 0


@dataclass
class ClientTotals:
    earned: Decimal
    active: Decimal
    applied: Decimal


def _initial_status(client_is_current: bool) -> tuple[str, str | None]:
    if client_is_current:
        return STATUS_ACTIVE, None
    return STATUS_EARNED, NOT_CURRENT_REASON


def generate_monthly_commission(
    conn: sqlite3.Connection,
    referral: ledger.Referral,
    invoice_date: date,
    settings: CommissionSettings,
) -> Commission | None:
    """Create the next monthly commission for a paid referral invoice.

    Returns ``None`` when the referral already holds ``months_to_earn``
    monthly commissions or already has one for the invoice's calendar month.
    """
    existing = ledger.list_monthly_commissions(conn, referral.id)
    if len(existing) >= settings.months_to_earn:
        logger.debug("Referral %s already has %s monthly commissions", referral.id, len(existing))
        return None

    key = month_key(invoice_date)
    if any(commission.month_key == key for commission in existing):
        logger.debug("Referral %s already has a commission for %s", referral.id, key)
        return None

    client = ledger.get_client(conn, referral.client_id)
    status, reason = _initial_status(client.is_payment_current)
    amount = settings.monthly_amount.quantize(CENTS)
    try:
        commission = ledger.create_commission(
            conn,
            client_id=referral.client_id,
            referral_id=referral.id,
            type=COMMISSION_MONTHLY,
            amount=amount,
            status=status,
            status_reason=reason,
            month_number=len(existing) + 1,
            month_date=invoice_date,
            month_key=key,
        )
    except sqlite3.IntegrityError:
        # Another run generated this month first.
        logger.info("Monthly commission for referral %s in %s already exists", referral.id, key)
        return None

    ledger.adjust_client_totals(
        conn,
        referral.client_id,
        earned=amount,
        active=amount if status == STATUS_ACTIVE else ZERO,
    )
    logger.info(
        "Monthly commission %s/%s for referral %s -> client %s: %s [%s]",
        commission.month_number,
        settings.months_to_earn,
        referral.id,
        client.id,
        amount,
        status,
    )
    return commission


def process_commissions(conn: sqlite3.Connection, upload_id: int, settings: CommissionSettings) -> CommissionStats:
    """Generate monthly commissions for every paid referral invoice of an upload."""
    stats = CommissionStats()
    records = ledger.list_invoice_records(conn, upload_id, is_referral=True, status=STATUS_PAID)
    logger.info("Processing commissions for %s paid referral invoices", len(records))

    for record in records:
        referral = ledger.find_installed_referral(conn, record.external_client_id)
        if referral is None:
            continue

        ledger.update_referral(
            conn,
            referral.id,
            last_invoice_status=record.status,
            last_invoice_date=record.invoice_date,
        )
        commission = generate_monthly_commission(conn, referral, record.invoice_date, settings)
        ledger.update_invoice_record(
            conn,
            record.id,
            matched_referral_id=referral.id,
            matched_commission_id=commission.id if commission else record.matched_commission_id,
        )
        if commission is None:
            continue

        stats.generated += 1
        if commission.status == STATUS_ACTIVE:
            stats.activated += 1

    logger.info(
        "%s commissions generated (%s active, %s earned)",
        stats.generated,
        stats.activated,
        stats.generated - stats.activated,
    )
    return stats


def generate_installation_commission(
    conn: sqlite3.Connection,
    referral_id: int,
    settings: CommissionSettings,
) -> Commission:
    referral = ledger.get_referral(conn, referral_id)
    if referral.status != "INSTALLED":
        raise CommissionStateError(
            f"Referral {referral_id} must be INSTALLED to earn an installation commission (is {referral.status})."
        )

    existing = ledger.find_commission(conn, referral_id, COMMISSION_INSTALLATION)
    if existing is not None:
        return existing

    client = ledger.get_client(conn, referral.client_id)
    reason = None if client.is_payment_current else NOT_CURRENT_REASON
    amount = settings.installation_amount.quantize(CENTS)
    try:
        commission = ledger.create_commission(
            conn,
            client_id=referral.client_id,
            referral_id=referral_id,
            type=COMMISSION_INSTALLATION,
            amount=amount,
            status=STATUS_EARNED,
            status_reason=reason,
        )
    except sqlite3.IntegrityError:
        found = ledger.find_commission(conn, referral_id, COMMISSION_INSTALLATION)
        if found is None:
            raise
        return found

    ledger.adjust_client_totals(conn, referral.client_id, earned=amount)
    logger.info("Installation commission %s for referral %s: %s", commission.id, referral_id, amount)
    return commission


def apply_commission(
    conn: sqlite3.Connection,
    commission_id: int,
    *,
    invoice_id: str,
    amount: Decimal | None = None,
    applied_by: str | None = None,
    invoice_month: str | None = None,
    invoice_amount: Decimal | None = None,
    notes: str | None = None,
) -> Commission:
    """Apply an ACTIVE commission, in full or in part, to a client invoice.

    ``amount`` defaults to the remaining balance. Every call records one
    application row; the commission's ``applied_amount`` is their sum and
    it stays ACTIVE until that sum reaches its amount.
    """
    commission = ledger.get_commission(conn, commission_id)
    if commission.status != STATUS_ACTIVE:
        raise CommissionStateError(
            f"Commission {commission_id} must be ACTIVE to apply (is {commission.status})."
        )
    if not (invoice_id or "").strip():
        raise CommissionStateError("An invoice id is required to apply a commission.")

    remaining = commission.remaining
    if amount is None:
        to_apply = remaining
    else:
        to_apply = Decimal(str(amount))
        if not to_apply.is_finite():
            raise CommissionStateError("Applied amount must be a finite number.")
        to_apply = to_apply.quantize(CENTS)
    if to_apply <= ZERO:
        raise CommissionStateError("Applied amount must be greater than zero.")
    if to_apply > remaining:
        raise CommissionStateError(f"Only {remaining} remains available to apply on commission {commission_id}.")

    application = ledger.create_application(
        conn,
        commission_id=commission_id,
        client_id=commission.client_id,
        invoice_id=invoice_id.strip(),
        amount=to_apply,
        invoice_month=invoice_month,
        invoice_amount=invoice_amount,
        applied_by=applied_by,
        notes=notes,
    )
    applied_total = ledger.sum_applications(conn, commission_id)
    ledger.update_commission(
        conn,
        commission_id,
        status=STATUS_APPLIED if applied_total >= commission.amount else STATUS_ACTIVE,
        applied_invoice_id=application.invoice_id,
        applied_amount=applied_total,
        applied_at=application.applied_at,
        applied_by=applied_by,
    )
    ledger.adjust_client_totals(conn, commission.client_id, active=-to_apply, applied=to_apply)
    logger.info("Applied %s of commission %s to invoice %s", to_apply, commission_id, invoice_id)
    return ledger.get_commission(conn, commission_id)


def cancel_commission(conn: sqlite3.Connection, commission_id: int, reason: str) -> Commission:
    cleaned_reason = (reason or "").strip()
    if not cleaned_reason:
        raise CommissionStateError("A reason is required to cancel a commission.")

    commission = ledger.get_commission(conn, commission_id)
    if commission.status not in CANCELLABLE_STATUSES:
        raise CommissionStateError(
            f"Commission {commission_id} must be PENDING, EARNED or ACTIVE to cancel (is {commission.status})."
        )
    if commission.applied_amount > ZERO:
        raise CommissionStateError(f"Commission {commission_id} has already been partially applied.")

    ledger.update_commission(conn, commission_id, status=STATUS_CANCELLED, status_reason=cleaned_reason)
    if commission.status in (STATUS_EARNED, STATUS_ACTIVE):
        ledger.adjust_client_totals(
            conn,
            commission.client_id,
            earned=-commission.amount,
            active=-commission.amount if commission.status == STATUS_ACTIVE else ZERO,
        )
    logger.info("Cancelled commission %s: %s", commission_id, cleaned_reason)
    return ledger.get_commission(conn, commission_id)


def activate_pending_commissions(conn: sqlite3.Connection, client_id: int) -> int:
    """Move every EARNED commission of a client to ACTIVE."""
    ledger.get_client(conn, client_id)
    earned = ledger.list_commissions(conn, client_id=client_id, status=STATUS_EARNED)

    activated_total = ZERO
    for commission in earned:
        ledger.update_commission(conn, commission.id, status=STATUS_ACTIVE, status_reason=None)
        activated_total += commission.amount

    if earned:
        ledger.adjust_client_totals(conn, client_id, active=activated_total)
    logger.info("Activated %s commissions (%s) for client %s", len(earned), activated_total, client_id)
    return len(earned)


def compute_client_totals(conn: sqlite3.Connection, client_id: int) -> ClientTotals:
    earned = active = applied = ZERO
    for commission in ledger.list_commissions(conn, client_id=client_id):
        if commission.status in (STATUS_PENDING, STATUS_CANCELLED):
            continue
        earned += commission.amount
        applied += commission.applied_amount
        if commission.status == STATUS_ACTIVE:
            active += commission.remaining
    return ClientTotals(earned=earned, active=active, applied=applied)


def recompute_client_totals(conn: sqlite3.Connection, client_id: int) -> ledger.Client:
    totals = compute_client_totals(conn, client_id)
    ledger.update_client(
        conn,
        client_id,
        total_earned=totals.earned,
        total_active=totals.active,
        total_applied=totals.applied,
    )
    return ledger.get_client(conn, client_id)


def list_client_commissions(
    conn: sqlite3.Connection,
    client_id: int,
    *,
    status: str | None = None,
    type: str | None = None,
) -> list[Commission]:
    ledger.get_client(conn, client_id)
    if status is not None and status not in COMMISSION_STATUSES:
        raise CommissionStateError(f"Unknown commission status {status!r}.")
    return ledger.list_commissions(conn, client_id=client_id, status=status, type=type, newest_first=True)


def list_pending_commissions(conn: sqlite3.Connection, page: int = 1, limit: int = 50) -> dict[str, Any]:
    """EARNED commissions awaiting activation, oldest first, one page at a time."""
    page = max(page, 1)
    limit = max(limit, 1)
    commissions = ledger.list_commissions(conn, status=STATUS_EARNED, limit=limit, offset=(page - 1) * limit)
    total = ledger.count_commissions(conn, status=STATUS_EARNED)
    return {
        "commissions": commissions,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit),
        },
    }


def client_summary(conn: sqlite3.Connection, client_id: int) -> dict[str, Any]:
    totals = compute_client_totals(conn, client_id)
    applied = sum(
        (application.amount for application in ledger.list_applications(conn, client_id=client_id)),
        ZERO,
    )
    counted = [
        commission
        for commission in ledger.list_commissions(conn, client_id=client_id)
        if commission.status not in (STATUS_PENDING, STATUS_CANCELLED)
    ]
    return {
        "totalEarned": totals.earned,
        "totalApplied": applied,
        "pendingBalance": totals.earned - applied,
        "totalCommissions": len(counted),
        "cancelledCommissions": ledger.count_commissions(conn, client_id=client_id, status=STATUS_CANCELLED),
    }


def client_application_history(conn: sqlite3.Connection, client_id: int) -> list[ledger.CommissionApplication]:
    ledger.get_client(conn, client_id)
    return ledger.list_applications(conn, client_id=client_id)
