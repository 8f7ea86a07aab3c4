from __future__ import annotations

import csv
import io
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

STATUS_PAID = "PAID"
STATUS_PENDING = "PENDING"

PAID_STATUS_SYNONYMS: set[str] = {"pagada", "pagado", "paid", "pago", "completado", "completed"}
PAID_STATUS_STEM = "pagad"
IN_REVIEW_MARKERS: tuple[str, ...] = ("en revision", "en revisión", "revision", "revisión")

MISSING_SERVICE_ID_ERROR = "Invoice {invoice} missing service ID"


@dataclass(frozen=True)
class ColumnRule:
    field: str
    exact: tuple[str, ...]
    keywords: tuple[str, ...]


# Evaluated in order; billing exports rename these headers between releases.
COLUMN_RULES: list[ColumnRule] = [
    ColumnRule("status", ("Estado",), ("estado", "status")),
    ColumnRule("external_id", ("ID Servicio",), ("id servicio", "servicio", "id")),
    ColumnRule("invoice_number", ("#Factura", "Factura"), ("factura", "invoice")),
    ColumnRule("client_name", ("Cliente",), ("cliente", "client", "nombre")),
    ColumnRule("issue_date", ("Fecha Emisión",), ("fecha emision", "emision")),
    ColumnRule("due_date", ("Fecha Vencimiento",), ("vencimiento",)),
    ColumnRule("total_amount", ("Total",), ("total", "monto")),
]


@dataclass
class InvoiceRow:
    line_number: int
    invoice_number: str
    client_name: str
    external_id: str
    invoice_date: date
    due_date: date
    raw_status: str
    status: str
    in_review: bool
    amount: Decimal


@dataclass
class InvoiceParseResult:
    filename: str
    delimiter: str
    headers: list[str]
    columns: dict[str, str | None]
    rows: list[InvoiceRow]
    total_rows: int
    errors: list[str] = field(default_factory=list)


def _decode_bytes(raw: bytes) -> str:
    for encoding in ("utf-8-sig", "utf-8", "cp1252", "latin-1"):
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="replace")


def _fold_header(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = re.sub(r"[^a-z0-9]+", " ", stripped.strip().lower())
    return stripped.strip()


def detect_delimiter(text: str) -> str:
    first_line = text.split("\n", 1)[0]
    return "\t" if "\t" in first_line else ","


def resolve_columns(headers: list[str], rules: list[ColumnRule] | None = None) -> dict[str, str | None]:
    """Map each canonical field to the header that carries it.

    An exact header match wins. Otherwise each keyword is tried in order
    against the accent- and case-folded headers, first containing header
    wins. Fields with no match map to ``None``.
    """
    folded = [(_fold_header(h), h) for h in headers]
    present = set(headers)
    columns: dict[str, str | None] = {}

    for rule in rules or COLUMN_RULES:
        match = next((candidate for candidate in rule.exact if candidate in present), None)
        if match is None:
            for keyword in rule.keywords:
                needle = _fold_header(keyword)
                match = next((original for norm, original in folded if needle in norm), None)
                if match is not None:
                    break
        columns[rule.field] = match
    return columns


def classify_status(raw: str | None) -> tuple[str, bool]:
    """Return the normalized status and whether the text flags a review."""
    normalized = (raw or "").strip().lower()
    in_review = any(marker in normalized for marker in IN_REVIEW_MARKERS)
    if normalized in PAID_STATUS_SYNONYMS or PAID_STATUS_STEM in normalized:
        return STATUS_PAID, in_review
    return STATUS_PENDING, in_review


def parse_invoice_date(value: str | None, *, strict: bool = False, today: date | None = None) -> date:
    """Parse ``DD/MM/YYYY`` with an optional trailing time component.

    Empty values resolve to today. Malformed values also resolve to today
    unless ``strict`` is set, in which case they raise ``ValueError``.
    """
    fallback = today or datetime.now(timezone.utc).date()
    cleaned = (value or "").strip()
    if not cleaned:
        return fallback

    date_part = cleaned.split()[0]
    match = re.fullmatch(r"(\d{1,2})/(\d{1,2})/(\d{4})", date_part)
    try:
        if match is None:
            raise ValueError(f"unrecognized date {cleaned!r}")
        day, month, year = (int(part) for part in match.groups())
        return date(year, month, day)
    except ValueError:
        if strict:
            raise ValueError(f"invalid date {cleaned!r}, expected DD/MM/YYYY") from None
        return fallback


def parse_amount(value: str | None) -> Decimal:
    cleaned = (value or "").replace("$", "").replace(",", "").strip()
    cleaned = re.sub(r"\s+", "", cleaned)
    if not cleaned:
        return Decimal("0")
    try:
        return Decimal(cleaned).quantize(Decimal("0.01"))
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount {value!r}") from exc


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def _read_rows(text: str, delimiter: str) -> tuple[list[str], list[list[str]]]:
    reader = csv.reader(io.StringIO(text), delimiter=delimiter, quotechar='"', doublequote=True)
    headers: list[str] | None = None
    rows: list[list[str]] = []
    for raw_row in reader:
        cells = [cell.strip() for cell in raw_row]
        if not any(cells):
            continue
        if headers is None:
            headers = cells
            continue
        if len(cells) < len(headers):
            cells.extend([""] * (len(headers) - len(cells)))
        rows.append(cells[: len(headers)])
    return headers or [], rows


def parse_invoice_csv(filename: str, raw: bytes, *, strict_dates: bool = False) -> InvoiceParseResult:
    text = _decode_bytes(raw)
    delimiter = detect_delimiter(text)
    headers, data_rows = _read_rows(text, delimiter)
    columns = resolve_columns(headers)
    index = {header: position for position, header in reversed(list(enumerate(headers)))}

    result = InvoiceParseResult(
        filename=filename,
        delimiter=delimiter,
        headers=headers,
        columns=columns,
        rows=[],
        total_rows=len(data_rows),
    )
    if not headers:
        result.errors.append(f"{filename}: no headers found; file skipped.")
        return result

    def cell(cells: list[str], name: str) -> str:
        header = columns.get(name)
        return cells[index[header]] if header is not None else ""

    for line_number, cells in enumerate(data_rows, start=2):
        invoice_number = cell(cells, "invoice_number")
        external_id = cell(cells, "external_id")
        if not external_id:
            result.errors.append(MISSING_SERVICE_ID_ERROR.format(invoice=invoice_number or "N/A"))
            continue

        raw_status = cell(cells, "status")
        status, in_review = classify_status(raw_status)
        try:
            invoice_date = parse_invoice_date(cell(cells, "issue_date"), strict=strict_dates)
            due_date = parse_invoice_date(cell(cells, "due_date"), strict=strict_dates)
            amount = parse_amount(cell(cells, "total_amount"))
        except ValueError as exc:
            result.errors.append(f"Invoice {invoice_number or 'N/A'} (row {line_number}): {exc}")
            continue

        result.rows.append(
            InvoiceRow(
                line_number=line_number,
                invoice_number=invoice_number,
                client_name=cell(cells, "client_name"),
                external_id=external_id,
                invoice_date=invoice_date,
                due_date=due_date,
                raw_status=raw_status,
                status=status,
                in_review=in_review,
                amount=amount,
            )
        )

    return result
