from datetime import date
from decimal import Decimal

import pytest

from referral_commissions.processing import (
    STATUS_PAID,
    STATUS_PENDING,
    classify_status,
    detect_delimiter,
    month_key,
    parse_amount,
    parse_invoice_csv,
    parse_invoice_date,
    resolve_columns,
)

EXPORT_HEADER = "#Factura,Cliente,Fecha Emisión,Fecha Vencimiento,Estado,ID Servicio,IP Servicio,Total\n"


def test_parse_invoice_csv_reads_billing_export() -> None:
    raw = (
        EXPORT_HEADER
        + '1001,Ana Ruiz,15/03/2025 10:42,25/03/2025,Pagada,5001,10.0.0.1,"$1,200.50"\n'
        + "1002,Luis Gil,16/03/2025,26/03/2025,Pendiente de pago,5002,10.0.0.2,350\n"
    ).encode("utf-8")

    parsed = parse_invoice_csv("facturas.csv", raw)

    assert parsed.delimiter == ","
    assert parsed.total_rows == 2
    assert parsed.errors == []
    first, second = parsed.rows
    assert first.invoice_number == "1001"
    assert first.external_id == "5001"
    assert first.client_name == "Ana Ruiz"
    assert first.invoice_date == date(2025, 3, 15)
    assert first.due_date == date(2025, 3, 25)
    assert first.status == STATUS_PAID
    assert first.amount == Decimal("1200.50")
    assert second.status == STATUS_PENDING


def test_parse_invoice_csv_detects_tab_delimiter() -> None:
    raw = b"#Factura\tCliente\tEstado\tID Servicio\tTotal\n77\tMarta\tpaid\t9001\t50\n"

    parsed = parse_invoice_csv("facturas.tsv", raw)

    assert parsed.delimiter == "\t"
    assert len(parsed.rows) == 1
    assert parsed.rows[0].external_id == "9001"
    assert parsed.rows[0].status == STATUS_PAID


def test_row_without_service_id_is_rejected_without_aborting() -> None:
    raw = (EXPORT_HEADER + "1001,Ana,15/03/2025,,Pagada,,,100\n1002,Luis,15/03/2025,,Pagada,5002,,100\n").encode()

    parsed = parse_invoice_csv("facturas.csv", raw)

    assert parsed.errors == ["Invoice 1001 missing service ID"]
    assert [row.external_id for row in parsed.rows] == ["5002"]
    assert parsed.total_rows == 2


def test_missing_service_id_without_invoice_number_reports_na() -> None:
    raw = (EXPORT_HEADER + ",Ana,15/03/2025,,Pagada,,,100\n").encode()

    parsed = parse_invoice_csv("facturas.csv", raw)

    assert parsed.errors == ["Invoice N/A missing service ID"]


def test_ragged_rows_are_padded() -> None:
    raw = b"#Factura,Cliente,Estado,ID Servicio,Total\n5,Pia,Pagada,4040\n6,Rui,Pagada,4041,20,extra\n"

    parsed = parse_invoice_csv("ragged.csv", raw)

    assert [row.amount for row in parsed.rows] == [Decimal("0.00"), Decimal("20.00")]


def test_blank_lines_and_cp1252_bytes_are_tolerated() -> None:
    raw = "Factura,Cliente,Estado,ID Servicio,Total\n\n8,Nuñez,Pagada,333,10\n".encode("cp1252")

    parsed = parse_invoice_csv("latin.csv", raw)

    assert parsed.total_rows == 1
    assert parsed.rows[0].client_name == "Nuñez"


def test_invalid_amount_is_a_row_error() -> None:
    raw = b"#Factura,Estado,ID Servicio,Total\n9,Pagada,123,abc\n"

    parsed = parse_invoice_csv("bad.csv", raw)

    assert parsed.rows == []
    assert len(parsed.errors) == 1
    assert parsed.errors[0].startswith("Invoice 9 (row 2)")


def test_strict_dates_reject_malformed_rows() -> None:
    raw = b"#Factura,Fecha Emision,Estado,ID Servicio,Total\n9,2025-03-15,Pagada,123,10\n"

    lenient = parse_invoice_csv("dates.csv", raw)
    strict = parse_invoice_csv("dates.csv", raw, strict_dates=True)

    assert len(lenient.rows) == 1
    assert strict.rows == []
    assert "invalid date" in strict.errors[0]


def test_resolve_columns_prefers_exact_then_keywords() -> None:
    headers = ["Numero Factura", "Nombre", "Fecha de Emisión", "Vencimiento", "Status", "Servicio ID", "Monto"]

    columns = resolve_columns(headers)

    assert columns == {
        "status": "Status",
        "external_id": "Servicio ID",
        "invoice_number": "Numero Factura",
        "client_name": "Nombre",
        "issue_date": "Fecha de Emisión",
        "due_date": "Vencimiento",
        "total_amount": "Monto",
    }


def test_resolve_columns_exact_total_beats_keyword_match() -> None:
    columns = resolve_columns(["Total Cobrado", "Total", "Saldo"])

    assert columns["total_amount"] == "Total"
    assert columns["status"] is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Pagada", STATUS_PAID),
        ("  PAGADO ", STATUS_PAID),
        ("paid", STATUS_PAID),
        ("Pago", STATUS_PAID),
        ("Completado", STATUS_PAID),
        ("completed", STATUS_PAID),
        ("Factura pagada parcialmente", STATUS_PAID),
        ("Pendiente de pago", STATUS_PENDING),
        ("En Revisión", STATUS_PENDING),
        ("Cancelada", STATUS_PENDING),
        ("", STATUS_PENDING),
    ],
)
def test_classify_status(raw: str, expected: str) -> None:
    assert classify_status(raw)[0] == expected


def test_classify_status_flags_review() -> None:
    assert classify_status("En revision") == (STATUS_PENDING, True)
    assert classify_status("Pagada") == (STATUS_PAID, False)


def test_parse_invoice_date_fails_open_to_today() -> None:
    today = date(2025, 6, 1)

    assert parse_invoice_date("5/3/2025", today=today) == date(2025, 3, 5)
    assert parse_invoice_date("05/03/2025 23:59:00", today=today) == date(2025, 3, 5)
    assert parse_invoice_date("", today=today) == today
    assert parse_invoice_date("31/02/2025", today=today) == today
    assert parse_invoice_date("not a date", today=today) == today


def test_parse_invoice_date_strict_raises() -> None:
    with pytest.raises(ValueError):
        parse_invoice_date("31/02/2025", strict=True)
    assert parse_invoice_date("", strict=True, today=date(2025, 1, 1)) == date(2025, 1, 1)


def test_parse_amount_strips_formatting() -> None:
    assert parse_amount("$1,234.5") == Decimal("1234.50")
    assert parse_amount(" ") == Decimal("0")
    with pytest.raises(ValueError):
        parse_amount("12,3x")


def test_detect_delimiter_and_month_key() -> None:
    assert detect_delimiter("a\tb\nc,d") == "\t"
    assert detect_delimiter("a,b\nc\td") == ","
    assert month_key(date(2025, 3, 9)) == "2025-03"
