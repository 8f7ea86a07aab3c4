import sqlite3
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from referral_commissions import ledger


def test_init_ledger_seeds_default_settings(ledger_db: Path) -> None:
    with ledger.connect() as conn:
        settings = ledger.load_settings(conn)

    assert settings.installation_amount == Decimal("200.00")
    assert settings.monthly_amount == Decimal("50.00")
    assert settings.months_to_earn == 6
    assert settings.currency == "MXN"


def test_save_settings_overwrites_singleton(ledger_db: Path) -> None:
    with ledger.connect() as conn:
        ledger.save_settings(
            conn,
            ledger.CommissionSettings(
                installation_amount=Decimal("250"),
                monthly_amount=Decimal("75.5"),
                months_to_earn=3,
                currency="USD",
            ),
        )

    with ledger.connect() as conn:
        settings = ledger.load_settings(conn)
        count = conn.execute("SELECT COUNT(*) FROM settings").fetchone()[0]

    assert count == 1
    assert settings.monthly_amount == Decimal("75.50")
    assert settings.months_to_earn == 3


def test_load_settings_raises_when_missing(ledger_db: Path) -> None:
    with ledger.connect() as conn:
        conn.execute("DELETE FROM settings")
        with pytest.raises(ledger.SettingsNotFoundError):
            ledger.load_settings(conn)


def test_find_client_by_external_id_tolerates_id_shapes(ledger_db: Path) -> None:
    with ledger.connect() as conn:
        exact = ledger.create_client(conn, external_id="100", name="Exact", referral_code="EASY-10000")
        prefixed = ledger.create_client(conn, external_id="WISPHUB_200", name="Prefixed", referral_code="EASY-20000")
        suffixed = ledger.create_client(conn, external_id="EA_300", name="Suffixed", referral_code="EASY-30000")

        assert ledger.find_client_by_external_id(conn, "100").id == exact.id
        assert ledger.find_client_by_external_id(conn, "200").id == prefixed.id
        assert ledger.find_client_by_external_id(conn, "300").id == suffixed.id
        assert ledger.find_client_by_external_id(conn, "00") is None
        assert ledger.find_client_by_external_id(conn, "") is None


def test_find_client_by_external_id_prefers_exact_match(ledger_db: Path) -> None:
    with ledger.connect() as conn:
        ledger.create_client(conn, external_id="X_400", name="Suffix", referral_code="EASY-40001")
        ledger.create_client(conn, external_id="WISPHUB_400", name="Prefix", referral_code="EASY-40002")
        exact = ledger.create_client(conn, external_id="400", name="Exact", referral_code="EASY-40003")

        assert ledger.find_client_by_external_id(conn, "400").id == exact.id


def test_find_client_suffix_match_treats_underscore_literally(ledger_db: Path) -> None:
    with ledger.connect() as conn:
        ledger.create_client(conn, external_id="AB500", name="No separator", referral_code="EASY-50000")

        assert ledger.find_client_by_external_id(conn, "500") is None


def test_find_installed_referral_ignores_other_statuses(ledger_db: Path) -> None:
    with ledger.connect() as conn:
        client = ledger.create_client(conn, external_id="1", name="Referrer", referral_code="EASY-11111")
        ledger.create_referral(conn, client_id=client.id, name="Lead", external_client_id="900", status="CONTACTED")
        assert ledger.find_installed_referral(conn, "900") is None

        installed = ledger.create_referral(
            conn, client_id=client.id, name="Lead 2", external_client_id="900", status="INSTALLED"
        )
        assert ledger.find_installed_referral(conn, " 900 ").id == installed.id


def test_monthly_commission_unique_per_month_key(ledger_db: Path) -> None:
    with ledger.connect() as conn:
        client = ledger.create_client(conn, external_id="1", name="Referrer", referral_code="EASY-11111")
        referral = ledger.create_referral(conn, client_id=client.id, name="Lead", status="INSTALLED")
        ledger.create_commission(
            conn,
            client_id=client.id,
            referral_id=referral.id,
            type=ledger.COMMISSION_MONTHLY,
            amount=Decimal("50"),
            status="ACTIVE",
            month_number=1,
            month_date=date(2025, 3, 1),
            month_key="2025-03",
        )
        with pytest.raises(sqlite3.IntegrityError):
            ledger.create_commission(
                conn,
                client_id=client.id,
                referral_id=referral.id,
                type=ledger.COMMISSION_MONTHLY,
                amount=Decimal("50"),
                status="ACTIVE",
                month_number=2,
                month_date=date(2025, 3, 20),
                month_key="2025-03",
            )


def test_update_rejects_unknown_columns(ledger_db: Path) -> None:
    with ledger.connect() as conn:
        client = ledger.create_client(conn, external_id="1", name="Referrer", referral_code="EASY-11111")
        with pytest.raises(ValueError):
            ledger.update_client(conn, client.id, external_id="2")


def test_get_missing_entities_raise_not_found(ledger_db: Path) -> None:
    with ledger.connect() as conn:
        with pytest.raises(ledger.ClientNotFoundError):
            ledger.get_client(conn, 99)
        with pytest.raises(ledger.CommissionNotFoundError):
            ledger.get_commission(conn, 99)
        with pytest.raises(ledger.UploadNotFoundError):
            ledger.get_upload(conn, 99)
