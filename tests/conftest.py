from pathlib import Path

import pytest

from referral_commissions import ledger


@pytest.fixture
def ledger_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    db_path = tmp_path / "referrals.sqlite3"
    monkeypatch.setattr(ledger, "LEDGER_DB", db_path)
    ledger.init_ledger()
    return db_path
