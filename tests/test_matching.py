from referral_commissions.matching import best_match, match_rank, normalize_external_id


def test_match_rank_id_shapes() -> None:
    assert match_rank("5001", "5001") == 0
    assert match_rank("WISPHUB_5001", "5001") == 1
    assert match_rank("EA_5001", "5001") == 2
    assert match_rank("WISPHUB_5001", " 5001 ") == 1


def test_match_rank_rejects_partial_ids() -> None:
    assert match_rank("15001", "5001") is None
    assert match_rank("5001_EA", "5001") is None
    assert match_rank("", "5001") is None
    assert match_rank("5001", "") is None


def test_best_match_prefers_exact_over_fallback_shapes() -> None:
    stored = ["EA_5001", "WISPHUB_5001", "5001"]

    assert best_match(stored, "5001") == "5001"
    assert best_match(stored[:2], "5001") == "WISPHUB_5001"
    assert best_match(["EA_5001"], "5001") == "EA_5001"
    assert best_match(["7000"], "5001") is None


def test_normalize_external_id() -> None:
    assert normalize_external_id("  42 ") == "42"
    assert normalize_external_id(None) == ""
