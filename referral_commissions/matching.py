from __future__ import annotations

from typing import Iterable

WISPHUB_PREFIX = "WISPHUB_"


def normalize_external_id(value: str | None) -> str:
    return (value or "").strip()


def match_rank(stored_id: str | None, external_id: str | None) -> int | None:
    """Rank how a stored client id matches an id read from an invoice.

    0 is an exact match, 1 the ``WISPHUB_<id>`` form and 2 any
    ``<prefix>_<id>`` suffix form. ``None`` means no match.
    """
    stored = normalize_external_id(stored_id)
    candidate = normalize_external_id(external_id)
    if not stored or not candidate:
        return None
    if stored == candidate:
        return 0
    if stored == f"{WISPHUB_PREFIX}{candidate}":
        return 1
    if stored.endswith(f"_{candidate}"):
        return 2
    return None


def best_match(stored_ids: Iterable[str], external_id: str | None) -> str | None:
    ranked: list[tuple[int, str]] = []
    for stored in stored_ids:
        rank = match_rank(stored, external_id)
        if rank is not None:
            ranked.append((rank, stored))
    if not ranked:
        return None
    ranked.sort()
    return ranked[0][1]
