"""
Human-readable document numbers.

    EST-2025-001        estimates, per-year sequence
    CHO-2025-001-01     change orders, per-parent sequence
"""
from typing import Optional

from ..exceptions import ValidationError
from ..storage.provider import EstimateStore


def _next_sequence(last_number: Optional[str], position: int) -> int:
    if not last_number:
        return 1
    try:
        return int(last_number.split("-")[position]) + 1
    except (IndexError, ValueError):
        return 1


def next_estimate_number(store: EstimateStore, year: int, prefix: str = "EST") -> str:
    base = f"{prefix}-{year}-"
    seq = _next_sequence(store.last_number_with_prefix(base), 2)
    return f"{base}{seq:03d}"


def next_change_order_number(
    store: EstimateStore,
    parent_estimate_number: str,
    prefix: str = "CHO",
    estimate_prefix: str = "EST",
) -> str:
    parts = parent_estimate_number.split("-")
    if len(parts) != 3 or parts[0] != estimate_prefix:
        raise ValidationError(f"Invalid parent estimate number format: {parent_estimate_number}")
    year, parent_seq = parts[1], parts[2]
    base = f"{prefix}-{year}-{parent_seq}-"
    seq = _next_sequence(store.last_number_with_prefix(base), 3)
    return f"{base}{seq:02d}"
