"""
Result shaping: cap row count and serialized size, truncating rather than
failing when a result is too large.
"""
import json
from typing import Any, Sequence


def serialized_size(value: Any) -> int:
    """UTF-8 length of the compact JSON form (non-JSON values via str())."""
    return len(
        json.dumps(value, default=str, separators=(",", ":"), ensure_ascii=False).encode(
            "utf-8"
        )
    )


def shape_response(
    rows: Sequence[Any], max_rows: int, max_bytes: int
) -> tuple[list[Any], bool]:
    """
    Return ``(rows, truncated)``.

    The kept prefix has at most ``max_rows`` rows and its compact JSON array
    encoding is at most ``max_bytes`` bytes.
    """
    truncated = len(rows) > max_rows
    candidates = list(rows[:max_rows])

    kept: list[Any] = []
    total = 2  # "[]"
    for row in candidates:
        cost = serialized_size(row) + (1 if kept else 0)
        if total + cost > max_bytes:
            truncated = True
            break
        total += cost
        kept.append(row)
    return kept, truncated
