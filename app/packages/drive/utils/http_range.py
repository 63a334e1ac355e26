"""HTTP Range helpers for ranged downloads.

Only single byte ranges are honoured:
- ``bytes=start-end`` / ``bytes=start-`` / ``bytes=-suffix``;
- malformed or multi-range headers are ignored and the full body is served;
- a syntactically valid range that lies outside the object raises ``RangeNotSatisfiableError``.
"""

from __future__ import annotations

from typing import Optional, Tuple

from app.packages.drive.core.exceptions import RangeNotSatisfiableError


def parse_range(header: Optional[str], total_size: int) -> Optional[Tuple[int, int]]:
    if not header:
        return None
    unit, _, ranges = header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not ranges or "," in ranges:
        return None
    start_raw, sep, end_raw = ranges.strip().partition("-")
    if not sep:
        return None
    start_raw, end_raw = start_raw.strip(), end_raw.strip()

    if not start_raw:
        if not end_raw.isdigit():
            return None
        suffix = int(end_raw)
        if suffix == 0 or total_size == 0:
            raise RangeNotSatisfiableError(total_size)
        return max(total_size - suffix, 0), total_size - 1

    if not start_raw.isdigit() or (end_raw and not end_raw.isdigit()):
        return None
    start = int(start_raw)
    if start >= total_size:
        raise RangeNotSatisfiableError(total_size)
    end = int(end_raw) if end_raw else total_size - 1
    if end < start:
        return None
    return start, min(end, total_size - 1)
