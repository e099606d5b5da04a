from __future__ import annotations

from datetime import date
from typing import Optional

from xpos.domain.errors import ValidationError

MAX_LIMIT = 100


def page_window(page: int, limit: int) -> tuple[int, int, int]:
    """Return (page, limit, offset) after bounds checks."""
    try:
        page_i = int(page)
        limit_i = int(limit)
    except (TypeError, ValueError) as e:
        raise ValidationError("Page and limit must be integers.") from e
    if page_i < 1:
        raise ValidationError("Page must be >= 1.")
    if not 1 <= limit_i <= MAX_LIMIT:
        raise ValidationError(f"Limit must be between 1 and {MAX_LIMIT}.")
    return page_i, limit_i, (page_i - 1) * limit_i


def iso_date(value: date | str | None, field: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except ValueError as e:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD). Received: {value!r}") from e
