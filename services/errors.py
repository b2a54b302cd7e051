# services/errors.py
from __future__ import annotations


# last year whose month windows and year-end anchors stay inside datetime
MAX_YEAR = 9998


class AccountingError(Exception):
    """Base for failures the API reports back to the caller."""
    status = 500
    code = "accounting_error"


class InvalidInput(AccountingError):
    status = 400
    code = "invalid_input"


class NotFound(AccountingError):
    status = 404
    code = "not_found"


class PeriodClosed(AccountingError):
    status = 409
    code = "period_closed"


class InvariantViolation(AccountingError):
    """Source data breaks an assumption of the allocation math; the run must fail."""
    status = 422
    code = "invariant_violation"


def validate_period(month, year) -> tuple[int, int]:
    """Coerce and check a (month, year) request pair. Returns (year, month)."""
    try:
        m = int(month)
        y = int(year)
    except (TypeError, ValueError):
        raise InvalidInput("month and year are required integers")
    if not 1 <= y <= MAX_YEAR or not 1 <= m <= 12:
        raise InvalidInput(f"month must be 1-12 and year must be 1-{MAX_YEAR}")
    return y, m
