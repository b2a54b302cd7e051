# services/amortization.py
"""
Straight-line amortization of a capitalized software asset.

An asset is either not yet placed in service (no launch date) or in service
since its launch date. Amortization begins with the first full calendar month
after launch: a launch on any day of month M makes M+1 the first month.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime
from typing import Union

from services.errors import InvariantViolation


@dataclass(frozen=True)
class NotInService:
    pass


@dataclass(frozen=True)
class InService:
    launch_date: date


AssetLifecycle = Union[NotInService, InService]


def lifecycle_for(launch_date: date | datetime | None) -> AssetLifecycle:
    if launch_date is None:
        return NotInService()
    if isinstance(launch_date, datetime):
        launch_date = launch_date.date()
    return InService(launch_date)


@dataclass(frozen=True)
class AmortizationResult:
    monthly_amortization: float
    total_amortization: float
    net_book_value: float
    months_elapsed: int

    def as_dict(self) -> dict:
        return {
            "monthly_amortization": self.monthly_amortization,
            "total_amortization": self.total_amortization,
            "net_book_value": self.net_book_value,
            "months_elapsed": self.months_elapsed,
        }


def amortization_start(launch_date: date) -> date:
    if launch_date.month == 12:
        return date(launch_date.year + 1, 1, 1)
    return date(launch_date.year, launch_date.month + 1, 1)


def months_elapsed(launch_date: date, as_of: date, useful_life: int) -> int:
    """Calendar months from amortization start through as_of's month, clamped to [0, useful_life]."""
    start = amortization_start(launch_date)
    n = (as_of.year - start.year) * 12 + (as_of.month - start.month) + 1
    return max(0, min(n, useful_life))


def calculate_amortization(
    accumulated_cost: float,
    starting_balance: float,
    starting_amortization: float,
    amortization_months: int,
    launch_date: date | datetime | None,
    as_of: date | datetime,
) -> AmortizationResult:
    accumulated_cost = float(accumulated_cost or 0)
    starting_balance = float(starting_balance or 0)
    starting_amortization = float(starting_amortization or 0)
    total_cost = accumulated_cost + starting_balance

    state = lifecycle_for(launch_date)
    if isinstance(state, NotInService):
        return AmortizationResult(
            monthly_amortization=0.0,
            total_amortization=starting_amortization,
            net_book_value=total_cost,
            months_elapsed=0,
        )

    if amortization_months is None or int(amortization_months) <= 0:
        raise InvariantViolation(
            f"amortization_months must be positive, got {amortization_months!r}")
    life = int(amortization_months)
    if isinstance(as_of, datetime):
        as_of = as_of.date()

    monthly = total_cost / life
    elapsed = months_elapsed(state.launch_date, as_of, life)
    total = starting_amortization + monthly * elapsed
    return AmortizationResult(
        monthly_amortization=monthly,
        total_amortization=total,
        net_book_value=max(0.0, total_cost - total),
        months_elapsed=elapsed,
    )
