# services/accounting.py
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR
from typing import Dict, List, Sequence

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from models.ledger import AccountingPeriod, EntryType, JournalEntry
from models.schema import Project

CENT = Decimal("0.01")


# ---- Fixed account labels per entry type ----
# Flat entries: one debit label and one credit label, no chart enforcement.

@dataclass(frozen=True)
class EntryAccounts:
    debit: str
    credit: str
    has_audit_trail: bool


ENTRY_ACCOUNTS: Dict[EntryType, EntryAccounts] = {
    EntryType.CAPITALIZATION: EntryAccounts(
        debit="WIP — Software Assets",
        credit="R&D Salaries / Payroll Expense",
        has_audit_trail=True),
    EntryType.EXPENSE: EntryAccounts(
        debit="R&D Expense — Software",
        credit="Accrued Payroll / Cash",
        has_audit_trail=True),
    EntryType.AMORTIZATION: EntryAccounts(
        debit="Amortization Expense",
        credit="Accumulated Amortization — Software",
        has_audit_trail=False),
}


def accounts_for(entry_type: EntryType | str) -> EntryAccounts:
    return ENTRY_ACCOUNTS[EntryType(entry_type)]


# ---- Money helpers ----

def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    # never pass float directly; stringify first to avoid binary artifacts
    return Decimal(str(x or 0))


def to_cents(x) -> Decimal:
    return D(x).quantize(CENT, rounding=ROUND_HALF_UP)


def money(x) -> float:
    """JSON-friendly two-decimal number."""
    return float(to_cents(x))


def apportion_cents(total: Decimal, weights: Sequence[float]) -> List[Decimal]:
    """
    Split `total` (already in cents) across `weights` so the parts are whole
    cents and add up to `total` exactly. Leftover cents go to the largest
    fractional remainders, earliest index first on ties.
    """
    total = to_cents(total)
    n = len(weights)
    if n == 0:
        return []
    wsum = sum(float(w) for w in weights)
    if wsum <= 0:
        parts = [Decimal("0.00")] * n
        parts[0] = total
        return parts

    total_cents = int(total / CENT)
    raw = [D(w) / D(wsum) * total_cents for w in weights]
    floors = [int(r.to_integral_value(rounding=ROUND_FLOOR)) for r in raw]
    left = total_cents - sum(floors)
    order = sorted(range(n), key=lambda i: (-(raw[i] - floors[i]), i))
    for i in order[:left]:
        floors[i] += 1
    return [Decimal(c) * CENT for c in floors]


# ---- Period journal (derived from persisted entries) ----
# One journal entry becomes two lines: the debit line and the credit line.

JOURNAL_COLUMNS = ["entry_id", "entry_type", "project", "description",
                   "account", "debit", "credit"]


def period_journal(s: Session, period: AccountingPeriod) -> pd.DataFrame:
    rows = s.execute(
        select(JournalEntry, Project.name)
        .join(Project, JournalEntry.project_id == Project.id)
        .where(JournalEntry.period_id == period.id)
        .order_by(JournalEntry.entry_type, JournalEntry.id)
    ).all()

    lines: List[Dict] = []
    for e, project_name in rows:
        amt = money(e.amount)
        base = {"entry_id": e.id, "entry_type": e.entry_type,
                "project": project_name, "description": e.description or ""}
        lines.append({**base, "account": e.debit_account,
                      "debit": amt, "credit": 0.0})
        lines.append({**base, "account": e.credit_account,
                      "debit": 0.0, "credit": amt})

    if not lines:
        return pd.DataFrame(columns=JOURNAL_COLUMNS)
    return pd.DataFrame(lines, columns=JOURNAL_COLUMNS)


def journal_summary(journal: pd.DataFrame) -> pd.DataFrame:
    """
    Debits/credits per entry type. Every entry posts the same amount on both
    sides, so debits == credits per row; `out_of_balance` in attrs is the
    overall difference and should be zero.
    """
    types = [t.value for t in EntryType]
    if journal.empty:
        out = pd.DataFrame({"entry_type": types, "debits": 0.0, "credits": 0.0})
    else:
        out = (
            journal.groupby("entry_type").agg(
                debits=("debit", "sum"), credits=("credit", "sum"))
            .reindex(types, fill_value=0.0)
            .rename_axis("entry_type")
            .reset_index()
        )
    out["debits"] = out["debits"].astype(float).round(2)
    out["credits"] = out["credits"].astype(float).round(2)
    out.attrs["out_of_balance"] = round(
        float(out["debits"].sum()) - float(out["credits"].sum()), 2)
    return out
