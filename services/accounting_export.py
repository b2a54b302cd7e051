# services/accounting_export.py
from __future__ import annotations
from typing import List, Tuple
import csv
import io

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from models.base import session_scope
from models.ledger import AccountingPeriod, AuditTrail, EntryType, JournalEntry
from services.accounting import D, journal_summary, period_journal
from services.datetimex import period_label
from services.errors import NotFound, validate_period
from services.reconciliation import amortization_schedule

HEADER = [
    "Entry Type", "Account", "Debit", "Credit", "Project",
    "Description", "Developer", "Ticket ID", "Ticket Summary",
    "Issue Type", "Story Points", "Allocated Amount",
    "Launch Date", "Useful Life (Months)", "Monthly Rate",
    "Months Elapsed", "Total Cost Basis", "Accumulated Amortization",
    "Net Book Value",
]
WIDTH = len(HEADER)

TOTAL_LABELS = [
    (EntryType.CAPITALIZATION.value, "Capitalized"),
    (EntryType.EXPENSE.value, "Expensed"),
    (EntryType.AMORTIZATION.value, "Amortization"),
]


def _fmt(x) -> str:
    return f"{float(x or 0):.2f}"


def _row(*cells) -> List[str]:
    row = ["" if c is None else str(c) for c in cells]
    return row + [""] * (WIDTH - len(row))


def build_period_csv(year, month) -> Tuple[str, str]:
    """
    Audit workpaper for one period: for every entry a debit line and a credit
    line, then its supporting ticket rows (or the amortization schedule),
    then a blank separator; a TOTALS block closes the file.
    """
    year, month = validate_period(month, year)
    with session_scope() as s:
        period = s.execute(
            select(AccountingPeriod)
            .where(AccountingPeriod.year == year, AccountingPeriod.month == month)
        ).scalars().one_or_none()
        if period is None:
            raise NotFound(f"period {year}-{month:02d} not found")

        entries = s.execute(
            select(JournalEntry)
            .where(JournalEntry.period_id == period.id)
            .options(
                selectinload(JournalEntry.project),
                selectinload(JournalEntry.audit_trails).selectinload(AuditTrail.ticket),
            )
            .order_by(JournalEntry.entry_type, JournalEntry.id)
        ).scalars().all()

        rows: List[List[str]] = [HEADER]
        for e in entries:
            project = e.project
            rows.append(_row(e.entry_type, e.debit_account, _fmt(e.amount), "",
                             project.name, e.description or ""))
            rows.append(_row(e.entry_type, e.credit_account, "", _fmt(e.amount),
                             project.name, e.description or ""))

            trails = sorted(e.audit_trails, key=lambda t: (-D(t.allocated_amount), t.id))
            for t in trails:
                tk = t.ticket
                rows.append(_row(
                    "", "", "", "", project.name, "Supporting Detail",
                    t.developer_name, t.ticket_id,
                    tk.summary if tk else "", tk.issue_type if tk else "",
                    tk.story_points if tk else "", _fmt(t.allocated_amount),
                ))

            if e.entry_type == EntryType.AMORTIZATION.value:
                sched = amortization_schedule(s, project, year, month)
                if sched:
                    rows.append(_row(
                        "", "", "", "", project.name, "Amortization Schedule Detail",
                        "", "", "", "", "", "",
                        sched["launch_date"], sched["useful_life_months"],
                        _fmt(sched["monthly_rate"]), sched["months_elapsed"],
                        _fmt(sched["total_cost_basis"]), _fmt(sched["total_amortization"]),
                        _fmt(sched["net_book_value"]),
                    ))

            rows.append(_row())

        summary = journal_summary(period_journal(s, period)).set_index("entry_type")
        rows.append(_row("TOTALS"))
        for entry_type, label in TOTAL_LABELS:
            rows.append(_row(label, "",
                             _fmt(summary.at[entry_type, "debits"]),
                             _fmt(summary.at[entry_type, "credits"])))

    out = io.StringIO()
    w = csv.writer(out)
    w.writerows(rows)
    fname = f"Audit_Trail_{period_label(year, month).replace(' ', '_')}.csv"
    return fname, out.getvalue()


def build_journal_csv(year, month) -> Tuple[str, str]:
    """Flat debit/credit journal lines for one period."""
    year, month = validate_period(month, year)
    with session_scope() as s:
        period = s.execute(
            select(AccountingPeriod)
            .where(AccountingPeriod.year == year, AccountingPeriod.month == month)
        ).scalars().one_or_none()
        if period is None:
            raise NotFound(f"period {year}-{month:02d} not found")
        j = period_journal(s, period)

    out = io.StringIO()
    j.to_csv(out, index=False, float_format="%.2f")
    fname = f"journal_{year}-{month:02d}.csv"
    return fname, out.getvalue()
