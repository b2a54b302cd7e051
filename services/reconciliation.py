# services/reconciliation.py
"""
Read side of the ledger: period listings, per-entry audit detail, the payroll
tie-out and the asset reports. Nothing here writes; every figure is either
read from persisted entries or recomputed with the same calculators the
generator uses.
"""
from __future__ import annotations
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from models.base import session_scope
from models.ledger import AccountingPeriod, AuditTrail, EntryType, JournalEntry
from models.schema import Developer, PayrollEntry, PayrollImport, Project
from services.accounting import D, accounts_for, money
from services.allocation import calculate_period_costs, load_allocation_config
from services.amortization import calculate_amortization
from services.datetimex import mid_month, month_window, period_label, today_local
from services.errors import NotFound, validate_period
from services.journal_generator import capitalized_cost_through

TIE_OUT_TOLERANCE = 1e-6


def _entry_dict(e: JournalEntry) -> dict:
    return {
        "id": e.id,
        "entry_type": e.entry_type,
        "debit_account": e.debit_account,
        "credit_account": e.credit_account,
        "amount": money(e.amount),
        "description": e.description,
        "project_id": e.project_id,
        "project_name": e.project.name if e.project else None,
        "created_at": e.created_at,
    }


def list_periods_with_entries() -> List[dict]:
    with session_scope() as s:
        periods = s.execute(
            select(AccountingPeriod)
            .options(selectinload(AccountingPeriod.entries).selectinload(JournalEntry.project))
            .order_by(AccountingPeriod.year.desc(), AccountingPeriod.month.desc())
        ).scalars().all()
        return [
            {
                "id": p.id,
                "year": p.year,
                "month": p.month,
                "label": period_label(p.year, p.month),
                "status": p.status,
                "total_capitalized": money(p.total_capitalized),
                "total_expensed": money(p.total_expensed),
                "total_amortization": money(p.total_amortization),
                "generated_at": p.generated_at,
                "generated_by": p.generated_by,
                "closed_at": p.closed_at,
                "closed_by": p.closed_by,
                "entries": [_entry_dict(e) for e in p.entries],
            }
            for p in periods
        ]


def amortization_schedule(s, project: Project, year: int, month: int) -> Optional[dict]:
    """Schedule behind an AMORTIZATION entry, as of the 15th of (year, month)."""
    if project.launch_date is None:
        return None
    cost = capitalized_cost_through(s, project.id, year, month)
    sched = calculate_amortization(
        cost, project.starting_balance, project.starting_amortization,
        project.amortization_months, project.launch_date, mid_month(year, month))
    return {
        "total_cost_basis": money(cost + D(project.starting_balance)),
        "accumulated_cost": money(cost),
        "starting_balance": money(project.starting_balance),
        "starting_amortization": money(project.starting_amortization),
        "useful_life_months": project.amortization_months,
        "monthly_rate": round(sched.monthly_amortization, 2),
        "months_elapsed": sched.months_elapsed,
        "total_amortization": round(sched.total_amortization, 2),
        "net_book_value": round(sched.net_book_value, 2),
        "launch_date": project.launch_date.isoformat(),
    }


def get_entry_audit_detail(entry_id: int) -> dict:
    with session_scope() as s:
        e = s.get(JournalEntry, entry_id, options=[
            selectinload(JournalEntry.project),
            selectinload(JournalEntry.period),
            selectinload(JournalEntry.audit_trails).selectinload(AuditTrail.ticket),
        ])
        if e is None:
            raise NotFound(f"journal entry {entry_id} not found")

        trails = sorted(e.audit_trails, key=lambda t: (-D(t.allocated_amount), t.id))
        out = _entry_dict(e)
        out["project"] = {"id": e.project.id, "name": e.project.name,
                          "status": e.project.status}
        out["period"] = {"id": e.period.id, "year": e.period.year,
                         "month": e.period.month, "status": e.period.status}
        out["audit_trails"] = [
            {
                "id": t.id,
                "developer_name": t.developer_name,
                "ticket_id": t.ticket_id,
                "summary": t.ticket.summary if t.ticket else None,
                "issue_type": t.ticket.issue_type if t.ticket else None,
                "story_points": t.ticket.story_points if t.ticket else 0,
                "allocated_amount": money(t.allocated_amount),
            }
            for t in trails
        ]

        entry_type = EntryType(e.entry_type)
        if entry_type is EntryType.AMORTIZATION:
            out["amortization_details"] = amortization_schedule(
                s, e.project, e.period.year, e.period.month)
        elif accounts_for(entry_type).has_audit_trail:
            summary: Dict[str, dict] = {}
            for t in trails:
                row = summary.setdefault(t.developer_name, {
                    "name": t.developer_name, "ticket_count": 0,
                    "total_points": 0, "total_amount": D(0)})
                row["ticket_count"] += 1
                row["total_points"] += t.ticket.story_points if t.ticket else 0
                row["total_amount"] += D(t.allocated_amount)
            out["developer_summary"] = [
                {**r, "total_amount": money(r["total_amount"])} for r in summary.values()
            ]
        return out


def payroll_tie_out(year, month) -> dict:
    """
    Recompute the allocation for the period and check that, per developer,
    capitalized + expensed equals the loaded cost. Gross salary from payroll
    imports paid inside the period is reported next to it (0 when none).
    """
    year, month = validate_period(month, year)
    start, end = month_window(year, month)
    with session_scope() as s:
        results = calculate_period_costs(s, year, month, load_allocation_config(s))

        gross: Dict[int, float] = {}
        rows = s.execute(
            select(PayrollEntry.developer_id, PayrollEntry.gross_salary)
            .join(PayrollImport, PayrollEntry.import_id == PayrollImport.id)
            .where(PayrollImport.pay_date >= start.date(),
                   PayrollImport.pay_date < end.date())
        ).all()
        for dev_id, amount in rows:
            gross[dev_id] = gross.get(dev_id, 0.0) + float(amount or 0)

    developers = []
    for r in results:
        total = r.capitalized_amount + r.expensed_amount
        developers.append({
            "developer_id": r.developer_id,
            "name": r.developer_name,
            "capitalized": r.capitalized_amount,
            "expensed": r.expensed_amount,
            "total": total,
            "total_payroll": r.loaded_cost,
            "delta": total - r.loaded_cost,
            "gross_salary": gross.get(r.developer_id, 0.0),
        })
    developers.sort(key=lambda d: d["name"].lower())

    keys = ("capitalized", "expensed", "total", "total_payroll", "delta", "gross_salary")
    totals = {k: sum(d[k] for d in developers) for k in keys}
    return {
        "year": year,
        "month": month,
        "label": period_label(year, month),
        "developers": developers,
        "totals": totals,
        "has_payroll_import": bool(gross),
        "balanced": all(abs(d["delta"]) <= TIE_OUT_TOLERANCE for d in developers),
    }


# ---------- asset reports ----------

def _capitalizable_projects(s, launched_only: bool = False) -> List[Project]:
    stmt = select(Project).where(Project.is_capitalizable.is_(True))
    if launched_only:
        stmt = stmt.where(Project.launch_date.is_not(None))
    return s.execute(stmt.order_by(Project.name)).scalars().all()


def _amortize(p: Project, as_of: date):
    return calculate_amortization(
        p.accumulated_cost, p.starting_balance, p.starting_amortization,
        p.amortization_months, p.launch_date, as_of)


def asset_value_report(as_of: date | None = None) -> dict:
    as_of = as_of or today_local()
    with session_scope() as s:
        rows = []
        for p in _capitalizable_projects(s):
            a = _amortize(p, as_of)
            rows.append({
                "id": p.id,
                "name": p.name,
                "status": p.status,
                "total_cost": money(D(p.accumulated_cost) + D(p.starting_balance)),
                "accumulated_amortization": round(a.total_amortization, 2),
                "net_book_value": round(a.net_book_value, 2),
                "launch_date": p.launch_date.isoformat() if p.launch_date else None,
            })
    return {
        "title": "Total Asset Value",
        "subtitle": "Net book value breakdown by project",
        "as_of": as_of.isoformat(),
        "rows": rows,
        "total": round(sum(r["net_book_value"] for r in rows), 2),
    }


def ytd_amortization_report(as_of: date | None = None) -> dict:
    """
    Amortization booked between January 1 of as_of's year and as_of: the
    schedule total now minus the schedule total at the end of the prior year.
    """
    as_of = as_of or today_local()
    prior_year_end = date(as_of.year - 1, 12, 31)
    with session_scope() as s:
        rows = []
        for p in _capitalizable_projects(s, launched_only=True):
            now = _amortize(p, as_of)
            before = _amortize(p, prior_year_end)
            ytd = max(0.0, now.total_amortization - before.total_amortization)
            rows.append({
                "id": p.id,
                "name": p.name,
                "status": p.status,
                "total_cost": money(D(p.accumulated_cost) + D(p.starting_balance)),
                "monthly_amortization": round(now.monthly_amortization, 2),
                "ytd_amount": round(ytd, 2),
                "launch_date": p.launch_date.isoformat(),
            })
    return {
        "title": "YTD Amortization",
        "subtitle": "Year-to-date amortization expense by project",
        "as_of": as_of.isoformat(),
        "rows": rows,
        "total": round(sum(r["ytd_amount"] for r in rows), 2),
    }


REPORTS = {
    "asset-value": asset_value_report,
    "ytd-amortization": ytd_amortization_report,
}


def run_report(slug: str, as_of: date | None = None) -> dict:
    fn = REPORTS.get(slug)
    if fn is None:
        raise NotFound(f"unknown report {slug!r}")
    return fn(as_of)


# ---------- payroll register ----------

def payroll_register() -> dict:
    """Active developers × payroll imports grid of gross salary, with row/column totals."""
    with session_scope() as s:
        devs = s.execute(
            select(Developer).where(Developer.is_active.is_(True)).order_by(Developer.name)
        ).scalars().all()
        imports = s.execute(
            select(PayrollImport).options(selectinload(PayrollImport.entries))
            .order_by(PayrollImport.pay_date)
        ).scalars().all()

        dev_ids = {d.id for d in devs}
        salary_map: Dict[int, Dict[int, float]] = {d.id: {} for d in devs}
        import_totals: Dict[int, float] = {}
        for imp in imports:
            import_totals[imp.id] = round(sum(float(e.gross_salary) for e in imp.entries), 2)
            for e in imp.entries:
                if e.developer_id in dev_ids:
                    salary_map[e.developer_id][imp.id] = float(e.gross_salary)
        dev_totals = {k: round(sum(v.values()), 2) for k, v in salary_map.items()}
        years = sorted({imp.year for imp in imports})

        return {
            "developers": [{"id": d.id, "name": d.name, "email": d.email, "role": d.role}
                           for d in devs],
            "payroll_imports": [{"id": i.id, "label": i.label,
                                 "pay_date": i.pay_date.isoformat(), "year": i.year}
                                for i in imports],
            "salary_map": salary_map,
            "import_totals": import_totals,
            "dev_totals": dev_totals,
            "grand_total": round(sum(dev_totals.values()), 2),
            "year_label": f"Total {years[0]}" if len(years) == 1 else "Grand Total",
        }
