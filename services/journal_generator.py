# services/journal_generator.py
from __future__ import annotations
import logging
import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from time import perf_counter
from typing import Dict, List, Tuple

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session

from models.audit_store import audit
from models.base import session_scope
from models.config_store import read_config
from models.ledger import AccountingPeriod, AuditTrail, EntryType, JournalEntry
from models.schema import Project
from services.accounting import D, accounts_for, apportion_cents, money, to_cents
from services.allocation import (
    PeriodCostResult, ProjectShare, calculate_period_costs, load_allocation_config
)
from services.amortization import calculate_amortization
from services.datetimex import mid_month, parse_date
from services.errors import InvalidInput, NotFound, PeriodClosed, validate_period
from services.metrics import (
    GENERATED_ENTRIES, GENERATION_LATENCY, GENERATION_RUNS, PERIOD_STATUS_CHANGES
)

log = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# One writer per (year, month) inside this process; the row lock on the
# period covers other processes on databases that support SELECT ... FOR UPDATE.
_period_locks: Dict[Tuple[int, int], threading.Lock] = {}
_period_locks_guard = threading.Lock()


def _period_lock(year: int, month: int) -> threading.Lock:
    with _period_locks_guard:
        lk = _period_locks.get((year, month))
        if lk is None:
            lk = _period_locks[(year, month)] = threading.Lock()
        return lk


def _period_key(year: int, month: int) -> str:
    return f"{year}-{month:02d}"


def _lock_period(s: Session, year: int, month: int, actor: str | None) -> AccountingPeriod:
    """Find-or-create the period row and hold it FOR UPDATE for the rest of the transaction."""
    stmt = (
        select(AccountingPeriod)
        .where(AccountingPeriod.year == year, AccountingPeriod.month == month)
        .with_for_update()
    )
    p = s.execute(stmt).scalars().one_or_none()
    if p is None:
        p = AccountingPeriod(year=year, month=month, status="OPEN",
                             opened_at=datetime.now(timezone.utc), opened_by=actor)
        s.add(p)
        s.flush()
        p = s.execute(stmt).scalars().one()
    return p


# ---------- shared ledger queries ----------

def capitalized_cost_through(s: Session, project_id: int, year: int, month: int) -> Decimal:
    """Sum of CAPITALIZATION entries for a project in every period up to and including (year, month)."""
    total = s.execute(
        select(func.coalesce(func.sum(JournalEntry.amount), 0))
        .join(AccountingPeriod, JournalEntry.period_id == AccountingPeriod.id)
        .where(
            JournalEntry.project_id == project_id,
            JournalEntry.entry_type == EntryType.CAPITALIZATION.value,
            or_(AccountingPeriod.year < year,
                and_(AccountingPeriod.year == year, AccountingPeriod.month <= month)),
        )
    ).scalar_one()
    return to_cents(total)


def _project_rows_for_update():
    # NO KEY UPDATE: must not conflict with the KEY SHARE locks that entry inserts take
    return (
        select(Project)
        .order_by(Project.id)
        .with_for_update(key_share=True)
        .execution_options(populate_existing=True)
    )


def _recompute_accumulated_costs(s: Session) -> None:
    """Rewrite every project's accumulated_cost from the persisted CAPITALIZATION entries.

    The project rows are locked before summing, so a concurrent run for another
    period finishes first and its entries are part of the sum.
    """
    projects = s.execute(_project_rows_for_update()).scalars().all()
    sums = dict(s.execute(
        select(JournalEntry.project_id, func.sum(JournalEntry.amount))
        .where(JournalEntry.entry_type == EntryType.CAPITALIZATION.value)
        .group_by(JournalEntry.project_id)
    ).all())
    for p in projects:
        new = to_cents(sums.get(p.id) or 0)
        if D(p.accumulated_cost) != new:
            p.accumulated_cost = new


# ---------- passes ----------

def _add_entry(s: Session, period: AccountingPeriod, entry_type: EntryType,
               project: Project, amount: Decimal, description: str) -> JournalEntry:
    acc = accounts_for(entry_type)
    e = JournalEntry(
        entry_type=entry_type.value,
        debit_account=acc.debit,
        credit_account=acc.credit,
        amount=amount,
        description=description,
        period_id=period.id,
        project_id=project.id,
    )
    s.add(e)
    s.flush()
    return e


def _add_trails(s: Session, entry: JournalEntry,
                parts: List[Tuple[str, int, str, float]]) -> None:
    """parts: (developer_name, ticket_pk, ticket_id, raw_amount); stored amounts are apportioned in cents."""
    amounts = apportion_cents(entry.amount, [p[3] for p in parts])
    for (dev_name, ticket_pk, ticket_key, _raw), amt in zip(parts, amounts):
        s.add(AuditTrail(
            journal_entry_id=entry.id,
            ticket_pk=ticket_pk,
            developer_name=dev_name,
            ticket_id=ticket_key,
            allocated_amount=amt,
        ))


def _group_by_project(results: List[PeriodCostResult], capitalizable: bool
                      ) -> Dict[int, List[Tuple[PeriodCostResult, ProjectShare]]]:
    out: Dict[int, List[Tuple[PeriodCostResult, ProjectShare]]] = {}
    for r in results:
        for share in r.project_breakdown:
            if share.is_capitalizable != capitalizable or share.points <= 0:
                continue
            out.setdefault(share.project_id, []).append((r, share))
    return out


def _capitalization_pass(s: Session, period: AccountingPeriod,
                         results: List[PeriodCostResult]) -> int:
    n = 0
    groups = _group_by_project(results, capitalizable=True)
    for project_id in sorted(groups):
        contribs = groups[project_id]
        amount = to_cents(sum(share.amount for _r, share in contribs))
        if amount <= 0:
            continue
        project = s.get(Project, project_id)
        entry = _add_entry(s, period, EntryType.CAPITALIZATION, project, amount,
                           f"Capitalize {project.name} development costs")
        parts = []
        for r, share in contribs:
            for t in share.tickets:
                parts.append((r.developer_name, t.ticket_pk, t.ticket_id,
                              share.amount * t.story_points / share.points))
        _add_trails(s, entry, parts)
        n += 1
    return n


def _expense_pass(s: Session, period: AccountingPeriod,
                  results: List[PeriodCostResult]) -> int:
    n = 0
    groups = _group_by_project(results, capitalizable=False)
    for project_id in sorted(groups):
        contribs = groups[project_id]
        # developer's expensed dollars on this project: group points over all of their points
        dollars = [(r, share, share.points / r.total_points * r.loaded_cost)
                   for r, share in contribs]
        amount = to_cents(sum(x for _r, _sh, x in dollars))
        if amount <= 0:
            continue
        project = s.get(Project, project_id)
        entry = _add_entry(s, period, EntryType.EXPENSE, project, amount,
                           f"Expense {project.name} non-capitalizable costs")
        parts = []
        for r, share, exp_amount in dollars:
            for t in share.tickets:
                parts.append((r.developer_name, t.ticket_pk, t.ticket_id,
                              exp_amount * t.story_points / share.points))
        _add_trails(s, entry, parts)
        n += 1
    return n


def _amortization_pass(s: Session, period: AccountingPeriod) -> int:
    n = 0
    as_of = mid_month(period.year, period.month)
    live = s.execute(
        select(Project)
        .where(Project.status == "LIVE", Project.launch_date.is_not(None))
        .order_by(Project.id)
    ).scalars().all()
    for p in live:
        # booked every period while LIVE, including after the useful life has run out
        sched = calculate_amortization(
            capitalized_cost_through(s, p.id, period.year, period.month),
            p.starting_balance,
            p.starting_amortization,
            p.amortization_months,
            p.launch_date,
            as_of,
        )
        amount = to_cents(sched.monthly_amortization)
        if amount <= 0:
            continue
        _add_entry(s, period, EntryType.AMORTIZATION, p, amount,
                   f"Monthly amortization for {p.name}")
        n += 1
    return n


def _period_totals(s: Session, period: AccountingPeriod) -> Dict[str, Decimal]:
    sums = dict(s.execute(
        select(JournalEntry.entry_type, func.sum(JournalEntry.amount))
        .where(JournalEntry.period_id == period.id)
        .group_by(JournalEntry.entry_type)
    ).all())
    return {t.value: to_cents(sums.get(t.value) or 0) for t in EntryType}


def _generate(s: Session, year: int, month: int, actor: str | None) -> dict:
    period = _lock_period(s, year, month, actor)
    if period.status == "CLOSED":
        raise PeriodClosed(f"period {_period_key(year, month)} is closed")

    # full replace: trails first, then entries
    entry_ids = select(JournalEntry.id).where(JournalEntry.period_id == period.id)
    s.execute(delete(AuditTrail).where(AuditTrail.journal_entry_id.in_(entry_ids))
              .execution_options(synchronize_session=False))
    s.execute(delete(JournalEntry).where(JournalEntry.period_id == period.id)
              .execution_options(synchronize_session=False))
    s.flush()

    config = load_allocation_config(s)
    results = calculate_period_costs(s, year, month, config)

    counts = {
        EntryType.CAPITALIZATION.value: _capitalization_pass(s, period, results),
    }
    s.flush()
    _recompute_accumulated_costs(s)
    counts[EntryType.EXPENSE.value] = _expense_pass(s, period, results)
    counts[EntryType.AMORTIZATION.value] = _amortization_pass(s, period)
    s.flush()

    totals = _period_totals(s, period)
    period.total_capitalized = totals[EntryType.CAPITALIZATION.value]
    period.total_expensed = totals[EntryType.EXPENSE.value]
    period.total_amortization = totals[EntryType.AMORTIZATION.value]
    period.generated_at = datetime.now(timezone.utc)
    period.generated_by = actor
    s.add(period)

    return {
        "period": _period_key(year, month),
        "total_capitalized": money(period.total_capitalized),
        "total_expensed": money(period.total_expensed),
        "total_amortization": money(period.total_amortization),
        "entries": counts,
        "developers": len(results),
    }


def generate_period_entries(year, month, actor: str | None = None) -> dict:
    """
    Delete and rebuild every journal entry, audit trail row and period total for
    (year, month) in a single transaction. Returns the three period totals.
    """
    year, month = validate_period(month, year)
    key = _period_key(year, month)
    t0 = perf_counter()
    with _period_lock(year, month):
        try:
            with session_scope() as s:
                out = _generate(s, year, month, actor)
        except Exception as e:
            # the transaction is already rolled back here; audit opens its own session
            blocked = isinstance(e, PeriodClosed)
            GENERATION_RUNS.labels(outcome="blocked" if blocked else "failure").inc()
            audit("ledger.generate.blocked" if blocked else "ledger.generate.failed",
                  target_type="period", target_id=key,
                  outcome="blocked" if blocked else "failure",
                  status=getattr(e, "status", 500),
                  error_code=getattr(e, "code", type(e).__name__),
                  extra={"reason": str(e)}, actor=actor)
            raise

    GENERATION_RUNS.labels(outcome="success").inc()
    GENERATION_LATENCY.observe(perf_counter() - t0)
    for entry_type, n in out["entries"].items():
        GENERATED_ENTRIES.labels(entry_type=entry_type).inc(n)
    log.info("generated %s: cap=%.2f exp=%.2f amort=%.2f entries=%s",
             key, out["total_capitalized"], out["total_expensed"],
             out["total_amortization"], out["entries"])
    audit("ledger.generate", target_type="period", target_id=key,
          outcome="success", status=200, actor=actor,
          extra={"totals": {k: out[k] for k in
                            ("total_capitalized", "total_expensed", "total_amortization")},
                 "entries": out["entries"]})
    return out


# ---------- period status ----------

def _period_dict(p: AccountingPeriod) -> dict:
    return {
        "id": p.id, "year": p.year, "month": p.month, "status": p.status,
        "opened_at": p.opened_at, "opened_by": p.opened_by,
        "closed_at": p.closed_at, "closed_by": p.closed_by,
    }


def close_period(year, month, actor: str | None = None) -> dict:
    """Mark a period CLOSED; an unknown period is created closed. Closing twice is a no-op."""
    year, month = validate_period(month, year)
    now = datetime.now(timezone.utc)
    with _period_lock(year, month):
        with session_scope() as s:
            p = _lock_period(s, year, month, actor)
            noop = p.status == "CLOSED"
            if not noop:
                p.status = "CLOSED"
                p.closed_at = now
                p.closed_by = actor
                s.add(p)
            out = _period_dict(p)

    if noop:
        audit("period.close.noop", target_type="period",
              target_id=_period_key(year, month), status=304, outcome="noop", actor=actor)
    else:
        PERIOD_STATUS_CHANGES.labels(status="CLOSED").inc()
        audit("period.close", target_type="period",
              target_id=_period_key(year, month), status=200, outcome="success", actor=actor)
    return out


def reopen_period(year, month, actor: str | None = None) -> dict:
    year, month = validate_period(month, year)
    with _period_lock(year, month):
        with session_scope() as s:
            p = s.execute(
                select(AccountingPeriod)
                .where(AccountingPeriod.year == year, AccountingPeriod.month == month)
                .with_for_update()
            ).scalars().one_or_none()
            if p is None:
                raise NotFound(f"period {_period_key(year, month)} not found")
            noop = p.status == "OPEN"
            if not noop:
                p.status = "OPEN"
                p.closed_at = None
                p.closed_by = None
                s.add(p)
            out = _period_dict(p)

    if noop:
        audit("period.reopen.noop", target_type="period",
              target_id=_period_key(year, month), status=304, outcome="noop", actor=actor)
    else:
        PERIOD_STATUS_CHANGES.labels(status="OPEN").inc()
        audit("period.reopen", target_type="period",
              target_id=_period_key(year, month), status=200, outcome="success", actor=actor)
    return out


# ---------- project registration ----------

def register_project(data: dict) -> Project:
    """
    Create a project. amortization_months falls back to DEFAULT_AMORTIZATION_LIFE
    and must be a positive integer; accumulated_cost always starts at zero.
    """
    name = (data.get("name") or "").strip()
    epic_key = (data.get("epic_key") or "").strip()
    if not name or not epic_key:
        raise InvalidInput("name and epic_key are required")
    status = (data.get("status") or "PLANNING").upper()
    if status not in ("PLANNING", "DEV", "LIVE", "RETIRED"):
        raise InvalidInput(f"unknown project status {status!r}")

    with session_scope() as s:
        if s.execute(select(Project.id).where(Project.epic_key == epic_key)).first():
            raise InvalidInput(f"epic_key {epic_key} already exists")
        life = data.get("amortization_months")
        if life in (None, ""):
            life = read_config(s)["DEFAULT_AMORTIZATION_LIFE"]
        try:
            life = int(float(life))
        except (TypeError, ValueError):
            raise InvalidInput("amortization_months must be a whole number")
        if life <= 0:
            raise InvalidInput("amortization_months must be positive")

        p = Project(
            name=name,
            epic_key=epic_key,
            description=data.get("description"),
            status=status,
            is_capitalizable=bool(data.get("is_capitalizable", False)),
            start_date=_as_date(data.get("start_date")),
            launch_date=_as_date(data.get("launch_date")),
            amortization_months=life,
            accumulated_cost=ZERO,
            starting_balance=to_cents(data.get("starting_balance") or 0),
            starting_amortization=to_cents(data.get("starting_amortization") or 0),
            override_reason=data.get("override_reason"),
        )
        s.add(p)
        s.flush()
    log.info("registered project %s (%s)", p.epic_key, p.id)
    return p


def _as_date(v) -> date | None:
    if v is None or isinstance(v, date):
        return v.date() if isinstance(v, datetime) else v
    d = parse_date(str(v))
    if d is None:
        raise InvalidInput(f"invalid date {v!r}")
    return d
