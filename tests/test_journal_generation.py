# tests/test_journal_generation.py
import threading
from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

from models.audit_store import verify_chain
from models.base import session_scope
from models.ledger import AuditTrail, JournalEntry
from models.schema import AuditLog, Project
from services.errors import InvalidInput, InvariantViolation, PeriodClosed
from services.journal_generator import (
    _period_lock, _project_rows_for_update, _recompute_accumulated_costs,
    capitalized_cost_through, close_period, generate_period_entries, reopen_period,
)
from utils import (
    add_developer, add_project, add_ticket, entries_for, get_period,
    scenario_12500, update,
)


def _accumulated(project_id) -> Decimal:
    with session_scope() as s:
        return Decimal(s.get(Project, project_id).accumulated_cost)


@pytest.mark.db
def test_end_to_end_12500_scenario():
    dev, proj = scenario_12500()
    out = generate_period_entries(2025, 3, actor="controller@example.com")

    assert out["total_capitalized"] == 10000.0
    assert out["total_expensed"] == 2500.0
    assert out["total_amortization"] == 0.0

    entries = entries_for(2025, 3)
    cap = [e for e in entries if e["type"] == "CAPITALIZATION"]
    exp = [e for e in entries if e["type"] == "EXPENSE"]
    assert len(cap) == 1 and len(exp) == 1
    assert cap[0]["amount"] == Decimal("10000.00")
    assert cap[0]["debit"] == "WIP — Software Assets"
    assert cap[0]["credit"] == "R&D Salaries / Payroll Expense"
    assert cap[0]["trails"] == [("Dana Dev", "PAY-1", Decimal("10000.00"))]
    assert exp[0]["amount"] == Decimal("2500.00")
    assert exp[0]["debit"] == "R&D Expense — Software"
    assert exp[0]["credit"] == "Accrued Payroll / Cash"
    assert exp[0]["trails"] == [("Dana Dev", "PAY-2", Decimal("2500.00"))]

    p = get_period(2025, 3)
    assert p.status == "OPEN"
    assert Decimal(p.total_capitalized) == Decimal("10000.00")
    assert Decimal(p.total_expensed) == Decimal("2500.00")
    assert p.generated_by == "controller@example.com"
    assert _accumulated(proj) == Decimal("10000.00")


@pytest.mark.db
def test_regeneration_is_idempotent():
    _dev, proj = scenario_12500()
    first = generate_period_entries(2025, 3)
    first_entries = entries_for(2025, 3)
    second = generate_period_entries(2025, 3)
    second_entries = entries_for(2025, 3)

    for k in ("total_capitalized", "total_expensed", "total_amortization"):
        assert first[k] == second[k]
    strip = [(e["type"], e["amount"], [t[1:] for t in e["trails"]]) for e in first_entries]
    assert strip == [(e["type"], e["amount"], [t[1:] for t in e["trails"]]) for e in second_entries]
    # rows are replaced, not added
    assert len(second_entries) == 2
    assert _accumulated(proj) == Decimal("10000.00")


@pytest.mark.db
def test_accumulated_cost_is_the_sum_of_all_capitalization_entries():
    dev, proj = scenario_12500()
    generate_period_entries(2025, 3)
    add_ticket("PAY-3", dev, proj, 5, "STORY", resolved=datetime(2025, 4, 2, 9, 0))
    generate_period_entries(2025, 4)
    assert _accumulated(proj) == Decimal("22500.00")

    # regenerating an earlier month does not double count
    generate_period_entries(2025, 3)
    generate_period_entries(2025, 3)
    assert _accumulated(proj) == Decimal("22500.00")

    with session_scope() as s:
        assert capitalized_cost_through(s, proj, 2025, 3) == Decimal("10000.00")
        assert capitalized_cost_through(s, proj, 2025, 4) == Decimal("22500.00")
        assert capitalized_cost_through(s, proj, 2024, 12) == Decimal("0.00")


@pytest.mark.db
def test_audit_rows_sum_exactly_to_entry_amounts():
    dev = add_developer("Third Way", salary=8000)
    other = add_developer("Odd Cents", salary=7777.77, fringe="0.1337", stock=13.13)
    proj = add_project("Thirds", epic_key="THR")
    opex = add_project("Support", epic_key="SUP", capitalizable=False)
    for i in range(3):
        add_ticket(f"THR-{i}", dev, proj, 1)
    add_ticket("THR-9", other, proj, 7)
    add_ticket("SUP-1", other, opex, 3, "TASK")
    add_ticket("SUP-2", other, opex, 5, "STORY")
    add_ticket("THR-10", other, proj, 2, "BUG")

    generate_period_entries(2025, 3)
    entries = entries_for(2025, 3)
    assert {e["type"] for e in entries} == {"CAPITALIZATION", "EXPENSE"}
    for e in entries:
        assert e["trails"], e
        assert sum(t[2] for t in e["trails"]) == e["amount"]
        assert all(t[2] >= 0 for t in e["trails"])

    thirds = next(e for e in entries
                  if e["type"] == "CAPITALIZATION" and e["project_id"] == proj)
    dev_rows = sorted(t[2] for t in thirds["trails"] if t[0] == "Third Way")
    assert dev_rows[0] == Decimal("3333.33")
    assert dev_rows[-1] <= Decimal("3333.34")

    p = get_period(2025, 3)
    cap_total = sum(e["amount"] for e in entries if e["type"] == "CAPITALIZATION")
    exp_total = sum(e["amount"] for e in entries if e["type"] == "EXPENSE")
    assert Decimal(p.total_capitalized) == cap_total
    assert Decimal(p.total_expensed) == exp_total


@pytest.mark.db
def test_multiple_developers_aggregate_per_project():
    a = add_developer("Alice Able", salary=10000)
    b = add_developer("Bob Baker", salary=5000)
    p = add_project("Payments", epic_key="PAY")
    q = add_project("Internal Tools", epic_key="TOOLS", capitalizable=False)
    add_ticket("PAY-1", a, p, 8)
    add_ticket("PAY-2", a, p, 2, "BUG")
    add_ticket("PAY-3", b, p, 5)
    add_ticket("TOOLS-1", b, q, 5, "TASK")

    out = generate_period_entries(2025, 3)
    assert out["total_capitalized"] == 13125.0
    assert out["total_expensed"] == 5625.0

    by_key = {(e["type"], e["project_id"]): e for e in entries_for(2025, 3)}
    assert by_key[("CAPITALIZATION", p)]["amount"] == Decimal("13125.00")
    assert sorted(t[1] for t in by_key[("CAPITALIZATION", p)]["trails"]) == ["PAY-1", "PAY-3"]
    assert by_key[("EXPENSE", p)]["amount"] == Decimal("2500.00")
    assert by_key[("EXPENSE", q)]["amount"] == Decimal("3125.00")
    assert ("CAPITALIZATION", q) not in by_key


@pytest.mark.db
def test_live_project_amortization_entry():
    add_project("Ledger v1", epic_key="LV1", status="LIVE",
                launch_date=date(2025, 1, 15), starting_balance=90000)
    out = generate_period_entries(2025, 3)
    assert out["total_amortization"] == 2500.0

    [e] = entries_for(2025, 3)
    assert e["type"] == "AMORTIZATION"
    assert e["amount"] == Decimal("2500.00")
    assert e["debit"] == "Amortization Expense"
    assert e["credit"] == "Accumulated Amortization — Software"
    assert e["trails"] == []


@pytest.mark.db
def test_amortization_uses_cost_capitalized_in_earlier_periods():
    dev = add_developer("Dana Dev", salary=8000)
    proj = add_project("Mobile", epic_key="MOB", life=10)
    add_ticket("MOB-1", dev, proj, 5, resolved=datetime(2025, 1, 10))
    generate_period_entries(2025, 1)
    assert _accumulated(proj) == Decimal("10000.00")

    update(Project, proj, status="LIVE", launch_date=date(2025, 1, 20))
    out = generate_period_entries(2025, 2)
    assert out["total_amortization"] == 1000.0

    # dev/planning projects and LIVE ones without a launch date never amortize
    add_project("Not Launched", epic_key="NL", status="LIVE", starting_balance=5000)
    add_project("Planning", epic_key="PLN", status="PLANNING",
                launch_date=date(2024, 1, 1), starting_balance=5000)
    assert generate_period_entries(2025, 2)["total_amortization"] == 1000.0


@pytest.mark.db
def test_failure_rolls_back_and_keeps_prior_state():
    scenario_12500()
    live = add_project("Ledger v1", epic_key="LV1", status="LIVE",
                       launch_date=date(2025, 1, 15), starting_balance=90000)
    generate_period_entries(2025, 3)
    before = entries_for(2025, 3)
    assert len(before) == 3

    update(Project, live, amortization_months=0)
    with pytest.raises(InvariantViolation):
        generate_period_entries(2025, 3)

    assert entries_for(2025, 3) == before
    p = get_period(2025, 3)
    assert Decimal(p.total_amortization) == Decimal("2500.00")

    with session_scope() as s:
        actions = s.execute(select(AuditLog.action, AuditLog.outcome)
                            .order_by(AuditLog.id)).all()
    assert ("ledger.generate.failed", "failure") in actions


@pytest.mark.db
def test_closed_period_refuses_regeneration_until_reopened():
    dev, proj = scenario_12500()
    generate_period_entries(2025, 3)
    close_period(2025, 3, actor="cfo")
    assert get_period(2025, 3).closed_by == "cfo"

    add_ticket("PAY-3", dev, proj, 10)
    with pytest.raises(PeriodClosed):
        generate_period_entries(2025, 3)
    assert len(entries_for(2025, 3)) == 2

    reopen_period(2025, 3, actor="cfo")
    p = get_period(2025, 3)
    assert p.status == "OPEN" and p.closed_at is None
    out = generate_period_entries(2025, 3)
    assert out["total_capitalized"] == pytest.approx(12500 * 18 / 20)


@pytest.mark.db
def test_closing_unknown_period_creates_it_closed_and_second_close_is_noop():
    first = close_period(2024, 12, actor="cfo")
    assert first["status"] == "CLOSED"
    again = close_period(2024, 12, actor="cfo")
    assert again["id"] == first["id"]
    with pytest.raises(PeriodClosed):
        generate_period_entries(2024, 12)


@pytest.mark.parametrize("year,month", [(2025, 0), (2025, 13), (0, 3), (-1, 3),
                                        (None, 3), (2025, None), ("x", 3),
                                        (9999, 12), (10000, 1)])
@pytest.mark.db
def test_invalid_period_rejected_before_any_work(year, month):
    with pytest.raises(InvalidInput):
        generate_period_entries(year, month)
    assert get_period(2025, 3) is None


@pytest.mark.db
def test_success_is_audited_with_totals():
    scenario_12500()
    generate_period_entries(2025, 3, actor="ops")
    with session_scope() as s:
        row = s.execute(select(AuditLog).where(AuditLog.action == "ledger.generate")).scalars().one()
        assert row.actor == "ops"
        assert row.target_id == "2025-03"
        assert row.extra["totals"]["total_capitalized"] == 10000.0


@pytest.mark.db
def test_audit_trail_rows_cascade_with_entries():
    scenario_12500()
    generate_period_entries(2025, 3)
    generate_period_entries(2025, 3)
    with session_scope() as s:
        n_trails = len(s.execute(select(AuditTrail)).scalars().all())
        n_entries = len(s.execute(select(JournalEntry)).scalars().all())
    assert (n_entries, n_trails) == (2, 2)


def test_period_lock_is_shared_per_period():
    assert _period_lock(2025, 3) is _period_lock(2025, 3)
    assert _period_lock(2025, 3) is not _period_lock(2025, 4)


@pytest.mark.db
def test_concurrent_generations_of_one_period_serialize():
    _dev, proj = scenario_12500()
    errors = []

    def run():
        try:
            generate_period_entries(2025, 3, actor="worker")
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    entries = entries_for(2025, 3)
    assert sorted(e["type"] for e in entries) == ["CAPITALIZATION", "EXPENSE"]
    assert sum(len(e["trails"]) for e in entries) == 2
    assert _accumulated(proj) == Decimal("10000.00")
    with session_scope() as s:
        runs = s.execute(select(AuditLog).where(AuditLog.action == "ledger.generate")).scalars().all()
    assert len(runs) == 4
    assert verify_chain()["ok"] is True


def test_accumulated_cost_recompute_locks_project_rows():
    sql = str(_project_rows_for_update().compile(dialect=postgresql.dialect()))
    assert "FOR NO KEY UPDATE" in sql


@pytest.mark.db
def test_accumulated_cost_recompute_rereads_project_rows():
    _dev, proj = scenario_12500()
    generate_period_entries(2025, 3)
    with session_scope() as s:
        held = s.get(Project, proj)
        assert Decimal(held.accumulated_cost) == Decimal("10000.00")
        # another writer changes the row after this session loaded it
        update(Project, proj, accumulated_cost=Decimal("1.00"))
        _recompute_accumulated_costs(s)
    assert _accumulated(proj) == Decimal("10000.00")
