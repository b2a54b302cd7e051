# tests/test_period_costs.py
from datetime import datetime
from decimal import Decimal

import pytest

from models.base import session_scope
from models.schema import GlobalConfig, Ticket
from services.allocation import (
    AllocationConfig, calculate_period_costs, load_allocation_config
)
from services.errors import InvariantViolation
from utils import add_developer, add_project, add_ticket, scenario_12500, update

CFG = AllocationConfig()


def _run(year=2025, month=3, cfg=CFG):
    with session_scope() as s:
        return calculate_period_costs(s, year, month, cfg)


@pytest.mark.db
def test_end_to_end_developer_split():
    dev, proj = scenario_12500()
    [r] = _run()
    assert r.developer_id == dev
    assert r.total_points == 10
    assert r.cap_ratio == pytest.approx(0.8)
    assert r.loaded_cost == pytest.approx(12500)
    assert r.capitalized_amount == pytest.approx(10000)
    assert r.expensed_amount == pytest.approx(2500)


@pytest.mark.db
def test_month_window_is_half_open():
    dev = add_developer()
    proj = add_project()
    add_ticket("W-1", dev, proj, 1, resolved=datetime(2025, 3, 1, 0, 0, 0))
    add_ticket("W-2", dev, proj, 2, resolved=datetime(2025, 3, 31, 23, 59, 59, 500000))
    add_ticket("W-3", dev, proj, 4, resolved=datetime(2025, 4, 1, 0, 0, 0))
    add_ticket("W-4", dev, proj, 8, resolved=datetime(2025, 2, 28, 23, 59, 59))
    add_ticket("W-5", dev, proj, 16, resolved=None)

    [r] = _run()
    assert r.total_points == 3
    keys = sorted(t.ticket_id for g in r.project_breakdown for t in g.tickets)
    assert keys == ["W-1", "W-2"]

    [april] = _run(2025, 4)
    assert april.total_points == 4


@pytest.mark.db
def test_inactive_and_pointless_developers_are_omitted():
    active = add_developer("Active Dev")
    inactive = add_developer("Gone Dev", active=False)
    zero = add_developer("Zero Dev")
    add_developer("Idle Dev")
    proj = add_project()
    add_ticket("A-1", active, proj, 3)
    add_ticket("G-1", inactive, proj, 5)
    add_ticket("Z-1", zero, proj, 0)

    results = _run()
    assert [r.developer_name for r in results] == ["Active Dev"]


@pytest.mark.db
def test_fringe_default_comes_from_config_and_override_wins():
    d1 = add_developer("Default Fringe", salary=8000)
    d2 = add_developer("Own Fringe", salary=8000, fringe="0.10")
    proj = add_project()
    add_ticket("F-1", d1, proj, 1)
    add_ticket("F-2", d2, proj, 1)

    with session_scope() as s:
        s.add(GlobalConfig(key="FRINGE_BENEFIT_RATE", value="0.5"))
    with session_scope() as s:
        cfg = load_allocation_config(s)
    assert cfg.fringe_benefit_rate == 0.5

    by_name = {r.developer_name: r for r in _run(cfg=cfg)}
    assert by_name["Default Fringe"].loaded_cost == pytest.approx(12000)
    assert by_name["Own Fringe"].loaded_cost == pytest.approx(8800)


@pytest.mark.db
def test_point_conservation_over_many_tickets():
    dev = add_developer(salary=7321, stock=250)
    p_dev = add_project("Core", epic_key="CORE")
    p_live = add_project("Legacy", epic_key="LEG", status="LIVE")
    p_opex = add_project("Ops", epic_key="OPS", capitalizable=False)
    for i, (proj, pts, kind) in enumerate([
        (p_dev, 5, "STORY"), (p_dev, 3, "TASK"), (p_live, 8, "STORY"),
        (p_opex, 2, "STORY"), (p_dev, 1, "BUG"), (p_dev, 13, "STORY"),
    ]):
        add_ticket(f"C-{i}", dev, proj, pts, kind)

    [r] = _run()
    assert r.total_points == 32
    assert r.cap_points == 18
    assert r.exp_points == 14
    assert r.capitalized_amount + r.expensed_amount == pytest.approx(r.loaded_cost, abs=1e-6)


@pytest.mark.db
def test_ticket_without_project_fails_the_run():
    dev = add_developer()
    proj = add_project()
    add_ticket("OK-1", dev, proj, 3)
    orphan = add_ticket("ORPHAN-1", dev, proj, 2)
    update(Ticket, orphan, project_id=None)

    with pytest.raises(InvariantViolation):
        _run()


@pytest.mark.db
def test_non_numeric_config_is_an_invariant_violation():
    with session_scope() as s:
        s.add(GlobalConfig(key="FRINGE_BENEFIT_RATE", value="lots"))
    with pytest.raises(InvariantViolation):
        with session_scope() as s:
            load_allocation_config(s)


@pytest.mark.db
def test_stock_comp_is_added_after_fringe():
    dev = add_developer(salary=Decimal("10000"), fringe="0.2", stock=1000)
    proj = add_project()
    add_ticket("S-1", dev, proj, 5)
    [r] = _run()
    assert r.loaded_cost == pytest.approx(13000)
