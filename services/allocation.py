# services/allocation.py
"""
Period cost allocation.

Each active developer's fully loaded monthly cost is split between
capitalized and expensed work in proportion to the story points of the
tickets they resolved in the period. A ticket is capitalizable only when it
is a STORY on a capitalizable project that is still in development.

The result also carries, per developer and per (project, treatment) group,
the tickets that produced the numbers. The journal generator uses those
groups for both its capitalization and expense passes, so the dollars and the
audit rows come from the same snapshot.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.config_store import read_config
from models.schema import Developer, Project, Ticket
from services.datetimex import month_window
from services.errors import InvariantViolation


# ---------- config snapshot ----------

@dataclass(frozen=True)
class AllocationConfig:
    fringe_benefit_rate: float = 0.25
    default_amortization_life: int = 36
    capitalization_threshold: float = 0.0


def load_allocation_config(s: Session) -> AllocationConfig:
    cfg = read_config(s)
    try:
        return AllocationConfig(
            fringe_benefit_rate=float(cfg["FRINGE_BENEFIT_RATE"]),
            default_amortization_life=int(float(cfg["DEFAULT_AMORTIZATION_LIFE"])),
            capitalization_threshold=float(cfg["CAPITALIZATION_THRESHOLD"]),
        )
    except (TypeError, ValueError) as e:
        raise InvariantViolation(f"global config is not numeric: {e}")


# ---------- result types ----------

@dataclass(frozen=True)
class TicketAllocation:
    ticket_pk: int
    ticket_id: str
    issue_type: str
    story_points: int


@dataclass
class ProjectShare:
    project_id: int
    project_name: str
    is_capitalizable: bool
    points: int = 0
    # capitalizable groups: points / total_points * loaded_cost; expense groups: 0
    amount: float = 0.0
    tickets: List[TicketAllocation] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "project_name": self.project_name,
            "is_capitalizable": self.is_capitalizable,
            "points": self.points,
            "amount": self.amount,
            "tickets": [t.ticket_id for t in self.tickets],
        }


@dataclass
class PeriodCostResult:
    developer_id: int
    developer_name: str
    total_points: int
    cap_points: int
    exp_points: int
    cap_ratio: float
    loaded_cost: float
    capitalized_amount: float
    expensed_amount: float
    project_breakdown: List[ProjectShare] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "developer_id": self.developer_id,
            "developer_name": self.developer_name,
            "total_points": self.total_points,
            "cap_points": self.cap_points,
            "exp_points": self.exp_points,
            "cap_ratio": self.cap_ratio,
            "loaded_cost": self.loaded_cost,
            "capitalized_amount": self.capitalized_amount,
            "expensed_amount": self.expensed_amount,
            "project_breakdown": [p.as_dict() for p in self.project_breakdown],
        }


# ---------- rules ----------

def is_capitalizable(issue_type: str, project_is_capitalizable: bool, project_status: str) -> bool:
    return (
        (issue_type or "").upper() == "STORY"
        and bool(project_is_capitalizable)
        and (project_status or "").upper() == "DEV"
    )


def loaded_cost(monthly_salary, fringe_benefit_rate, stock_comp_allocation,
                default_fringe_rate: float) -> float:
    """salary * (1 + fringe) + stock. A developer rate of 0 is a real rate, only None falls back."""
    salary = float(monthly_salary or 0)
    fringe = default_fringe_rate if fringe_benefit_rate is None else float(
        fringe_benefit_rate)
    return salary * (1.0 + fringe) + float(stock_comp_allocation or 0)


def allocate_developer(dev: Developer, tickets: Iterable[Ticket],
                       config: AllocationConfig) -> Optional[PeriodCostResult]:
    """
    Allocate one developer's loaded cost over their resolved tickets.
    Returns None when there is nothing to allocate (no tickets or zero points).
    Tickets must have their project loaded.
    """
    tickets = list(tickets)
    if not tickets:
        return None
    total_points = sum(int(t.story_points or 0) for t in tickets)
    if total_points == 0:
        return None

    groups: Dict[Tuple[int, bool], ProjectShare] = {}
    cap_points = 0
    exp_points = 0
    for t in tickets:
        p = t.project
        cap = is_capitalizable(t.issue_type, p.is_capitalizable, p.status)
        pts = int(t.story_points or 0)
        if cap:
            cap_points += pts
        else:
            exp_points += pts

        share = groups.get((p.id, cap))
        if share is None:
            share = groups[(p.id, cap)] = ProjectShare(
                project_id=p.id, project_name=p.name, is_capitalizable=cap)
        share.points += pts
        share.tickets.append(TicketAllocation(
            ticket_pk=t.id, ticket_id=t.ticket_id,
            issue_type=t.issue_type, story_points=pts))

    cap_ratio = cap_points / total_points
    loaded = loaded_cost(dev.monthly_salary, dev.fringe_benefit_rate,
                         dev.stock_comp_allocation, config.fringe_benefit_rate)

    breakdown = list(groups.values())
    for share in breakdown:
        share.amount = (share.points / total_points) * loaded if share.is_capitalizable else 0.0

    return PeriodCostResult(
        developer_id=dev.id,
        developer_name=dev.name,
        total_points=total_points,
        cap_points=cap_points,
        exp_points=exp_points,
        cap_ratio=cap_ratio,
        loaded_cost=loaded,
        capitalized_amount=loaded * cap_ratio,
        expensed_amount=loaded * (1 - cap_ratio),
        project_breakdown=breakdown,
    )


# ---------- period run ----------

def calculate_period_costs(s: Session, year: int, month: int,
                           config: AllocationConfig) -> List[PeriodCostResult]:
    """
    One PeriodCostResult per active developer with points in the period,
    ordered by developer id. Tickets are those resolved in
    [first of month, first of next month).
    """
    start, end = month_window(year, month)
    tickets = s.execute(
        select(Ticket)
        .where(Ticket.resolution_date.is_not(None),
               Ticket.resolution_date >= start,
               Ticket.resolution_date < end,
               Ticket.assignee_id.is_not(None))
        .options(selectinload(Ticket.assignee), selectinload(Ticket.project))
        .order_by(Ticket.id)
    ).scalars().all()

    by_dev: Dict[int, List[Ticket]] = {}
    devs: Dict[int, Developer] = {}
    for t in tickets:
        if t.assignee is None:
            raise InvariantViolation(
                f"ticket {t.ticket_id} references missing developer {t.assignee_id}")
        if t.project is None:
            raise InvariantViolation(
                f"ticket {t.ticket_id} has no project")
        if not t.assignee.is_active:
            continue
        devs[t.assignee_id] = t.assignee
        by_dev.setdefault(t.assignee_id, []).append(t)

    results: List[PeriodCostResult] = []
    for dev_id in sorted(by_dev):
        r = allocate_developer(devs[dev_id], by_dev[dev_id], config)
        if r is not None:
            results.append(r)
    return results
