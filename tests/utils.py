# tests/utils.py
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select

from models.base import session_scope
from models.ledger import AccountingPeriod, AuditTrail, JournalEntry
from models.schema import Developer, Project, Ticket

MARCH = datetime(2025, 3, 10, 12, 0)


def add_developer(name="Dana Dev", email=None, salary=10000, fringe=None,
                  stock=0, active=True, role="ENG") -> int:
    with session_scope() as s:
        d = Developer(
            name=name,
            email=email or f"{name.lower().replace(' ', '.')}@example.com",
            role=role,
            monthly_salary=Decimal(str(salary)),
            fringe_benefit_rate=None if fringe is None else Decimal(str(fringe)),
            stock_comp_allocation=Decimal(str(stock)),
            is_active=active,
        )
        s.add(d)
        s.flush()
        return d.id


def add_project(name="Payments", epic_key=None, status="DEV", capitalizable=True,
                launch_date=None, life=36, starting_balance=0,
                starting_amortization=0) -> int:
    with session_scope() as s:
        p = Project(
            name=name,
            epic_key=epic_key or name.upper().replace(" ", "-"),
            status=status,
            is_capitalizable=capitalizable,
            start_date=date(2024, 1, 1),
            launch_date=launch_date,
            amortization_months=life,
            starting_balance=Decimal(str(starting_balance)),
            starting_amortization=Decimal(str(starting_amortization)),
        )
        s.add(p)
        s.flush()
        return p.id


def add_ticket(key, dev_id, project_id, points, issue_type="STORY",
               resolved=MARCH, summary=None) -> int:
    with session_scope() as s:
        t = Ticket(
            ticket_id=key,
            issue_type=issue_type,
            summary=summary or f"{issue_type.title()} {key}",
            story_points=points,
            resolution_date=resolved,
            assignee_id=dev_id,
            project_id=project_id,
        )
        s.add(t)
        s.flush()
        return t.id


def update(model, pk, **fields) -> None:
    with session_scope() as s:
        obj = s.get(model, pk)
        for k, v in fields.items():
            setattr(obj, k, v)


def entries_for(year, month) -> list[dict]:
    with session_scope() as s:
        rows = s.execute(
            select(JournalEntry)
            .join(AccountingPeriod, JournalEntry.period_id == AccountingPeriod.id)
            .where(AccountingPeriod.year == year, AccountingPeriod.month == month)
            .order_by(JournalEntry.id)
        ).scalars().all()
        return [
            {
                "id": e.id, "type": e.entry_type, "project_id": e.project_id,
                "amount": Decimal(e.amount), "debit": e.debit_account,
                "credit": e.credit_account,
                "trails": [
                    (t.developer_name, t.ticket_id, Decimal(t.allocated_amount))
                    for t in s.execute(
                        select(AuditTrail)
                        .where(AuditTrail.journal_entry_id == e.id)
                        .order_by(AuditTrail.id)
                    ).scalars().all()
                ],
            }
            for e in rows
        ]


def get_period(year, month) -> AccountingPeriod | None:
    with session_scope() as s:
        return s.execute(
            select(AccountingPeriod)
            .where(AccountingPeriod.year == year, AccountingPeriod.month == month)
        ).scalars().one_or_none()


def scenario_12500():
    """One developer, loaded cost 12,500: an 8pt story and a 2pt bug on a capitalizable DEV project."""
    dev = add_developer("Dana Dev", salary=10000)
    proj = add_project("Payments Platform", epic_key="PAY")
    add_ticket("PAY-1", dev, proj, 8, "STORY")
    add_ticket("PAY-2", dev, proj, 2, "BUG")
    return dev, proj
