# models/schema.py
from __future__ import annotations
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text,
    CheckConstraint, UniqueConstraint, Index
)
from models.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEVELOPER_ROLES = ("ENG", "PRODUCT", "DESIGN", "QA")
PROJECT_STATUSES = ("PLANNING", "DEV", "LIVE", "RETIRED")
ISSUE_TYPES = ("STORY", "BUG", "TASK")


# --- PEOPLE / WORK (ingested from payroll + tracker)

class Developer(Base):
    __tablename__ = "developers"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    jira_user_id: Mapped[str | None] = mapped_column(String(64), unique=True)
    role: Mapped[str] = mapped_column(
        String(16), nullable=False, default="ENG")  # ENG|PRODUCT|DESIGN|QA

    # monthly money → NUMERIC
    monthly_salary: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0"))
    # None = use FRINGE_BENEFIT_RATE from global config
    fringe_benefit_rate: Mapped[Decimal | None] = mapped_column(Numeric(6, 4))
    stock_comp_allocation: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0"))

    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("role in ('ENG','PRODUCT','DESIGN','QA')",
                        name="ck_developers_role"),
        CheckConstraint("monthly_salary >= 0", name="ck_developers_salary_ge_0"),
        CheckConstraint("stock_comp_allocation >= 0",
                        name="ck_developers_stock_ge_0"),
        Index("idx_developers_active", "is_active"),
    )


class Project(Base):
    __tablename__ = "projects"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    epic_key: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="PLANNING")  # PLANNING|DEV|LIVE|RETIRED
    is_capitalizable: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False)

    start_date: Mapped[date | None] = mapped_column(Date)
    # amortization starts the month after this; None = not in service
    launch_date: Mapped[date | None] = mapped_column(Date)
    amortization_months: Mapped[int] = mapped_column(
        Integer, nullable=False, default=36)

    # sum of CAPITALIZATION entries, rewritten by every generation run
    accumulated_cost: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0"))
    # legacy opening balances for assets that predate the system
    starting_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0"))
    starting_amortization: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0"))
    override_reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)

    tickets = relationship("Ticket", back_populates="project")

    __table_args__ = (
        CheckConstraint("status in ('PLANNING','DEV','LIVE','RETIRED')",
                        name="ck_projects_status"),
        Index("idx_projects_status", "status"),
    )


class Ticket(Base):
    __tablename__ = "tickets"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True)  # e.g. 'PAY-101'
    issue_type: Mapped[str] = mapped_column(
        String(8), nullable=False)  # STORY|BUG|TASK
    summary: Mapped[str | None] = mapped_column(Text)
    story_points: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0)
    # period-local wall time; None = still open
    resolution_date: Mapped[datetime | None] = mapped_column(DateTime)

    assignee_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("developers.id", ondelete="RESTRICT"))
    project_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="RESTRICT"))

    assignee = relationship("Developer")
    project = relationship("Project", back_populates="tickets")

    __table_args__ = (
        CheckConstraint("issue_type in ('STORY','BUG','TASK')",
                        name="ck_tickets_issue_type"),
        CheckConstraint("story_points >= 0", name="ck_tickets_points_ge_0"),
        Index("idx_tickets_resolution", "resolution_date"),
        Index("idx_tickets_assignee", "assignee_id"),
        Index("idx_tickets_project", "project_id"),
    )


# --- CONFIG

class GlobalConfig(Base):
    __tablename__ = "global_config"
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(256), nullable=False)
    label: Mapped[str | None] = mapped_column(String(256))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)


# --- PAYROLL REGISTER (external gross salary, used by the tie-out)

class PayrollImport(Base):
    __tablename__ = "payroll_imports"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    label: Mapped[str] = mapped_column(String(128), nullable=False)
    pay_date: Mapped[date] = mapped_column(Date, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)

    entries = relationship(
        "PayrollEntry",
        back_populates="payroll_import",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_payroll_imports_pay_date", "pay_date"),
    )


class PayrollEntry(Base):
    __tablename__ = "payroll_entries"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    import_id: Mapped[int] = mapped_column(Integer, ForeignKey(
        "payroll_imports.id", ondelete="CASCADE"), nullable=False)
    developer_id: Mapped[int] = mapped_column(Integer, ForeignKey(
        "developers.id", ondelete="RESTRICT"), nullable=False)
    gross_salary: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False)

    payroll_import = relationship("PayrollImport", back_populates="entries")

    __table_args__ = (
        UniqueConstraint("import_id", "developer_id",
                         name="uq_payroll_entry_dev"),
    )


# --- OPERATOR AUDIT LOG (tamper-evident chain)

class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    ts: Mapped[str] = mapped_column(String(32), nullable=False)  # ISO-8601 Z

    actor: Mapped[str | None] = mapped_column(String(128))
    request_id: Mapped[str | None] = mapped_column(String(64))
    method: Mapped[str | None] = mapped_column(String(8))
    path: Mapped[str | None] = mapped_column(String(512))

    # Event semantics
    action: Mapped[str] = mapped_column(
        String(64), nullable=False)  # controlled vocabulary
    target_type: Mapped[str | None] = mapped_column(String(32))
    target_id: Mapped[str | None] = mapped_column(String(128))
    outcome: Mapped[str | None] = mapped_column(String(16))
    status: Mapped[int | None] = mapped_column(Integer)
    error_code: Mapped[str | None] = mapped_column(String(64))
    extra: Mapped[dict | None] = mapped_column(JSON)

    # Tamper-evident chain
    prev_hash: Mapped[str | None] = mapped_column(String(128))
    hash: Mapped[str | None] = mapped_column(String(128))
    signature: Mapped[str | None] = mapped_column(String(128))
    schema_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1)
    key_id: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "outcome in ('success','failure','blocked','noop') or outcome is null",
            name="ck_audit_outcome"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_target", "target_type", "target_id"),
    )
