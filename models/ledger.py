# models/ledger.py
from __future__ import annotations
import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Integer, Numeric, DateTime, Text, ForeignKey,
    UniqueConstraint, CheckConstraint, Index
)
from models.base import Base


class EntryType(str, enum.Enum):
    CAPITALIZATION = "CAPITALIZATION"
    EXPENSE = "EXPENSE"
    AMORTIZATION = "AMORTIZATION"


class AccountingPeriod(Base):
    __tablename__ = "accounting_periods"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)   # 1..12
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="OPEN")  # OPEN|CLOSED

    # running totals; always equal the sum of this period's entries by type
    total_capitalized: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0"))
    total_expensed: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0"))
    total_amortization: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0"))

    opened_at: Mapped[datetime] = mapped_column(DateTime(
        timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    opened_by: Mapped[str | None] = mapped_column(String(64))
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    closed_by: Mapped[str | None] = mapped_column(String(64))
    generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    generated_by: Mapped[str | None] = mapped_column(String(64))

    entries = relationship(
        "JournalEntry", back_populates="period", passive_deletes=True,
        order_by="JournalEntry.id")

    __table_args__ = (
        UniqueConstraint("year", "month", name="uq_period_ym"),
        CheckConstraint("status in ('OPEN','CLOSED')",
                        name="ck_period_status"),
        CheckConstraint("month >= 1 and month <= 12", name="ck_period_month"),
        Index("idx_period_status", "status"),
    )


class JournalEntry(Base):
    __tablename__ = "journal_entries"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    # CAPITALIZATION|EXPENSE|AMORTIZATION
    entry_type: Mapped[str] = mapped_column(String(16), nullable=False)
    debit_account: Mapped[str] = mapped_column(String(64), nullable=False)
    credit_account: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    period_id: Mapped[int] = mapped_column(Integer, ForeignKey(
        "accounting_periods.id", ondelete="CASCADE"), nullable=False)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey(
        "projects.id", ondelete="RESTRICT"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(
        timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    period = relationship("AccountingPeriod", back_populates="entries")
    project = relationship("Project")
    audit_trails = relationship(
        "AuditTrail", back_populates="journal_entry",
        cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        CheckConstraint(
            "entry_type in ('CAPITALIZATION','EXPENSE','AMORTIZATION')",
            name="ck_entry_type"),
        CheckConstraint("amount > 0", name="ck_entry_amount_gt_0"),
        Index("idx_entries_period", "period_id"),
        Index("idx_entries_project_type", "project_id", "entry_type"),
    )


class AuditTrail(Base):
    __tablename__ = "audit_trails"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    journal_entry_id: Mapped[int] = mapped_column(Integer, ForeignKey(
        "journal_entries.id", ondelete="CASCADE"), nullable=False)
    ticket_pk: Mapped[int] = mapped_column(Integer, ForeignKey(
        "tickets.id", ondelete="RESTRICT"), nullable=False)

    # snapshots taken at generation time
    developer_name: Mapped[str] = mapped_column(String(128), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False)

    journal_entry = relationship("JournalEntry", back_populates="audit_trails")
    ticket = relationship("Ticket")

    __table_args__ = (
        CheckConstraint("allocated_amount >= 0", name="ck_trail_amount_ge_0"),
        Index("idx_trails_entry", "journal_entry_id"),
    )
