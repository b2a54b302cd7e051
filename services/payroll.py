# services/payroll.py
from __future__ import annotations
import logging
import re
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Dict, Iterable, List

import pandas as pd
from sqlalchemy import func, select

from models.audit_store import audit
from models.base import session_scope
from models.schema import Developer, PayrollEntry, PayrollImport
from services.accounting import money, to_cents
from services.datetimex import parse_date
from services.errors import InvalidInput
from services.metrics import PAYROLL_ROWS

log = logging.getLogger(__name__)

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _norm_key(k) -> str:
    """'monthlySalary', 'Monthly Salary' and 'monthly_salary' all become 'monthly_salary'."""
    k = str(k).strip()
    if " " not in k and "_" not in k and not k.isupper():
        k = _CAMEL.sub("_", k)
    return re.sub(r"[\s\-]+", "_", k).lower()


def _norm_rows(rows: Iterable[dict]) -> List[dict]:
    return [{_norm_key(k): v for k, v in (r or {}).items()} for r in rows]


def parse_payroll_csv(text: str) -> List[dict]:
    """CSV text → list of row dicts with normalized column names; values stay strings."""
    if not (text or "").strip():
        raise InvalidInput("empty CSV")
    try:
        df = pd.read_csv(StringIO(text), dtype=str, keep_default_na=False)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise InvalidInput(f"unreadable CSV: {e}")
    df.columns = [_norm_key(c) for c in df.columns]
    df = df.apply(lambda col: col.str.strip())
    return df.to_dict(orient="records")


def _amount(v, field: str) -> Decimal | None:
    if v is None or (isinstance(v, str) and not v.strip()):
        return None
    try:
        d = Decimal(str(v).replace(",", "").strip())
    except InvalidOperation:
        raise InvalidInput(f"{field} must be numeric, got {v!r}")
    if not d.is_finite() or d < 0:
        raise InvalidInput(f"{field} must be a non-negative number")
    return to_cents(d)


def apply_payroll_upload(rows: Iterable[dict], actor: str | None = None) -> dict:
    """
    Update developer salary, stock comp and name by email. Blank fields are left
    alone; rows without an email or with an unknown email are skipped.
    """
    rows = _norm_rows(rows or [])
    if not rows:
        raise InvalidInput("No data provided")

    # validate everything before touching the database
    changes = []
    for r in rows:
        changes.append((
            str(r.get("email") or "").strip().lower(),
            _amount(r.get("monthly_salary"), "monthly_salary"),
            _amount(r.get("stock_comp_allocation"), "stock_comp_allocation"),
            str(r.get("name") or "").strip(),
        ))

    updated = skipped = 0
    with session_scope() as s:
        for email, salary, stock, name in changes:
            if not email:
                skipped += 1
                continue
            dev = s.execute(
                select(Developer).where(func.lower(Developer.email) == email)
            ).scalars().one_or_none()
            if dev is None:
                skipped += 1
                continue
            if salary is not None:
                dev.monthly_salary = salary
            if stock is not None:
                dev.stock_comp_allocation = stock
            if name:
                dev.name = name
            s.add(dev)
            updated += 1

    PAYROLL_ROWS.labels(kind="upload", outcome="applied").inc(updated)
    PAYROLL_ROWS.labels(kind="upload", outcome="skipped").inc(skipped)
    log.info("payroll upload: updated=%s skipped=%s", updated, skipped)
    audit("payroll.upload", target_type="developers", target_id=None,
          outcome="success", status=200, actor=actor,
          extra={"count": updated, "skipped": skipped})
    return {"message": f"Updated {updated} developers", "count": updated, "skipped": skipped}


def record_payroll_import(label: str, pay_date, rows: Iterable[dict],
                          actor: str | None = None) -> dict:
    """
    Store one payroll register import. Rows carry `email` (or `developer_id`)
    and `gross_salary`; repeated developers within an import are summed.
    """
    label = (label or "").strip()
    if not label:
        raise InvalidInput("label is required")
    pd_date = parse_date(str(pay_date)) if pay_date else None
    if pd_date is None:
        raise InvalidInput("pay_date is required (YYYY-MM-DD)")

    rows = _norm_rows(rows or [])
    if not rows:
        raise InvalidInput("No data provided")

    skipped = 0
    with session_scope() as s:
        by_email = {d.email.lower(): d.id for d in s.execute(select(Developer)).scalars().all()}
        known_ids = set(by_email.values())

        gross: Dict[int, Decimal] = {}
        for r in rows:
            amt = _amount(r.get("gross_salary"), "gross_salary")
            dev_id = None
            if r.get("developer_id") not in (None, ""):
                try:
                    dev_id = int(r["developer_id"])
                except (TypeError, ValueError):
                    raise InvalidInput(f"developer_id must be an integer, got {r['developer_id']!r}")
                if dev_id not in known_ids:
                    dev_id = None
            elif r.get("email"):
                dev_id = by_email.get(str(r["email"]).strip().lower())
            if dev_id is None or amt is None:
                skipped += 1
                continue
            gross[dev_id] = gross.get(dev_id, Decimal("0")) + amt

        imp = PayrollImport(label=label, pay_date=pd_date, year=pd_date.year)
        s.add(imp)
        s.flush()
        for dev_id, amt in sorted(gross.items()):
            s.add(PayrollEntry(import_id=imp.id, developer_id=dev_id, gross_salary=amt))
        s.flush()
        out = {
            "id": imp.id,
            "label": imp.label,
            "pay_date": imp.pay_date.isoformat(),
            "year": imp.year,
            "count": len(gross),
            "skipped": skipped,
            "total_gross": money(sum(gross.values(), Decimal("0"))),
        }

    PAYROLL_ROWS.labels(kind="import", outcome="applied").inc(out["count"])
    PAYROLL_ROWS.labels(kind="import", outcome="skipped").inc(skipped)
    audit("payroll.import", target_type="payroll_import", target_id=str(out["id"]),
          outcome="success", status=201, actor=actor,
          extra={"count": out["count"], "skipped": skipped, "note": label})
    return out
