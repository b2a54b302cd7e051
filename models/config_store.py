# models/config_store.py
from __future__ import annotations
from decimal import Decimal, InvalidOperation
from sqlalchemy import select
from sqlalchemy.orm import Session
from models.base import session_scope
from models.schema import GlobalConfig
from services.datetimex import now_utc

DEFAULT_CONFIG = {
    "FRINGE_BENEFIT_RATE": ("0.25", "Fringe Benefit Rate (multiplier on salary)"),
    "DEFAULT_AMORTIZATION_LIFE": ("36", "Default Amortization Life (months)"),
    "CAPITALIZATION_THRESHOLD": ("0", "Capitalization Threshold Override ($)"),
}


def _D(x) -> Decimal:
    # safe conversion avoiding float binary artifacts
    return x if isinstance(x, Decimal) else Decimal(str(x))


def _seed_missing(s: Session) -> None:
    existing = {c.key for c in s.execute(select(GlobalConfig)).scalars().all()}
    for key, (value, label) in DEFAULT_CONFIG.items():
        if key not in existing:
            s.add(GlobalConfig(key=key, value=value, label=label,
                               updated_at=now_utc()))
    s.flush()


def read_config(s: Session) -> dict[str, str]:
    """Key → raw string value, defaults filled in for anything missing."""
    out = {k: v for k, (v, _label) in DEFAULT_CONFIG.items()}
    for c in s.execute(select(GlobalConfig)).scalars().all():
        out[c.key] = c.value
    return out


def list_config() -> list[dict]:
    with session_scope() as s:
        _seed_missing(s)
        rows = s.execute(select(GlobalConfig).order_by(
            GlobalConfig.key)).scalars().all()
        return [
            {"key": c.key, "value": c.value, "label": c.label,
             "updated_at": c.updated_at}
            for c in rows
        ]


def save_config_value(key: str, value) -> tuple[str | None, str]:
    """
    Validate and store one numeric config value.
    Returns (old_value, new_value). Unknown keys raise KeyError,
    non-numeric values raise ValueError.
    """
    key = (key or "").strip().upper()
    if key not in DEFAULT_CONFIG:
        raise KeyError(key)
    try:
        num = _D(value)
    except (InvalidOperation, ValueError):
        raise ValueError(f"{key} must be numeric")
    if not num.is_finite() or num < 0:
        raise ValueError(f"{key} must be a non-negative number")
    if key == "DEFAULT_AMORTIZATION_LIFE" and (num <= 0 or num != num.to_integral_value()):
        raise ValueError(f"{key} must be a positive whole number of months")

    new_val = str(num)
    with session_scope() as s:
        obj = s.get(GlobalConfig, key)
        old = obj.value if obj else None
        if not obj:
            obj = GlobalConfig(key=key, value=new_val,
                               label=DEFAULT_CONFIG[key][1], updated_at=now_utc())
        else:
            obj.value = new_val
            obj.updated_at = now_utc()
        s.add(obj)
    return old, new_val
