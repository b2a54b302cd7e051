# models/audit_store.py
import os
import json
import hmac
import hashlib
import threading
from typing import Any, Optional
from flask import request, has_request_context, g
from sqlalchemy import select, asc
from models.base import session_scope
from models.schema import AuditLog
from services.datetimex import now_utc, to_iso_z

APP_SECRET = (os.getenv("AUDIT_HMAC_SECRET") or "secret-key").encode("utf-8")
SIGNING_KEY_ID = os.getenv("AUDIT_HMAC_KEY_ID", "k1")
SCHEMA_VERSION = 1

_ALLOWED_EXTRA_KEYS = {"reason", "note", "count", "skipped", "totals",
                       "entries", "period", "old", "new"}

# one appender at a time in this process so two rows never share a prev_hash
_append_lock = threading.Lock()


def _load_keyring() -> dict[str, bytes]:
    ring: dict[str, bytes] = {}
    # Optional ring for rotated keys: "k0=oldsecret,k1=newsecret"
    cfg = os.getenv("AUDIT_HMAC_KEYRING", "")
    if cfg:
        for part in cfg.split(","):
            part = part.strip()
            if not part or "=" not in part:
                continue
            kid, sec = part.split("=", 1)
            ring[kid.strip()] = sec.strip().encode("utf-8")
    ring[SIGNING_KEY_ID] = APP_SECRET
    return ring


def _payload_from_row(r: AuditLog) -> dict:
    return {
        "ts": r.ts,
        "actor": r.actor,
        "request_id": r.request_id,
        "method": r.method,
        "path": r.path,
        "action": r.action,
        "target_type": r.target_type,
        "target_id": r.target_id,
        "outcome": r.outcome,
        "status": r.status,
        "error_code": r.error_code,
        "extra": r.extra or {},
        "schema_version": r.schema_version or SCHEMA_VERSION,
        "key_id": r.key_id,
    }


def _compute_hash(prev_hash: str, payload: dict) -> str:
    s = prev_hash + json.dumps(payload, separators=(",", ":"),
                               sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _sign(h: str, key: bytes = APP_SECRET) -> str:
    return hmac.new(key, h.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_chain(limit: Optional[int] = None) -> dict:
    """
    Walk the log oldest → newest and recompute every link.
    Returns {"ok", "checked", "last_ok_id", "first_bad_id", "reason"}.
    """
    ring = _load_keyring()
    prev = ""
    checked = 0
    last_ok = None

    def _bad(row_id: int, reason: str) -> dict:
        return {"ok": False, "checked": checked, "last_ok_id": last_ok,
                "first_bad_id": row_id, "reason": reason}

    with session_scope() as s:
        stmt = select(AuditLog).order_by(asc(AuditLog.id))
        if limit:
            stmt = stmt.limit(int(limit))
        for r in s.execute(stmt).scalars().all():
            if (r.prev_hash or "") != prev:
                return _bad(r.id, "prev_hash_mismatch")
            exp_hash = _compute_hash(prev, _payload_from_row(r))
            if r.hash != exp_hash:
                return _bad(r.id, "hash_mismatch")
            key = ring.get(r.key_id or SIGNING_KEY_ID)
            if not key:
                return _bad(r.id, f"missing_key:{r.key_id}")
            if r.signature != _sign(exp_hash, key):
                return _bad(r.id, "signature_mismatch")
            checked += 1
            last_ok = r.id
            prev = r.hash or ""

    return {"ok": True, "checked": checked, "last_ok_id": last_ok,
            "first_bad_id": None, "reason": None}


def _clean_extra(extra: Optional[dict[str, Any]]) -> dict:
    if not extra:
        return {}
    out = {}
    for k, v in extra.items():
        if k not in _ALLOWED_EXTRA_KEYS:
            continue
        if isinstance(v, str) and len(v) > 512:
            v = v[:512] + "…"
        out[k] = v
    return out


def audit(
    action: str,
    *,
    target_type: str | None = None,
    target_id: str | None = None,
    outcome: str | None = None,            # 'success'|'failure'|'blocked'|'noop'
    status: int | None = None,
    error_code: str | None = None,
    extra: Optional[dict[str, Any]] = None,
    actor: Optional[str] = None
) -> None:
    method = path = req_id = None
    if has_request_context():
        method = request.method
        path = request.path
        req_id = getattr(g, "request_id", None) or request.headers.get(
            "X-Request-ID")
        if actor is None:
            actor = request.headers.get("X-Actor")

    payload = {
        "ts": to_iso_z(now_utc()), "actor": actor or "system",
        "request_id": req_id, "method": method, "path": path,
        "action": action, "target_type": target_type, "target_id": target_id,
        "outcome": outcome, "status": status, "error_code": error_code,
        # round-trip through JSON so the stored value hashes identically
        "extra": json.loads(json.dumps(_clean_extra(extra), default=str)),
        "schema_version": SCHEMA_VERSION,
        "key_id": SIGNING_KEY_ID,
    }

    with _append_lock, session_scope() as s:
        last = s.execute(select(AuditLog.hash).order_by(
            AuditLog.id.desc()).limit(1)).scalar_one_or_none()
        prev = last or ""
        h = _compute_hash(prev, payload)
        s.add(AuditLog(
            ts=payload["ts"], actor=payload["actor"],
            request_id=req_id, method=method, path=path,
            action=action, target_type=target_type, target_id=target_id,
            outcome=outcome, status=status, error_code=error_code,
            extra=payload["extra"],
            prev_hash=prev, hash=h, signature=_sign(h),
            schema_version=SCHEMA_VERSION, key_id=SIGNING_KEY_ID,
        ))


def list_audit(limit: int = 200) -> list[dict]:
    with session_scope() as s:
        rows = s.execute(
            select(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
        ).scalars().all()
        return [
            {
                "id": r.id, "ts": r.ts, "actor": r.actor,
                "action": r.action,
                "target": f"{r.target_type}:{r.target_id}" if (r.target_type or r.target_id) else None,
                "outcome": r.outcome, "status": r.status,
                "error_code": r.error_code, "extra": r.extra,
            }
            for r in rows
        ]


def export_csv() -> tuple[str, str]:
    import io
    import csv
    with session_scope() as s:
        rows = s.execute(
            select(AuditLog).order_by(AuditLog.id.desc())
        ).scalars().all()
        data = [(
            r.id, r.ts, r.actor, r.method, r.path, r.action,
            r.target_type, r.target_id, r.status, r.outcome, r.error_code,
            r.request_id, json.dumps(r.extra or {}, sort_keys=True),
            r.schema_version, r.prev_hash, r.hash, r.signature, r.key_id,
        ) for r in rows]

    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(["id", "ts", "actor", "method", "path", "action",
                "target_type", "target_id", "status", "outcome", "error_code",
                "request_id", "extra", "schema_version", "prev_hash", "hash",
                "signature", "key_id"])
    w.writerows(data)
    return "audit_log.csv", out.getvalue()
