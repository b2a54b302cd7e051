# controllers/accounting.py
from flask import Blueprint, Response, request, jsonify

from services.accounting_export import build_journal_csv, build_period_csv
from services.datetimex import parse_date
from services.errors import InvalidInput
from services.journal_generator import (
    close_period, generate_period_entries, reopen_period
)
from services.metrics import CSV_DOWNLOADS
from services.reconciliation import (
    get_entry_audit_detail, list_periods_with_entries, payroll_tie_out, run_report
)

accounting_bp = Blueprint("accounting", __name__, url_prefix="/api")


def current_actor() -> str:
    return (request.headers.get("X-Actor") or "").strip() or "system"


@accounting_bp.get("/accounting")
def list_periods():
    return jsonify(list_periods_with_entries())


@accounting_bp.post("/accounting")
def generate():
    payload = request.get_json(force=True, silent=True) or {}
    totals = generate_period_entries(
        payload.get("year"), payload.get("month"), actor=current_actor())
    return jsonify({"message": "Journal entries generated", **totals})


@accounting_bp.get("/accounting/<int:entry_id>")
def entry_detail(entry_id: int):
    return jsonify(get_entry_audit_detail(entry_id))


@accounting_bp.get("/accounting/payroll-audit")
def payroll_audit():
    return jsonify(payroll_tie_out(request.args.get("year"), request.args.get("month")))


@accounting_bp.get("/accounting/export")
def export_period():
    fname, csv_text = build_period_csv(
        request.args.get("year"), request.args.get("month"))
    CSV_DOWNLOADS.labels(kind="period_audit").inc()
    return Response(csv_text, mimetype="text/csv",
                    headers={"Content-Disposition": f'attachment; filename="{fname}"'})


@accounting_bp.get("/accounting/journal.csv")
def export_journal():
    fname, csv_text = build_journal_csv(
        request.args.get("year"), request.args.get("month"))
    CSV_DOWNLOADS.labels(kind="period_journal").inc()
    return Response(csv_text, mimetype="text/csv",
                    headers={"Content-Disposition": f'attachment; filename="{fname}"'})


@accounting_bp.post("/accounting/periods/<int:year>/<int:month>/close")
def close(year: int, month: int):
    return jsonify(close_period(year, month, actor=current_actor()))


@accounting_bp.post("/accounting/periods/<int:year>/<int:month>/reopen")
def reopen(year: int, month: int):
    return jsonify(reopen_period(year, month, actor=current_actor()))


@accounting_bp.get("/reports/<slug>")
def report(slug: str):
    as_of = None
    raw = (request.args.get("as_of") or "").strip()
    if raw:
        as_of = parse_date(raw)
        if as_of is None:
            raise InvalidInput("as_of must be a date (YYYY-MM-DD)")
    return jsonify(run_report(slug, as_of))
