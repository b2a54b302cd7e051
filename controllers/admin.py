# controllers/admin.py
from flask import Blueprint, Response, request, jsonify

from controllers.accounting import current_actor
from models.audit_store import audit, export_csv, list_audit, verify_chain
from models.config_store import list_config, save_config_value
from services.errors import InvalidInput
from services.metrics import CSV_DOWNLOADS
from services.payroll import apply_payroll_upload, parse_payroll_csv, record_payroll_import
from services.reconciliation import payroll_register

admin_bp = Blueprint("admin", __name__, url_prefix="/api")


def _rows_from_request() -> tuple[list, dict]:
    """
    Payroll rows from either a multipart CSV upload (field `file`), a raw
    text/csv body, or JSON {"data": [...]}. Returns (rows, other_fields).
    """
    f = request.files.get("file")
    if f is not None:
        text = f.read().decode("utf-8-sig", errors="replace")
        return parse_payroll_csv(text), request.form.to_dict()
    if (request.mimetype or "") == "text/csv":
        return parse_payroll_csv(request.get_data(as_text=True)), request.args.to_dict()

    payload = request.get_json(force=True, silent=True) or {}
    data = payload.get("data")
    if not isinstance(data, list):
        raise InvalidInput("No data provided")
    return data, payload


# ---- Global config ----

@admin_bp.get("/admin/config")
def get_config():
    return jsonify({"configs": list_config()})


@admin_bp.put("/admin/config")
def put_config():
    payload = request.get_json(force=True, silent=True) or {}
    key = payload.get("key")
    try:
        old, new = save_config_value(key, payload.get("value"))
    except KeyError:
        audit("config.update", target_type="config", target_id=str(key),
              outcome="failure", status=400, error_code="unknown_key",
              actor=current_actor())
        return jsonify({"error": f"unknown config key '{key}'"}), 400
    except ValueError as e:
        audit("config.update", target_type="config", target_id=str(key),
              outcome="failure", status=400, error_code="invalid_value",
              extra={"reason": str(e)}, actor=current_actor())
        return jsonify({"error": str(e)}), 400

    audit("config.update", target_type="config", target_id=str(key).upper(),
          outcome="success" if old != new else "noop", status=200,
          extra={"old": old, "new": new}, actor=current_actor())
    return jsonify({"success": True, "key": str(key).upper(), "old": old, "value": new})


# ---- Payroll integrations ----

@admin_bp.post("/integrations/payroll-upload")
def payroll_upload():
    rows, _fields = _rows_from_request()
    return jsonify(apply_payroll_upload(rows, actor=current_actor()))


@admin_bp.post("/integrations/payroll-import")
def payroll_import():
    rows, fields = _rows_from_request()
    out = record_payroll_import(fields.get("label"), fields.get("pay_date"), rows,
                                actor=current_actor())
    return jsonify(out), 201


@admin_bp.get("/integrations/payroll-register")
def get_payroll_register():
    return jsonify(payroll_register())


# ---- Operator audit log ----

@admin_bp.get("/admin/audit")
def audit_list():
    limit = request.args.get("limit", default=200, type=int)
    return jsonify({"rows": list_audit(limit=max(1, min(limit, 1000)))})


@admin_bp.get("/admin/audit.csv")
def audit_csv():
    fname, csv_text = export_csv()
    CSV_DOWNLOADS.labels(kind="audit").inc()
    audit("export.audit_csv", target_type="scope",
          target_id="admin", outcome="success", status=200, actor=current_actor())
    return Response(csv_text, mimetype="text/csv",
                    headers={"Content-Disposition": f"attachment; filename={fname}"})


@admin_bp.get("/admin/audit/verify")
def audit_verify():
    # optional ?limit= param for quick checks
    limit = request.args.get("limit", type=int)
    result = verify_chain(limit=limit)
    status = 200 if result.get("ok") else 409
    audit(
        "audit.verify_chain",
        target_type="scope", target_id="admin",
        outcome="success" if result.get("ok") else "failure",
        status=status,
        extra={"count": int(result.get("checked", 0)),
               "reason": result.get("reason")},
        actor=current_actor(),
    )
    return jsonify(result), status
