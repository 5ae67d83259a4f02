"""
Report routes.

  POST /api/orgs/<slug>/domains/<id>/reports    multipart upload (``files``)
  GET  /api/orgs/<slug>/domains/<id>/reports    paginated aggregate reports
  GET  /api/orgs/<slug>/reports/<id>            one report with its records
  POST /api/orgs/<slug>/domains/<id>/forensic   ARF upload
  GET  /api/orgs/<slug>/domains/<id>/forensic   paginated forensic reports
  GET  /api/orgs/<slug>/forensic/<id>           one forensic report
"""

from __future__ import annotations

import logging
from typing import Any

from flask import jsonify, request
from werkzeug.utils import secure_filename

from dmarc_analyser import db
from dmarc_analyser.analytics.stats import pass_rate
from dmarc_analyser.models import Domain, ForensicReport, Record, Report
from dmarc_analyser.reports import bp
from dmarc_analyser.reports.importer import import_forensic_report, import_report
from dmarc_analyser.reports.parser import REPORT_EXTENSIONS
from dmarc_analyser.utils.audit import log_audit
from dmarc_analyser.utils.auth import org_required
from dmarc_analyser.utils.dates import parse_iso_datetime
from dmarc_analyser.utils.pagination import paginate
from dmarc_analyser.utils.tenant import get_current_org, get_org_domain

logger = logging.getLogger(__name__)

_FORENSIC_EXTENSIONS = (".eml", ".txt", ".msg", ".arf")


def _uploaded_files():
    files = request.files.getlist("files")
    if not files and "file" in request.files:
        files = [request.files["file"]]
    return [f for f in files if f and f.filename]


def _report_totals(report: Report) -> dict[str, Any]:
    total = sum(r.count for r in report.records)
    passed = sum(r.count for r in report.records if r.passed)
    return {
        "recordCount": len(report.records),
        "totalMessages": total,
        "passedMessages": passed,
        "failedMessages": total - passed,
        "passRate": pass_rate(passed, total),
    }


def report_dict(report: Report, *, with_totals: bool = True) -> dict[str, Any]:
    data = {
        "id": report.id,
        "domainId": report.domain_id,
        "reportId": report.report_id,
        "orgName": report.org_name,
        "email": report.email,
        "dateRangeBegin": report.date_range_begin.isoformat(),
        "dateRangeEnd": report.date_range_end.isoformat(),
        "policy": {
            "domain": report.policy_domain,
            "adkim": report.policy_adkim,
            "aspf": report.policy_aspf,
            "p": report.policy_p,
            "sp": report.policy_sp,
            "pct": report.policy_pct,
        },
        "importedAt": report.imported_at.isoformat() if report.imported_at else None,
        "source": "gmail" if report.gmail_message_id else "upload",
    }
    if with_totals:
        data.update(_report_totals(report))
    return data


def _record_dict(record: Record) -> dict[str, Any]:
    return {
        "id": record.id,
        "sourceIp": record.source_ip,
        "count": record.count,
        "disposition": record.disposition,
        "dkim": record.dmarc_dkim,
        "spf": record.dmarc_spf,
        "passed": record.passed,
        "headerFrom": record.header_from,
        "envelopeFrom": record.envelope_from,
        "envelopeTo": record.envelope_to,
        "policyOverrideReasons": record.get_policy_override_reason(),
        "dkimResults": [
            {"domain": d.domain, "selector": d.selector, "result": d.result, "humanResult": d.human_result}
            for d in record.dkim_results
        ],
        "spfResults": [{"domain": s.domain, "scope": s.scope, "result": s.result} for s in record.spf_results],
    }


def forensic_dict(report: ForensicReport, *, full: bool = False) -> dict[str, Any]:
    data = {
        "id": report.id,
        "domainId": report.domain_id,
        "reportId": report.report_id,
        "feedbackType": report.feedback_type,
        "reporterOrgName": report.reporter_org_name,
        "arrivalDate": report.arrival_date.isoformat() if report.arrival_date else None,
        "sourceIp": report.source_ip,
        "originalMailFrom": report.original_mail_from,
        "originalRcptTo": report.original_rcpt_to,
        "subject": report.subject,
        "messageId": report.message_id,
        "authFailure": report.auth_failure,
        "authResults": report.get_auth_results(),
        "dkimDomain": report.dkim_domain,
        "dkimSelector": report.dkim_selector,
        "dkimResult": report.dkim_result,
        "spfDomain": report.spf_domain,
        "spfResult": report.spf_result,
        "deliveryResult": report.delivery_result,
        "reportedDomain": report.reported_domain,
        "createdAt": report.created_at.isoformat() if report.created_at else None,
    }
    if full:
        data["userAgent"] = report.user_agent
        data["version"] = report.version
        data["rawContent"] = report.raw_content
    return data


def _org_owned(model, object_id: int):
    """Load *object_id* of *model* if its domain belongs to the current org."""
    row = db.session.execute(
        db.select(model)
        .join(Domain, model.domain_id == Domain.id)
        .where(model.id == object_id, Domain.organization_id == get_current_org().id)
    ).scalar_one_or_none()
    return row


# ---------------------------------------------------------------------------
# Aggregate reports
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/domains/<int:domain_id>/reports", methods=["POST"])
@org_required("manage_domains")
def upload_reports(slug, domain_id):
    """Import one or more uploaded ``.xml``, ``.zip`` or ``.gz`` reports."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    files = _uploaded_files()
    if not files:
        return jsonify({"error": "No files uploaded"}), 400

    results = []
    for upload in files:
        filename = secure_filename(upload.filename) or "report.xml"
        if not filename.lower().endswith(REPORT_EXTENSIONS):
            results.append({"filename": filename, "success": False, "error": "Unsupported file type"})
            continue
        outcome = import_report(domain, filename=filename, data=upload.read())
        results.append({"filename": filename, **outcome.to_dict()})

    imported = sum(1 for r in results if r["success"] and not r.get("skipped"))
    skipped = sum(1 for r in results if r.get("skipped"))
    failed = sum(1 for r in results if not r["success"])
    if imported:
        log_audit(
            organization_id=domain.organization_id,
            action="report.upload",
            entity_type="domain",
            entity_id=domain.id,
            new_value={"imported": imported, "skipped": skipped, "failed": failed},
        )
    status = 200 if imported or skipped else 400
    return jsonify({"results": results, "imported": imported, "skipped": skipped, "failed": failed}), status


@bp.route("/orgs/<slug>/domains/<int:domain_id>/reports")
@org_required()
def list_reports(slug, domain_id):
    """Reports newest first, optionally limited by ``startDate``/``endDate``."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    try:
        start = parse_iso_datetime(request.args.get("startDate"))
        end = parse_iso_datetime(request.args.get("endDate"))
    except ValueError:
        return jsonify({"error": "Invalid date"}), 400

    query = db.select(Report).where(Report.domain_id == domain.id)
    if start is not None:
        query = query.where(Report.date_range_begin >= start)
    if end is not None:
        query = query.where(Report.date_range_end <= end)
    org_name = request.args.get("orgName", "").strip()
    if org_name:
        query = query.where(Report.org_name == org_name)

    items, meta = paginate(query.order_by(Report.date_range_begin.desc(), Report.id.desc()))
    return jsonify({"reports": [report_dict(r) for r in items], "pagination": meta})


@bp.route("/orgs/<slug>/reports/<int:report_id>")
@org_required()
def get_report(slug, report_id):
    report = _org_owned(Report, report_id)
    if report is None:
        return jsonify({"error": "Report not found"}), 404
    data = report_dict(report)
    data["extraContactInfo"] = report.extra_contact_info
    data["records"] = [_record_dict(r) for r in report.records]
    return jsonify(data)


@bp.route("/orgs/<slug>/reports/<int:report_id>", methods=["DELETE"])
@org_required("manage_domains")
def delete_report(slug, report_id):
    report = _org_owned(Report, report_id)
    if report is None:
        return jsonify({"error": "Report not found"}), 404
    snapshot = {"reportId": report.report_id, "orgName": report.org_name}
    db.session.delete(report)
    db.session.commit()
    log_audit(
        organization_id=get_current_org().id,
        action="report.delete",
        entity_type="report",
        entity_id=report_id,
        old_value=snapshot,
    )
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Forensic reports
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/domains/<int:domain_id>/forensic", methods=["POST"])
@org_required("manage_domains")
def upload_forensic(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    files = _uploaded_files()
    if not files:
        return jsonify({"error": "No files uploaded"}), 400

    results = []
    for upload in files:
        filename = secure_filename(upload.filename) or "report.eml"
        if not filename.lower().endswith(_FORENSIC_EXTENSIONS):
            results.append({"filename": filename, "success": False, "error": "Unsupported file type"})
            continue
        outcome = import_forensic_report(domain, upload.read())
        results.append({"filename": filename, **outcome.to_dict()})

    imported = sum(1 for r in results if r["success"] and not r.get("skipped"))
    return jsonify({"results": results, "imported": imported}), 200 if imported else 400


@bp.route("/orgs/<slug>/domains/<int:domain_id>/forensic")
@org_required()
def list_forensic(slug, domain_id):
    """Forensic reports newest first, with per-feedback-type counts."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    try:
        start = parse_iso_datetime(request.args.get("startDate"))
        end = parse_iso_datetime(request.args.get("endDate"))
    except ValueError:
        return jsonify({"error": "Invalid date"}), 400

    query = db.select(ForensicReport).where(ForensicReport.domain_id == domain.id)
    feedback_type = request.args.get("feedbackType", "")
    if feedback_type and feedback_type != "all":
        query = query.where(ForensicReport.feedback_type == feedback_type)
    if start is not None:
        query = query.where(ForensicReport.arrival_date >= start)
    if end is not None:
        query = query.where(ForensicReport.arrival_date <= end)

    items, meta = paginate(query.order_by(ForensicReport.arrival_date.desc(), ForensicReport.id.desc()))
    stats = dict(
        db.session.execute(
            db.select(ForensicReport.feedback_type, db.func.count(ForensicReport.id))
            .where(ForensicReport.domain_id == domain.id, ForensicReport.feedback_type.is_not(None))
            .group_by(ForensicReport.feedback_type)
        ).all()
    )
    return jsonify({"reports": [forensic_dict(r) for r in items], "pagination": meta, "stats": stats})


@bp.route("/orgs/<slug>/forensic/<int:report_id>")
@org_required()
def get_forensic(slug, report_id):
    report = _org_owned(ForensicReport, report_id)
    if report is None:
        return jsonify({"error": "Report not found"}), 404
    return jsonify(forensic_dict(report, full=True))
