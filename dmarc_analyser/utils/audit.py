"""
Audit-log helper.

``log_audit`` is safe to call from any route: a failure to write the entry
is logged and never propagates to the caller.
"""

from __future__ import annotations

import json
import logging

from flask import has_request_context, request
from flask_login import current_user

from dmarc_analyser import db
from dmarc_analyser.models import AuditLog

logger = logging.getLogger(__name__)


def client_ip() -> str:
    """Return the caller IP as reported (first X-Forwarded-For hop, then X-Real-IP).

    Client supplied, so audit records only.  Rate limiting keys on
    ``rate_limit.request_ip()``.
    """
    if not has_request_context():
        return "unknown"
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.remote_addr or "unknown"


def log_audit(
    *,
    organization_id: int,
    action: str,
    entity_type: str,
    entity_id: int | str | None = None,
    old_value: dict | None = None,
    new_value: dict | None = None,
    user_id: int | None = None,
) -> None:
    """Record an audit log entry and commit it.

    Args:
        organization_id: Tenant the action happened in.
        action: Dotted action name, e.g. ``domain.create``.
        entity_type: Kind of object affected, e.g. ``domain``.
        entity_id: Primary key of the affected object.
        old_value: State before the change, if meaningful.
        new_value: State after the change, if meaningful.
        user_id: Acting user; defaults to the logged-in user.
    """
    try:
        if user_id is None and has_request_context() and current_user.is_authenticated:
            user_id = current_user.id
        entry = AuditLog(
            organization_id=organization_id,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            old_value=json.dumps(old_value, default=str) if old_value is not None else None,
            new_value=json.dumps(new_value, default=str) if new_value is not None else None,
            ip_address=client_ip(),
            user_agent=(request.headers.get("User-Agent") if has_request_context() else None),
        )
        db.session.add(entry)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to write audit log entry: action=%s org=%s", action, organization_id)
