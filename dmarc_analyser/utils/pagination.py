"""Page/limit query-string handling shared by the list endpoints."""

from __future__ import annotations

from typing import Any

from flask import current_app, request

from dmarc_analyser import db

MAX_PER_PAGE = 100


def paginate(query) -> tuple[list[Any], dict[str, int]]:
    """Apply ``?page=`` and ``?limit=`` to a select of ORM entities.

    Returns:
        ``(items, {"page", "limit", "total", "pages"})``.
    """
    page = max(request.args.get("page", 1, type=int), 1)
    per_page = request.args.get("limit", current_app.config.get("ITEMS_PER_PAGE", 25), type=int)
    per_page = min(max(per_page, 1), MAX_PER_PAGE)
    pagination = db.paginate(query, page=page, per_page=per_page, error_out=False)
    return list(pagination.items), {
        "page": page,
        "limit": per_page,
        "total": pagination.total or 0,
        "pages": pagination.pages,
    }
