"""General helper utilities."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from flask import current_app, jsonify, request


def json_response(payload: Any, status: int = 200):
    """Return a JSON response with status code."""
    return jsonify(payload), status


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def page_args(max_per_page: int = 100) -> Tuple[int, int]:
    """Read ``page``/``per_page`` query arguments, clamped to sane bounds."""
    page = request.args.get("page", type=int, default=1)
    per_page = request.args.get("per_page", type=int, default=current_app.config.get("DEFAULT_PAGE_SIZE", 20))
    if page is None or page < 1:
        page = 1
    if per_page is None or per_page < 1:
        per_page = current_app.config.get("DEFAULT_PAGE_SIZE", 20)
    return page, min(per_page, max_per_page)
