"""
Cardflow Core
Blueprint registry and request helpers.

Every API request names its account in ``X-Account-ID`` and, for writes,
its acting user in ``X-User-ID``.
"""

from flask import request

from cardflow.core.exceptions import ValidationError


def _int_header(name: str, required: bool) -> int | None:
    raw = request.headers.get(name)
    if raw is None or not raw.strip():
        if required:
            raise ValidationError(f"{name} header is required")
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} header must be an integer") from None


def current_account_id() -> int:
    return _int_header("X-Account-ID", required=True)


def current_actor_id(required: bool = True) -> int | None:
    return _int_header("X-User-ID", required=required)


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def int_field(data: dict, name: str, *, required: bool = True) -> int | None:
    value = data.get(name)
    if value is None:
        if required:
            raise ValidationError(f"{name} is required", details={name: "required"})
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", details={name: "invalid"})
    return value


def page_args(default_limit=50, max_limit=200) -> tuple[int, int]:
    """``(limit, offset)`` from the query string, clamped."""
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return max(limit, 1), offset
