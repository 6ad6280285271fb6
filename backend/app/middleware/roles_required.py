"""Role-based access decorator for API endpoints.

Validates JWT tokens and enforces an allow-list of roles before hitting route
handlers. A missing or invalid token is answered with 401 by the
flask_jwt_extended error handlers; a valid token whose ``role`` claim is not
allowed gets 403 without the handler running.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable

from flask import jsonify
from flask_jwt_extended import get_jwt, verify_jwt_in_request

logger = logging.getLogger(__name__)


def roles_required(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Ensure the current request is authorized with one of ``roles``."""
    allowed = frozenset(roles)

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            verify_jwt_in_request()
            claims = get_jwt() or {}
            if claims.get("role") not in allowed:
                logger.warning(
                    "Role access denied",
                    extra={
                        "user_id": claims.get("sub"),
                        "role": claims.get("role"),
                        "endpoint": func.__name__,
                    },
                )
                return jsonify({"error": "forbidden"}), 403
            return func(*args, **kwargs)

        return wrapper

    return decorator
