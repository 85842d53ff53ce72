"""project_base_shared.http_utils — HTTP response helpers with CORS.

Response envelope used by API-facing Lambdas behind the REST API whose
CORS configuration the convergence handler manages.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

WILDCARD_ORIGIN = "*"
DISALLOWED_ORIGIN = "null"


def _request_origin(event: Dict[str, Any]) -> Optional[str]:
    """Extract the Origin header (API Gateway header casing varies)."""
    headers = event.get("headers") or {}
    for key, value in headers.items():
        if str(key).lower() == "origin" and value:
            return str(value)
    return None


def _resolve_origin(allowed_origin: str, request_origin: Optional[str]) -> str:
    """Echo the request origin when the configured origin admits it.

    A missing request origin is treated as ``*``.
    """
    origin = request_origin or WILDCARD_ORIGIN
    if allowed_origin == WILDCARD_ORIGIN or allowed_origin == origin:
        return origin
    return DISALLOWED_ORIGIN


def _cors_headers(origin: str) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "*",
        "Access-Control-Allow-Headers": "*",
    }


def _response(status_code: int, body: str, origin: str) -> Dict[str, Any]:
    """Build a plain-text API Gateway proxy response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "text/plain",
            **_cors_headers(origin),
        },
        "body": body,
    }
