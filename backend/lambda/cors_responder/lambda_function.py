"""cors_responder/lambda_function.py

API Gateway proxy Lambda that answers browser preflight requests.

The allowed origin comes from the ALLOWED_ORIGIN environment variable, which
cors_convergence keeps in sync with the stack's AllowedOrigin. The request
Origin is echoed back when it is admitted ("*" admits everything) and
"null" is returned otherwise.

Environment variables:
    ALLOWED_ORIGIN  default: *
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict

from project_base_shared.http_utils import _request_origin, _resolve_origin, _response

ALLOWED_ORIGIN = os.environ.get("ALLOWED_ORIGIN", "*")

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    request_origin = _request_origin(event)
    origin = _resolve_origin(ALLOWED_ORIGIN, request_origin)
    if request_origin and origin != request_origin:
        logger.info(f"[INFO] Origin {request_origin} not allowed (allowed: {ALLOWED_ORIGIN})")
    return _response(200, "OK", origin)
