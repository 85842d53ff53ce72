"""project_base_shared.aws_clients — Lazy-singleton AWS service clients.

Provides factory functions that create boto3 clients on first call and
cache them for subsequent invocations of a warm container. Every client is
built with botocore's standard retry mode, which applies bounded retries
with jittered backoff to throttling and transient faults; the handlers add
no retry loop of their own.
"""

from __future__ import annotations

import os
from typing import Optional

import boto3
from botocore.config import Config

# ---------------------------------------------------------------------------
# Default region (overridable via env)
# ---------------------------------------------------------------------------

HANDLER_REGION: str = os.environ.get(
    "HANDLER_REGION", os.environ.get("AWS_REGION", "us-east-1")
)

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_codebuild = None
_logs = None
_apigateway = None
_lambda = None


def _get_codebuild(region: Optional[str] = None):
    """Get (or create) the CodeBuild client singleton."""
    global _codebuild
    if _codebuild is None:
        _codebuild = boto3.client(
            "codebuild",
            region_name=region or HANDLER_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _codebuild


def _get_logs(region: Optional[str] = None):
    """Get (or create) the CloudWatch Logs client singleton."""
    global _logs
    if _logs is None:
        _logs = boto3.client(
            "logs",
            region_name=region or HANDLER_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _logs


def _get_apigateway(region: Optional[str] = None):
    """Get (or create) the API Gateway (REST) client singleton.

    The API Gateway control plane throttles aggressively (a few mutating
    calls per second per account), so this client gets the most attempts.
    """
    global _apigateway
    if _apigateway is None:
        _apigateway = boto3.client(
            "apigateway",
            region_name=region or HANDLER_REGION,
            config=Config(retries={"max_attempts": 8, "mode": "standard"}),
        )
    return _apigateway


def _get_lambda(region: Optional[str] = None):
    """Get (or create) the Lambda client singleton."""
    global _lambda
    if _lambda is None:
        _lambda = boto3.client(
            "lambda",
            region_name=region or HANDLER_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _lambda
