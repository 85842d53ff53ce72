"""cors_convergence/lambda_function.py

CloudFormation custom-resource Lambda that converges the CORS configuration
of an API Gateway REST API.

The API's resource tree is not known in advance (it is read fresh on every
invocation), so the handler walks all of it and, per resource:

- creates a MOCK ``OPTIONS`` preflight method with the three
  ``Access-Control-Allow-*`` response headers when none exists;
- makes sure every other method's 200 method response declares
  ``Access-Control-Allow-Origin`` and its 200 integration response sets it
  to the allowed origin (update in place, create when absent);
- records Lambda integration targets.

It then publishes a new deployment to the stage and finally copies the
allowed origin into the ``ALLOWED_ORIGIN`` environment variable of every
Lambda target found. Every step is safe to repeat. A failure in any phase is
raised immediately; work already applied is left in place for the next run
to converge.

Known gap: a pre-existing OPTIONS method is never modified, so changing the
allowed origin does not refresh the preflight response of resources that
already had one.

Flow:
    CloudFormation (Create/Update)
    → enumerating   apigateway:GetResources (paginated)
    → converging    Put*/Update* method + integration responses
    → publishing    apigateway:CreateDeployment
    → propagating   lambda:GetFunctionConfiguration / UpdateFunctionConfiguration

Resource properties:
    RestApiId      required
    AllowedOrigin  required — "*" or a literal origin, used verbatim (not validated)
    StageName      optional — default DEFAULT_STAGE_NAME
    Trigger        optional — opaque token; changing it forces a re-run

Environment variables:
    DEFAULT_STAGE_NAME        default: prod
    RESOURCES_PAGE_LIMIT      default: 500
    PROPAGATE_ALLOWED_ORIGIN  default: true
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from project_base_shared.aws_clients import _get_apigateway, _get_lambda
from project_base_shared.custom_resource import (
    _optional,
    _physical_id,
    _properties,
    _request_type,
    _require,
    _result,
)
from project_base_shared.errors import ConfigurationError, _is_not_found

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_STAGE_NAME = os.environ.get("DEFAULT_STAGE_NAME", "prod")
RESOURCES_PAGE_LIMIT = int(os.environ.get("RESOURCES_PAGE_LIMIT", "500"))
PROPAGATE_ALLOWED_ORIGIN = os.environ.get("PROPAGATE_ALLOWED_ORIGIN", "true").lower() in (
    "1",
    "true",
    "yes",
)

ORIGIN_ENV_VAR = "ALLOWED_ORIGIN"
PREFLIGHT_METHOD = "OPTIONS"
STATUS_CODE = "200"
DEPLOYMENT_DESCRIPTION = "Deployment for CORS configuration"

ALLOW_HEADERS = "Content-Type,X-Amz-Date,Authorization,X-Api-Key,X-Amz-Security-Token"
ALLOW_METHODS = "GET,POST,PUT,DELETE,OPTIONS"

HEADER_PARAM = "method.response.header.{}"
ALLOW_ORIGIN_PARAM = HEADER_PARAM.format("Access-Control-Allow-Origin")
ALLOW_HEADERS_PARAM = HEADER_PARAM.format("Access-Control-Allow-Headers")
ALLOW_METHODS_PARAM = HEADER_PARAM.format("Access-Control-Allow-Methods")

LAMBDA_INTEGRATION_TYPES = {"AWS", "AWS_PROXY"}
_LAMBDA_URI_RE = re.compile(r":lambda:path/[^/]+/functions/(?P<arn>.+?)/invocations$")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ReconciliationError(RuntimeError):
    """A remote call failed mid-reconciliation. Earlier work is not undone."""

    def __init__(
        self,
        phase: str,
        message: str,
        resource_id: Optional[str] = None,
        resource_path: Optional[str] = None,
        http_method: Optional[str] = None,
    ):
        self.phase = phase
        self.resource_id = resource_id
        self.resource_path = resource_path
        self.http_method = http_method
        where = ""
        if resource_id:
            where = f" at resource {resource_id} ({resource_path or '?'})"
            if http_method:
                where += f" method {http_method}"
        super().__init__(f"CORS reconciliation failed while {phase}{where}: {message}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _quoted(value: str) -> str:
    """API Gateway wants static header values as single-quoted literals."""
    return f"'{value}'"


def _lambda_arn_from_uri(uri: str) -> Optional[str]:
    """Extract the function ARN from a lambda:path integration URI."""
    m = _LAMBDA_URI_RE.search(uri or "")
    return m.group("arn") if m else None


def _upsert(update: Callable[[], Any], create: Callable[[], Any], what: str) -> str:
    """Update *what* in place; create it only when the update reports NotFound.

    Returns "updated" or "created". Every other error propagates.
    """
    try:
        update()
        return "updated"
    except ClientError as e:
        if not _is_not_found(e, ("NotFoundException",)):
            raise
    logger.info(f"[INFO] {what} missing, creating it")
    create()
    return "created"


# ---------------------------------------------------------------------------
# Phase 1: enumerate
# ---------------------------------------------------------------------------


def _get_resources(rest_api_id: str) -> List[Dict[str, Any]]:
    """Read every resource of the API, following the position cursor."""
    apigw = _get_apigateway()
    results: List[Dict[str, Any]] = []
    seen: set = set()
    kwargs: Dict[str, Any] = {"restApiId": rest_api_id, "limit": RESOURCES_PAGE_LIMIT}
    while True:
        try:
            resp = apigw.get_resources(**kwargs)
        except ClientError as e:
            if _is_not_found(e, ("NotFoundException",)):
                raise ConfigurationError(f"REST API '{rest_api_id}' not found: {e}") from e
            raise
        for item in resp.get("items", []):
            if item["id"] in seen:
                logger.warning(f"[WARNING] Resource {item['id']} returned twice; skipping repeat")
                continue
            seen.add(item["id"])
            results.append(item)
        position = resp.get("position")
        if not position:
            break
        kwargs["position"] = position
    return results


# ---------------------------------------------------------------------------
# Phase 2: converge
# ---------------------------------------------------------------------------


def _create_preflight(rest_api_id: str, resource_id: str, allowed_origin: str) -> None:
    apigw = _get_apigateway()
    apigw.put_method(
        restApiId=rest_api_id,
        resourceId=resource_id,
        httpMethod=PREFLIGHT_METHOD,
        authorizationType="NONE",
    )
    apigw.put_method_response(
        restApiId=rest_api_id,
        resourceId=resource_id,
        httpMethod=PREFLIGHT_METHOD,
        statusCode=STATUS_CODE,
        responseModels={"application/json": "Empty"},
        responseParameters={
            ALLOW_HEADERS_PARAM: True,
            ALLOW_METHODS_PARAM: True,
            ALLOW_ORIGIN_PARAM: True,
        },
    )
    apigw.put_integration(
        restApiId=rest_api_id,
        resourceId=resource_id,
        httpMethod=PREFLIGHT_METHOD,
        type="MOCK",
        requestTemplates={"application/json": '{"statusCode": 200}'},
    )
    apigw.put_integration_response(
        restApiId=rest_api_id,
        resourceId=resource_id,
        httpMethod=PREFLIGHT_METHOD,
        statusCode=STATUS_CODE,
        responseTemplates={"application/json": ""},
        responseParameters={
            ALLOW_HEADERS_PARAM: _quoted(ALLOW_HEADERS),
            ALLOW_METHODS_PARAM: _quoted(ALLOW_METHODS),
            ALLOW_ORIGIN_PARAM: _quoted(allowed_origin),
        },
    )


def _upsert_method_response(rest_api_id: str, resource_id: str, http_method: str) -> str:
    apigw = _get_apigateway()
    target = dict(
        restApiId=rest_api_id,
        resourceId=resource_id,
        httpMethod=http_method,
        statusCode=STATUS_CODE,
    )
    return _upsert(
        lambda: apigw.update_method_response(
            **target,
            patchOperations=[
                {"op": "add", "path": f"/responseParameters/{ALLOW_ORIGIN_PARAM}", "value": "false"},
            ],
        ),
        lambda: apigw.put_method_response(
            **target,
            responseModels={"application/json": "Empty"},
            responseParameters={ALLOW_ORIGIN_PARAM: False},
        ),
        f"Method response {http_method} {STATUS_CODE} on {resource_id}",
    )


def _upsert_integration_response(
    rest_api_id: str, resource_id: str, http_method: str, allowed_origin: str
) -> str:
    apigw = _get_apigateway()
    target = dict(
        restApiId=rest_api_id,
        resourceId=resource_id,
        httpMethod=http_method,
        statusCode=STATUS_CODE,
    )
    return _upsert(
        lambda: apigw.update_integration_response(
            **target,
            patchOperations=[
                {
                    "op": "add",
                    "path": f"/responseParameters/{ALLOW_ORIGIN_PARAM}",
                    "value": _quoted(allowed_origin),
                },
            ],
        ),
        lambda: apigw.put_integration_response(
            **target,
            responseTemplates={"application/json": ""},
            responseParameters={ALLOW_ORIGIN_PARAM: _quoted(allowed_origin)},
        ),
        f"Integration response {http_method} {STATUS_CODE} on {resource_id}",
    )


def _integration_target(rest_api_id: str, resource_id: str, http_method: str) -> Optional[str]:
    """Return the Lambda ARN behind a method's integration, if it has one."""
    apigw = _get_apigateway()
    integration = apigw.get_integration(
        restApiId=rest_api_id, resourceId=resource_id, httpMethod=http_method
    )
    if integration.get("type") not in LAMBDA_INTEGRATION_TYPES:
        return None
    return _lambda_arn_from_uri(integration.get("uri", ""))


def _converge_resource(
    rest_api_id: str,
    resource: Dict[str, Any],
    allowed_origin: str,
    targets: Dict[str, None],
    stats: Dict[str, int],
) -> None:
    """Bring one resource's methods in line with the allowed origin."""
    resource_id = resource["id"]
    resource_path = resource.get("path", "")
    methods = resource.get("resourceMethods") or {}

    if PREFLIGHT_METHOD not in methods:
        logger.info(f"[INFO] Creating OPTIONS method for resource {resource_path}")
        try:
            _create_preflight(rest_api_id, resource_id, allowed_origin)
        except (ClientError, BotoCoreError) as e:
            raise ReconciliationError(
                "converging", str(e), resource_id, resource_path, PREFLIGHT_METHOD
            ) from e
        stats["preflight_created"] += 1

    for http_method in methods:
        if http_method == PREFLIGHT_METHOD:
            continue
        logger.info(f"[INFO] Processing method {http_method} for resource {resource_path}")
        try:
            arn = _integration_target(rest_api_id, resource_id, http_method)
            method_outcome = _upsert_method_response(rest_api_id, resource_id, http_method)
            integration_outcome = _upsert_integration_response(
                rest_api_id, resource_id, http_method, allowed_origin
            )
        except (ClientError, BotoCoreError) as e:
            raise ReconciliationError(
                "converging", str(e), resource_id, resource_path, http_method
            ) from e
        if arn:
            targets.setdefault(arn, None)
        stats[f"method_responses_{method_outcome}"] += 1
        stats[f"integration_responses_{integration_outcome}"] += 1


# ---------------------------------------------------------------------------
# Phase 3 / 4: publish, propagate
# ---------------------------------------------------------------------------


def _create_deployment(rest_api_id: str, stage_name: str) -> str:
    apigw = _get_apigateway()
    resp = apigw.create_deployment(
        restApiId=rest_api_id,
        stageName=stage_name,
        description=DEPLOYMENT_DESCRIPTION,
    )
    return resp.get("id", "")


def _propagate_origin(function_arn: str, allowed_origin: str) -> bool:
    """Merge ALLOWED_ORIGIN into a function's environment. Returns True if written."""
    lam = _get_lambda()
    config = lam.get_function_configuration(FunctionName=function_arn)
    variables = dict((config.get("Environment") or {}).get("Variables") or {})
    if variables.get(ORIGIN_ENV_VAR) == allowed_origin:
        logger.info(f"[INFO] {function_arn} already has {ORIGIN_ENV_VAR}={allowed_origin}")
        return False
    variables[ORIGIN_ENV_VAR] = allowed_origin
    logger.info(f"[INFO] Updating environment variable for Lambda function: {function_arn}")
    lam.update_function_configuration(
        FunctionName=function_arn,
        Environment={"Variables": variables},
    )
    return True


# ---------------------------------------------------------------------------
# Core logic
# ---------------------------------------------------------------------------


def _reconcile_cors(rest_api_id: str, allowed_origin: str, stage_name: str) -> Dict[str, Any]:
    """Converge the API's CORS configuration and publish it.

    Returns a summary dict. Raises ConfigurationError for an unknown API and
    ReconciliationError for any other failed remote call.
    """
    try:
        resources = _get_resources(rest_api_id)
    except (ClientError, BotoCoreError) as e:
        raise ReconciliationError("enumerating", str(e)) from e
    logger.info(f"[INFO] {rest_api_id}: {len(resources)} resource(s)")

    targets: Dict[str, None] = {}
    stats: Dict[str, int] = {
        "preflight_created": 0,
        "method_responses_updated": 0,
        "method_responses_created": 0,
        "integration_responses_updated": 0,
        "integration_responses_created": 0,
    }
    for resource in resources:
        _converge_resource(rest_api_id, resource, allowed_origin, targets, stats)

    try:
        deployment_id = _create_deployment(rest_api_id, stage_name)
    except (ClientError, BotoCoreError) as e:
        raise ReconciliationError("publishing", str(e)) from e
    logger.info(f"[INFO] Deployed {rest_api_id} to stage {stage_name}: {deployment_id}")

    updated: List[str] = []
    if PROPAGATE_ALLOWED_ORIGIN:
        logger.info(f"[INFO] Lambda functions to update: {list(targets)}")
        for function_arn in targets:
            try:
                if _propagate_origin(function_arn, allowed_origin):
                    updated.append(function_arn)
            except (ClientError, BotoCoreError) as e:
                raise ReconciliationError("propagating", f"{function_arn}: {e}") from e

    return {
        "deployment_id": deployment_id,
        "resource_count": len(resources),
        "functions": list(targets),
        "functions_updated": updated,
        **stats,
    }


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """CloudFormation custom-resource handler."""
    request_type = _request_type(event)
    physical_id = _physical_id(event)
    logger.info(f"[START] cors_convergence: {request_type} {physical_id}")

    if request_type == "Delete":
        logger.info("[INFO] Delete request received. No action required.")
        return _result(physical_id)

    props = _properties(event)
    rest_api_id = _require(props, "RestApiId")
    allowed_origin = _require(props, "AllowedOrigin", strip=False)
    stage_name = _optional(props, "StageName", DEFAULT_STAGE_NAME)

    try:
        summary = _reconcile_cors(rest_api_id, allowed_origin, stage_name)
    except Exception as e:
        logger.error(f"[ERROR] CORS reconciliation of {rest_api_id} failed: {e}", exc_info=True)
        raise

    logger.info(
        f"[SUCCESS] {rest_api_id}: {summary['resource_count']} resource(s), "
        f"{summary['preflight_created']} preflight method(s) created, "
        f"{len(summary['functions_updated'])} function(s) updated"
    )
    return _result(
        physical_id,
        {
            "RestApiId": rest_api_id,
            "StageName": stage_name,
            "DeploymentId": summary["deployment_id"],
            "ResourceCount": summary["resource_count"],
            "PreflightCreated": summary["preflight_created"],
            "FunctionsUpdated": len(summary["functions_updated"]),
        },
    )
