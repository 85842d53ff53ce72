"""build_orchestrator/lambda_function.py

CloudFormation custom-resource Lambda that runs a CodeBuild project to
completion during stack deployment.

On Create/Update the handler starts one build of the configured project and
blocks until CodeBuild reports a terminal status. The stack operation only
proceeds once the build SUCCEEDED; any other terminal status fails the
resource with the last few lines of the build log attached. Delete is a
no-op.

Flow:
    CloudFormation (Create/Update, Trigger property changed)
    → This Lambda
    → codebuild:StartBuild
    → codebuild:BatchGetBuilds (poll every POLL_INTERVAL_SECONDS)
    → on failure: logs:GetLogEvents (read backwards from the end of the log stream)

Resource properties:
    ProjectName   required — CodeBuild project to run
    Trigger       optional — opaque token; changing it forces a re-run

The poll loop has no timeout of its own. The Lambda timeout and the
provider framework's total timeout bound it. A build still running when
the envelope expires keeps running; a re-invocation starts a fresh one.

Environment variables:
    POLL_INTERVAL_SECONDS  default: 5
    LOG_TAIL_LINES         default: 5
    LOG_PAGE_LIMIT         default: 10 (upper bound on GetLogEvents pages read backwards)
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from project_base_shared.aws_clients import _get_codebuild, _get_logs
from project_base_shared.custom_resource import (
    _physical_id,
    _properties,
    _request_type,
    _require,
    _result,
)
from project_base_shared.errors import ConfigurationError, _error_code

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

POLL_INTERVAL_SECONDS = float(os.environ.get("POLL_INTERVAL_SECONDS", "5"))
LOG_TAIL_LINES = int(os.environ.get("LOG_TAIL_LINES", "5"))
LOG_PAGE_LIMIT = int(os.environ.get("LOG_PAGE_LIMIT", "10"))

ACTIVE_STATES = {"IN_PROGRESS"}
SUCCEEDED = "SUCCEEDED"
# CodeBuild answers these when the project itself is unusable.
START_REJECTED_CODES = {"ResourceNotFoundException", "InvalidInputException"}

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BuildDiagnostics:
    """Tail of a failed build, attached to BuildFailed."""

    status: str
    last_log_lines: Tuple[str, ...] = field(default_factory=tuple)
    deep_link: Optional[str] = None


class BuildFailed(RuntimeError):
    """A build reached a terminal status other than SUCCEEDED."""

    def __init__(self, build_id: str, diagnostics: BuildDiagnostics, logs_found: bool = True):
        self.build_id = build_id
        self.diagnostics = diagnostics
        self.status = diagnostics.status
        self.last_log_lines = list(diagnostics.last_log_lines)
        if logs_found:
            message = (
                f"Build failed with status: {self.status}\n"
                f"Last {len(self.last_log_lines)} build logs:\n"
                + "\n".join(self.last_log_lines)
            )
        else:
            message = f"Build failed with status: {self.status}, but logs are not available."
        super().__init__(message)


# ---------------------------------------------------------------------------
# Core logic
# ---------------------------------------------------------------------------


def _start_build(project_name: str) -> str:
    """Start one build of *project_name*, returns the build ID."""
    cb = _get_codebuild()
    try:
        resp = cb.start_build(projectName=project_name)
    except ClientError as e:
        if _error_code(e) in START_REJECTED_CODES:
            raise ConfigurationError(
                f"CodeBuild rejected start for project '{project_name}': {e}"
            ) from e
        raise

    build_id = (resp.get("build") or {}).get("id")
    if not build_id:
        raise RuntimeError("Failed to start build: No build ID returned.")
    logger.info(f"[INFO] CodeBuild started: {build_id}")
    return build_id


def _get_build(build_id: str) -> Dict[str, Any]:
    cb = _get_codebuild()
    resp = cb.batch_get_builds(ids=[build_id])
    builds = resp.get("builds") or []
    return builds[0] if builds else {}


def _poll_status(build_id: str) -> str:
    build = _get_build(build_id)
    # A build that vanished from BatchGetBuilds cannot succeed.
    status = build.get("buildStatus") or "FAILED"
    phase = build.get("currentPhase", "")
    logger.info(f"[INFO] Build {build_id} status: {status} phase: {phase}")
    return status


def _wait_for_build(build_id: str) -> str:
    """Poll until the build leaves IN_PROGRESS. Returns the terminal status."""
    status = _poll_status(build_id)
    while status in ACTIVE_STATES:
        time.sleep(POLL_INTERVAL_SECONDS)
        status = _poll_status(build_id)
    return status


def _tail_log_events(group_name: str, stream_name: str, limit: Optional[int] = None) -> List[str]:
    """Return the last *limit* messages of a log stream, oldest first.

    Reads backwards from the end of the stream. Each GetLogEvents page comes
    back oldest-first. A short or empty page does not mean the start of the
    stream was reached; only a repeated nextBackwardToken does.
    """
    limit = limit or LOG_TAIL_LINES
    logs = _get_logs()
    tail: List[str] = []
    kwargs: Dict[str, Any] = {
        "logGroupName": group_name,
        "logStreamName": stream_name,
        "startFromHead": False,
        "limit": limit,
    }
    for _ in range(LOG_PAGE_LIMIT):
        resp = logs.get_log_events(**kwargs)
        page = [str(e.get("message", "")).rstrip("\n") for e in resp.get("events") or []]
        tail = page + tail
        if len(tail) >= limit:
            break
        token = resp.get("nextBackwardToken")
        if not token or token == kwargs.get("nextToken"):
            break
        kwargs["nextToken"] = token
    else:
        logger.warning(
            f"[WARNING] Read {LOG_PAGE_LIMIT} pages of {group_name}/{stream_name} "
            f"without reaching {limit} lines; returning {len(tail)}"
        )
    return tail[-limit:]


def _collect_diagnostics(build_id: str, status: str) -> BuildFailed:
    """Re-read the failed build and tail its log stream into a BuildFailed."""
    build = _get_build(build_id)
    logs_info = build.get("logs") or {}
    deep_link = logs_info.get("deepLink")
    if deep_link:
        logger.info(f"[INFO] Build logs available at: {deep_link}")

    group_name = logs_info.get("groupName")
    stream_name = logs_info.get("streamName")
    if not (group_name and stream_name):
        return BuildFailed(
            build_id, BuildDiagnostics(status=status, deep_link=deep_link), logs_found=False
        )

    lines = _tail_log_events(group_name, stream_name)
    return BuildFailed(
        build_id,
        BuildDiagnostics(status=status, last_log_lines=tuple(lines), deep_link=deep_link),
    )


def _run_build(project_name: str) -> Tuple[str, str]:
    """Run *project_name* to completion. Returns (build_id, terminal_status).

    Raises ConfigurationError when CodeBuild refuses to start the project and
    BuildFailed when the build ends in any status other than SUCCEEDED.
    """
    build_id = _start_build(project_name)
    status = _wait_for_build(build_id)
    if status != SUCCEEDED:
        raise _collect_diagnostics(build_id, status)
    logger.info(f"[SUCCESS] Build {build_id} succeeded")
    return build_id, status


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """CloudFormation custom-resource handler."""
    request_type = _request_type(event)
    physical_id = _physical_id(event)
    logger.info(f"[START] build_orchestrator: {request_type} {physical_id}")

    if request_type == "Delete":
        logger.info("[INFO] Delete request received. No action required.")
        return _result(physical_id)

    project_name = _require(_properties(event), "ProjectName")
    try:
        build_id, status = _run_build(project_name)
    except Exception as e:
        logger.error(f"[ERROR] Build of {project_name} failed: {e}", exc_info=True)
        raise

    logger.info(f"[END] build_orchestrator: {project_name} {status}")
    return _result(physical_id, {"BuildId": build_id, "BuildStatus": status})
