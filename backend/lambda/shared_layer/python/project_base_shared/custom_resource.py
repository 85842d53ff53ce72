"""project_base_shared.custom_resource — CloudFormation custom-resource contract.

The provisioning engine invokes each handler with a custom-resource event:

    {
        "RequestType": "Create" | "Update" | "Delete",
        "ResourceProperties": {...},
        "PhysicalResourceId": "...",   # absent on Create
        "LogicalResourceId": "...",
        "RequestId": "...",
    }

and expects ``{"PhysicalResourceId": str, "Data": {str: str}}`` back. A raised
exception is the failure signal; the provider framework reports it.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from project_base_shared.errors import ConfigurationError


REQUEST_TYPES = ("Create", "Update", "Delete")


def _request_type(event: Dict[str, Any]) -> str:
    """Return the lifecycle verb, rejecting anything the engine never sends."""
    request_type = str(event.get("RequestType") or "").strip()
    if request_type not in REQUEST_TYPES:
        raise ConfigurationError(f"Unsupported RequestType: {request_type!r}")
    return request_type


def _physical_id(event: Dict[str, Any]) -> str:
    """Resolve the physical id: the prior one if any, else the logical id."""
    return str(
        event.get("PhysicalResourceId")
        or event.get("LogicalResourceId")
        or event.get("RequestId")
        or ""
    )


def _properties(event: Dict[str, Any]) -> Dict[str, Any]:
    props = event.get("ResourceProperties") or {}
    if not isinstance(props, dict):
        raise ConfigurationError("ResourceProperties must be an object")
    return props


def _require(props: Mapping[str, Any], name: str, strip: bool = True) -> str:
    """Read a required string property, failing fast when it is blank.

    With ``strip=False`` a non-blank value is returned exactly as given.
    """
    value = props.get(name)
    if value is None or not str(value).strip():
        raise ConfigurationError(f"Missing required property: {name}")
    return str(value).strip() if strip else str(value)


def _optional(props: Mapping[str, Any], name: str, default: str) -> str:
    value = props.get(name)
    if value is None or not str(value).strip():
        return default
    return str(value).strip()


def _result(physical_id: str, data: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Build the provider response. Data values are stringified."""
    return {
        "PhysicalResourceId": physical_id,
        "Data": {str(k): str(v) for k, v in (data or {}).items()},
    }
