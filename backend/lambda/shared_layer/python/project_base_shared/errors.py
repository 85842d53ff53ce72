"""project_base_shared.errors — Error taxonomy shared by the deployment Lambdas.

Three kinds of failure reach the provisioning engine:

    - ConfigurationError: the caller referenced something that does not exist
      or omitted a required property. Retrying will not help.
    - botocore ClientError / BotoCoreError: any remote call that failed. These
      propagate unchanged (or chained with ``raise ... from``).
    - Handler-specific semantic failures (BuildFailed, ReconciliationError)
      defined next to the handler that raises them.

"Not found" answers to an existence probe are the one expected error; use
``_is_not_found`` to branch on them instead of catching everything.
"""

from __future__ import annotations

from typing import Iterable, Optional

from botocore.exceptions import ClientError

NOT_FOUND_CODES = frozenset({"NotFoundException", "ResourceNotFoundException"})


class ConfigurationError(ValueError):
    """Raised for caller configuration problems (unknown ids, missing properties)."""


def _error_code(exc: BaseException) -> Optional[str]:
    """Return the AWS error code carried by a ClientError, else None."""
    if isinstance(exc, ClientError):
        return (exc.response.get("Error") or {}).get("Code")
    return None


def _is_not_found(exc: BaseException, codes: Iterable[str] = NOT_FOUND_CODES) -> bool:
    """True when *exc* is a ClientError whose code means the target is absent."""
    code = _error_code(exc)
    return code is not None and code in set(codes)
