from __future__ import annotations

import errno

from taskpilot.errors import AgentFailureError
from taskpilot.models import AdapterFailureKind

_NETWORK_ERRNOS = {
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
}
_NETWORK_CODES = {
    "ENOTFOUND",
    "ECONNRESET",
    "ECONNREFUSED",
    "EHOSTUNREACH",
    "EAI_AGAIN",
    "ENETUNREACH",
    "ETIMEDOUT",
}
_MISSING_BINARY_MARKERS = (
    "command not found",
    "not recognized as an internal or external command",
)
_AUTH_MARKERS = (
    "unauthorized",
    "forbidden",
    "authentication",
    "auth",
    "invalid api key",
    "api key",
    "token expired",
    "permission denied",
    "credential",
)
_NETWORK_MARKERS = (
    "network",
    "connection reset",
    "connection refused",
    "name resolution",
    "dns",
    "temporarily unavailable",
)


def classify_failure_text(message: str, code: str = "") -> AdapterFailureKind:
    lower = message.lower()
    code = code.upper()
    if code == "ETIMEDOUT" or "timed out" in lower or "timeout" in lower:
        return "timeout"
    if code == "ENOENT" or any(marker in lower for marker in _MISSING_BINARY_MARKERS):
        return "missing-binary"
    if any(marker in lower for marker in _AUTH_MARKERS):
        return "auth"
    if code in _NETWORK_CODES or any(marker in lower for marker in _NETWORK_MARKERS):
        return "network"
    return "unknown"


def classify_adapter_failure(error: BaseException | str) -> AdapterFailureKind:
    """Map a worker failure to one of auth, network, missing-binary, timeout, unknown."""
    if isinstance(error, str):
        return classify_failure_text(error)
    if isinstance(error, AgentFailureError) and error.failure_kind != "unknown":
        return error.failure_kind  # type: ignore[return-value]
    if isinstance(error, (TimeoutError, ConnectionError)):
        return "timeout" if isinstance(error, TimeoutError) else "network"
    if isinstance(error, FileNotFoundError):
        return "missing-binary"
    code = ""
    if isinstance(error, OSError) and error.errno is not None:
        if error.errno in _NETWORK_ERRNOS:
            return "network"
        code = errno.errorcode.get(error.errno, "")
    return classify_failure_text(str(error), code)
