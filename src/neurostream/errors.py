"""Error types raised by the Neurostream SDK.

Every error carries a machine-checkable ``kind`` plus a human-readable
message prefixed with ``PREFIX`` so callers can surface it directly.

Kinds:
    auth         — bad credentials, expired session, listing failed
    scope        — missing capability (``ScopeError.required_scope``)
    device       — no device selected / selector matched nothing
    unsupported  — metric not available on the transport or device model
    timeout      — acknowledgment not received in time
    state        — illegal state transition
    invalid      — argument outside a documented limit
"""

from __future__ import annotations

PREFIX = "Neurostream SDK: "


class SDKError(Exception):
    """Base class for all SDK errors."""

    kind: str = "sdk"

    def __init__(self, message: str) -> None:
        super().__init__(f"{PREFIX}{message}")
        self.message = message


class AuthError(SDKError):
    kind = "auth"


class ScopeError(SDKError):
    """The session's claims lack the scope an operation requires."""

    kind = "scope"

    def __init__(self, required_scope: str, operation: str) -> None:
        super().__init__(
            f"Missing required scope '{required_scope}' for '{operation}'. "
            "Request it when creating the OAuth URL."
        )
        self.required_scope = required_scope
        self.operation = operation


class DeviceSelectionError(SDKError):
    kind = "device"


class TransportUnsupportedError(SDKError):
    kind = "unsupported"


class AckTimeoutError(SDKError, TimeoutError):
    kind = "timeout"


class StateError(SDKError):
    kind = "state"


class LimitError(SDKError, ValueError):
    """An argument is missing or exceeds a documented limit."""

    kind = "invalid"


# ---------------------------------------------------------------------------
# Factories for recurring messages
# ---------------------------------------------------------------------------


def must_select_device() -> DeviceSelectionError:
    return DeviceSelectionError(
        'A device must be selected. Make sure to call "select_device()"'
    )


def metric_not_supported_by_model(
    metric: str, model_version: str
) -> TransportUnsupportedError:
    return TransportUnsupportedError(
        f"{metric} not supported on model version {model_version}."
    )


def metric_not_supported_locally(metric: str) -> TransportUnsupportedError:
    return TransportUnsupportedError(
        f"{metric} cannot be streamed over the local socket."
    )


def location_not_found(location: str, model_version: str) -> TransportUnsupportedError:
    return TransportUnsupportedError(
        f"{location} location not supported on model version {model_version}."
    )


def exceeded_max_items(max_items: int) -> LimitError:
    return LimitError(f"Maximum items in array is {max_items}")
