"""Capability guard: scope checks in front of every transport call.

The guard is a pure, synchronous function of (claims, operation).  It never
touches a transport, so a denied call is guaranteed to produce zero
transport traffic.

Lookup tables driving it:
    REQUIRED_SCOPES   — SDK operation → minimal capability (None = open)
    METRIC_OPERATIONS — metric name → guarding operation
    ACTION_SCOPES     — dispatched (command, action) → capability

Anything missing from a table is denied.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Iterable

import jwt as pyjwt

from neurostream.errors import ScopeError
from neurostream.models import Action

logger = logging.getLogger("neurostream.guard")


class Capability(str, Enum):
    READ_DEVICES_INFO = "read:devices-info"
    READ_DEVICES_STATUS = "read:devices-status"
    READ_DEVICES_SETTINGS = "read:devices-settings"
    WRITE_DEVICES_SETTINGS = "write:devices-settings"
    WRITE_DEVICES_ADD = "write:devices-add"
    WRITE_DEVICES_REMOVE = "write:devices-remove"
    READ_SIGNAL_QUALITY = "read:signal-quality"
    READ_BRAINWAVES = "read:brainwaves"
    WRITE_BRAINWAVES_MARKERS = "write:brainwaves-markers"
    READ_CALM = "read:calm"
    READ_FOCUS = "read:focus"
    READ_ACCELEROMETER = "read:accelerometer"
    READ_KINESIS = "read:kinesis"
    WRITE_KINESIS = "write:kinesis"
    WRITE_HAPTICS = "write:haptics"
    WRITE_METRICS = "write:metrics"


class Operation(str, Enum):
    ADD_DEVICE = "addDevice"
    REMOVE_DEVICE = "removeDevice"
    TRANSFER_DEVICE = "transferDevice"
    GET_DEVICES = "getDevices"
    ON_USER_DEVICES_CHANGE = "onUserDevicesChange"
    SELECT_DEVICE = "selectDevice"
    GET_SELECTED_DEVICE = "getSelectedDevice"
    ON_DEVICE_CHANGE = "onDeviceChange"
    GET_INFO = "getInfo"
    ENABLE_LOCAL_MODE = "enableLocalMode"
    STATUS = "status"
    SETTINGS = "settings"
    CHANGE_SETTINGS = "changeSettings"
    BRAINWAVES = "brainwaves"
    CALM = "calm"
    FOCUS = "focus"
    ACCELEROMETER = "accelerometer"
    SIGNAL_QUALITY = "signalQuality"
    KINESIS = "kinesis"
    PREDICTIONS = "predictions"
    NEXT_METRIC = "nextMetric"
    ON_USER_CLAIMS_CHANGE = "onUserClaimsChange"
    IS_LOCAL_MODE = "isLocalMode"
    ON_CONNECTION_CHANGE = "onConnectionChange"
    GO_ONLINE = "goOnline"
    GO_OFFLINE = "goOffline"


REQUIRED_SCOPES: dict[Operation, Capability | None] = {
    Operation.ADD_DEVICE: Capability.WRITE_DEVICES_ADD,
    Operation.REMOVE_DEVICE: Capability.WRITE_DEVICES_REMOVE,
    Operation.TRANSFER_DEVICE: Capability.WRITE_DEVICES_REMOVE,
    Operation.GET_DEVICES: Capability.READ_DEVICES_INFO,
    Operation.ON_USER_DEVICES_CHANGE: Capability.READ_DEVICES_INFO,
    Operation.SELECT_DEVICE: Capability.READ_DEVICES_INFO,
    Operation.GET_SELECTED_DEVICE: Capability.READ_DEVICES_INFO,
    Operation.ON_DEVICE_CHANGE: Capability.READ_DEVICES_INFO,
    Operation.GET_INFO: Capability.READ_DEVICES_INFO,
    Operation.ENABLE_LOCAL_MODE: None,
    Operation.STATUS: Capability.READ_DEVICES_STATUS,
    Operation.SETTINGS: Capability.READ_DEVICES_SETTINGS,
    Operation.CHANGE_SETTINGS: Capability.WRITE_DEVICES_SETTINGS,
    Operation.BRAINWAVES: Capability.READ_BRAINWAVES,
    Operation.CALM: Capability.READ_CALM,
    Operation.FOCUS: Capability.READ_FOCUS,
    Operation.ACCELEROMETER: Capability.READ_ACCELEROMETER,
    Operation.SIGNAL_QUALITY: Capability.READ_SIGNAL_QUALITY,
    Operation.KINESIS: Capability.READ_KINESIS,
    Operation.PREDICTIONS: Capability.READ_KINESIS,
    Operation.NEXT_METRIC: Capability.WRITE_METRICS,
    Operation.ON_USER_CLAIMS_CHANGE: None,
    Operation.IS_LOCAL_MODE: None,
    Operation.ON_CONNECTION_CHANGE: None,
    Operation.GO_ONLINE: None,
    Operation.GO_OFFLINE: None,
}

ACTION_SCOPES: dict[tuple[str, str], Capability] = {
    ("marker", "add"): Capability.WRITE_BRAINWAVES_MARKERS,
    ("haptics", "queue"): Capability.WRITE_HAPTICS,
    ("training", "record"): Capability.WRITE_KINESIS,
    ("training", "stop"): Capability.WRITE_KINESIS,
    ("training", "stopAll"): Capability.WRITE_KINESIS,
}

# Metric name → guarding operation.  awareness is guarded per label.
METRIC_OPERATIONS: dict[str, Operation] = {
    "brainwaves": Operation.BRAINWAVES,
    "accelerometer": Operation.ACCELEROMETER,
    "signalQuality": Operation.SIGNAL_QUALITY,
    "kinesis": Operation.KINESIS,
    "predictions": Operation.PREDICTIONS,
    "status": Operation.STATUS,
    "settings": Operation.SETTINGS,
}

AWARENESS_OPERATIONS: dict[str, Operation] = {
    "calm": Operation.CALM,
    "focus": Operation.FOCUS,
}

_KNOWN_SCOPES = {c.value: c for c in Capability}


# ---------------------------------------------------------------------------
# Claims parsing
# ---------------------------------------------------------------------------


def parse_claims(tokens: Iterable[str]) -> frozenset[Capability]:
    """Convert raw scope tokens to capabilities, dropping unknown ones."""
    claims: set[Capability] = set()
    for token in tokens:
        capability = _KNOWN_SCOPES.get(token.strip())
        if capability is None:
            logger.debug("Ignoring unknown scope token %r", token)
            continue
        claims.add(capability)
    return frozenset(claims)


def claims_from_token(id_token: str) -> frozenset[Capability]:
    """Read the ``scopes`` claim out of a backend-issued ID token.

    The backend verified the token when it issued the session; here it is
    only decoded.  ``scopes`` may be a list or a comma/space separated string.
    """
    try:
        payload = pyjwt.decode(id_token, options={"verify_signature": False})
    except pyjwt.InvalidTokenError as exc:
        logger.warning("Could not decode ID token claims: %s", exc)
        return frozenset()

    scopes = payload.get("scopes", [])
    if isinstance(scopes, str):
        scopes = [s for s in re.split(r"[,\s]+", scopes) if s]
    return parse_claims(scopes)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def required_scope(operation: Operation) -> Capability | None:
    return REQUIRED_SCOPES[operation]


def check(claims: frozenset[Capability], operation: Operation) -> ScopeError | None:
    """Return a ScopeError if ``claims`` lack the scope ``operation`` needs."""
    needed = required_scope(operation)
    if needed is None or needed in claims:
        return None
    return ScopeError(needed.value, operation.value)


def check_action(claims: frozenset[Capability], action: Action) -> ScopeError | None:
    """Same as ``check`` for a dispatched action.  Unknown actions are denied."""
    function_name = f"dispatchAction:{action.command}-{action.action}"
    needed = ACTION_SCOPES.get((action.command, action.action))
    if needed is None:
        return ScopeError(function_name, function_name)
    if needed in claims:
        return None
    return ScopeError(needed.value, function_name)


def authorize(claims: frozenset[Capability], operation: Operation) -> None:
    """Raise ScopeError unless ``claims`` allow ``operation``."""
    error = check(claims, operation)
    if error is not None:
        logger.info("Denied %s: missing %s", operation.value, error.required_scope)
        raise error


def authorize_action(claims: frozenset[Capability], action: Action) -> None:
    error = check_action(claims, action)
    if error is not None:
        logger.info("Denied %s: missing %s", error.operation, error.required_scope)
        raise error


def check_metric(
    claims: frozenset[Capability], metric: str, labels: Iterable[str] = ()
) -> ScopeError | None:
    """Same as ``check`` for a metric subscription.

    Unknown metrics and unknown awareness labels are denied.  An awareness
    request without labels needs every awareness scope.
    """
    function_name = f"subscribe:{metric}"
    if metric == "awareness":
        requested = tuple(labels) or tuple(AWARENESS_OPERATIONS)
        for label in requested:
            operation = AWARENESS_OPERATIONS.get(label)
            if operation is None:
                name = f"{function_name}-{label}"
                return ScopeError(name, name)
            error = check(claims, operation)
            if error is not None:
                return error
        return None

    operation = METRIC_OPERATIONS.get(metric)
    if operation is None:
        return ScopeError(function_name, function_name)
    return check(claims, operation)


def authorize_metric(
    claims: frozenset[Capability], metric: str, labels: Iterable[str] = ()
) -> None:
    error = check_metric(claims, metric, labels)
    if error is not None:
        logger.info("Denied %s: missing %s", error.operation, error.required_scope)
        raise error
