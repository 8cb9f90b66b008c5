"""Neurostream SDK core.

Client-side session handling for biosensing headsets: authenticate, pick a
device, and stream metrics over the cloud backend or the device's local
socket.

Main entry point:
    NeuroClient — guarded facade over session, router and multiplexer
"""

from neurostream.client import NeuroClient
from neurostream.errors import (
    AckTimeoutError,
    AuthError,
    DeviceSelectionError,
    LimitError,
    ScopeError,
    SDKError,
    StateError,
    TransportUnsupportedError,
)
from neurostream.guard import Capability, Operation
from neurostream.models import (
    Action,
    AuthUser,
    Credentials,
    DeviceInfo,
    MetricSubscriptionRequest,
    TransportKind,
)
from neurostream.multiplexer import MetricSubscription
from neurostream.session import SessionState
from neurostream.signals import ConnectionState, StateSignal

__all__ = [
    "NeuroClient",
    "SDKError",
    "AuthError",
    "ScopeError",
    "DeviceSelectionError",
    "TransportUnsupportedError",
    "AckTimeoutError",
    "StateError",
    "LimitError",
    "Capability",
    "Operation",
    "Action",
    "AuthUser",
    "Credentials",
    "DeviceInfo",
    "MetricSubscriptionRequest",
    "TransportKind",
    "MetricSubscription",
    "SessionState",
    "ConnectionState",
    "StateSignal",
]
