"""Abstract contracts for the SDK's external collaborators.

Two collaborators sit outside the SDK core and are consumed only through
these interfaces:

    BackendClient     — cloud account, device records, realtime paths
    LocalSocketClient — direct socket to a device on the local network

Between them and the multiplexer sits ``MetricTransport``: one small
adapter per TransportKind that turns a MetricSubscriptionRequest into a
stream of values and releases it again.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator

from neurostream.models import (
    Action,
    AuthUser,
    Credentials,
    DeviceInfo,
    MetricSubscriptionRequest,
    TransferDeviceOptions,
    TransportKind,
)

# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------


class BackendClient(ABC):
    """Cloud backend: authentication, device records and realtime paths.

    Streams are async iterators that stay open until the consumer stops
    iterating (``aclose()``) or the backend ends them.  Transient reconnects
    are the backend's own business.
    """

    @abstractmethod
    async def login(self, credentials: Credentials) -> AuthUser:
        """Authenticate and return the signed-in user.  Raise on bad credentials."""

    @abstractmethod
    async def logout(self) -> None:
        """End the backend session."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the realtime connection."""

    @abstractmethod
    async def get_devices(self) -> list[DeviceInfo]:
        """One-shot fetch of the user's devices."""

    @abstractmethod
    def observe_devices(self) -> AsyncIterator[list[DeviceInfo]]:
        """Stream the user's device list every time it changes."""

    @abstractmethod
    def observe_claims(self) -> AsyncIterator[list[str]]:
        """Stream the session's scope tokens every time they change."""

    @abstractmethod
    def observe_connection(self) -> AsyncIterator[bool]:
        """Stream True/False as the realtime connection comes and goes."""

    @abstractmethod
    async def go_online(self) -> None:
        """Resume the realtime connection after ``go_offline``."""

    @abstractmethod
    async def go_offline(self) -> None:
        """Suspend the realtime connection without ending the session."""

    @abstractmethod
    def observe_path(self, device_id: str, path: str) -> AsyncIterator[Any]:
        """Stream the value stored under ``path`` for one device."""

    @abstractmethod
    async def create_subscription(
        self, device_id: str, request: MetricSubscriptionRequest, server_type: str
    ) -> str:
        """Register a metric subscription record; return its id."""

    @abstractmethod
    async def remove_subscription(self, device_id: str, subscription_id: str) -> None:
        """Delete a metric subscription record."""

    @abstractmethod
    async def write_metric(self, device_id: str, metric: str, value: dict) -> None:
        """Push a metric value to the device's metric path."""

    @abstractmethod
    async def dispatch_action(self, device_id: str, action: Action) -> Any:
        """Queue an action for the device; resolve with its response if any."""

    @abstractmethod
    async def get_timesync(self) -> int:
        """Authoritative device-side time in ms."""

    @abstractmethod
    async def get_info(self, device_id: str) -> dict:
        """Device info record."""

    @abstractmethod
    async def change_settings(self, device_id: str, settings: dict) -> None:
        """Merge ``settings`` into the device settings record."""

    @abstractmethod
    async def add_device(self, device_id: str) -> None:
        """Claim a device for the current user."""

    @abstractmethod
    async def remove_device(self, device_id: str) -> None:
        """Release a device from the current user."""

    @abstractmethod
    async def transfer_device(self, options: TransferDeviceOptions) -> None:
        """Transfer a device to another account."""

    @abstractmethod
    async def remove_oauth_access(self) -> dict:
        """Revoke the OAuth grant the current session was created from."""


class LocalSocketClient(ABC):
    """Direct socket connection to a device on the local network."""

    SERVER_TYPE: str = "websocket"

    @abstractmethod
    async def connect(self, url: str) -> None:
        """Open the socket.  Raise if the device is unreachable."""

    @abstractmethod
    def subscribe_metric(self, request: MetricSubscriptionRequest) -> AsyncIterator[Any]:
        """Stream values for one metric request."""

    @abstractmethod
    async def send_action(
        self, action: Action, response_required: bool = False, timeout_ms: int | None = None
    ) -> Any:
        """Send an action; resolve with the acknowledgment when required."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the socket."""


# ---------------------------------------------------------------------------
# Metric transport adapters
# ---------------------------------------------------------------------------


@dataclass
class TransportHandle:
    """Live transport-side resources backing one physical subscription.

    Attributes:
        kind:            Which transport carries the stream.
        stream:          Async iterator of values as sent by the transport.
        subscription_id: Backend subscription record, when one was created.
        device_id:       Device the stream belongs to.
    """

    kind: TransportKind
    stream: AsyncIterator[Any]
    subscription_id: str | None = None
    device_id: str | None = None


class MetricTransport(ABC):
    """Adapter between the multiplexer and one collaborator."""

    KIND: TransportKind

    @abstractmethod
    async def open(self, request: MetricSubscriptionRequest) -> TransportHandle:
        """Create the transport-side subscription and return its stream."""

    @abstractmethod
    async def release(self, handle: TransportHandle) -> None:
        """Tear down whatever ``open`` created."""

    @staticmethod
    async def _close_stream(handle: TransportHandle) -> None:
        aclose = getattr(handle.stream, "aclose", None)
        if aclose is not None:
            await aclose()
