"""Shared fixtures and in-memory collaborators for SDK tests."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import pytest

from neurostream.catalog import MetricCatalog, load_metric_catalog
from neurostream.client import NeuroClient
from neurostream.config import ClientSettings
from neurostream.guard import Capability
from neurostream.models import (
    Action,
    AuthUser,
    Credentials,
    DeviceInfo,
    MetricSubscriptionRequest,
    TransferDeviceOptions,
)
from neurostream.transports.base import BackendClient, LocalSocketClient

CREDENTIALS = Credentials(email="tester@example.com", password="hunter22")

ALL_SCOPES = [c.value for c in Capability]

CROWN = DeviceInfo(
    deviceId="crown-1",
    deviceNickname="Crown-A1B",
    modelVersion="3",
    socketUrl="http://192.168.1.20:9000",
)
NOTION_DK1 = DeviceInfo(deviceId="notion-1", deviceNickname="Notion-DK1", modelVersion="1")

_CLOSE = object()

_OBSERVERS = ("observe_devices", "observe_claims", "observe_connection")


async def _drain(queue: asyncio.Queue) -> AsyncIterator[Any]:
    while True:
        item = await queue.get()
        if item is _CLOSE:
            return
        if isinstance(item, BaseException):
            raise item
        yield item


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeBackend(BackendClient):
    """In-memory backend.  Every call is appended to ``calls``.

    Values are pushed into observed paths with ``push(path, value)``; an
    exception pushed the same way is raised from the stream.
    """

    def __init__(
        self,
        devices: list[DeviceInfo] | None = None,
        scopes: list[str] | None = None,
    ) -> None:
        self.devices = list(devices if devices is not None else [CROWN, NOTION_DK1])
        self.scopes = list(scopes if scopes is not None else ALL_SCOPES)
        self.calls: list[tuple] = []
        self.subscriptions: dict[str, tuple[str, MetricSubscriptionRequest, str]] = {}
        self.streams: dict[tuple[str, str], list[asyncio.Queue]] = {}
        self.device_queue: asyncio.Queue = asyncio.Queue()
        self.claims_queue: asyncio.Queue = asyncio.Queue()
        self.connection_queue: asyncio.Queue = asyncio.Queue()
        self.login_error: Exception | None = None
        self.devices_error: Exception | None = None
        self.login_gate: asyncio.Event | None = None
        self.subscribe_gate: asyncio.Event | None = None
        self.action_delay_s = 0.0
        self.device_time = 0
        self.info: dict = {"apiVersion": "1.4.2", "osVersion": "16.1.0"}
        self._next_id = 0

    def transport_calls(self) -> list[str]:
        return [c[0] for c in self.calls if c[0] not in _OBSERVERS]

    def push(self, path: str, value: Any, device_id: str = "crown-1") -> None:
        for queue in self.streams.get((device_id, path), []):
            queue.put_nowait(value)

    # -- auth ----------------------------------------------------------

    async def login(self, credentials: Credentials) -> AuthUser:
        self.calls.append(("login", credentials.email))
        if self.login_gate is not None:
            await self.login_gate.wait()
        if self.login_error is not None:
            raise self.login_error
        return AuthUser(user_id="user-1", claims=list(self.scopes))

    async def logout(self) -> None:
        self.calls.append(("logout",))

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))

    def observe_connection(self) -> AsyncIterator[bool]:
        self.calls.append(("observe_connection",))
        return _drain(self.connection_queue)

    async def go_online(self) -> None:
        self.calls.append(("go_online",))
        self.connection_queue.put_nowait(True)

    async def go_offline(self) -> None:
        self.calls.append(("go_offline",))
        self.connection_queue.put_nowait(False)

    # -- devices -------------------------------------------------------

    async def get_devices(self) -> list[DeviceInfo]:
        self.calls.append(("get_devices",))
        if self.devices_error is not None:
            raise self.devices_error
        return list(self.devices)

    def observe_devices(self) -> AsyncIterator[list[DeviceInfo]]:
        self.calls.append(("observe_devices",))
        return _drain(self.device_queue)

    def observe_claims(self) -> AsyncIterator[list[str]]:
        self.calls.append(("observe_claims",))
        return _drain(self.claims_queue)

    def observe_path(self, device_id: str, path: str) -> AsyncIterator[Any]:
        self.calls.append(("observe_path", device_id, path))
        queue: asyncio.Queue = asyncio.Queue()
        self.streams.setdefault((device_id, path), []).append(queue)
        return _drain(queue)

    async def get_info(self, device_id: str) -> dict:
        self.calls.append(("get_info", device_id))
        return dict(self.info)

    async def change_settings(self, device_id: str, settings: dict) -> None:
        self.calls.append(("change_settings", device_id, settings))

    async def add_device(self, device_id: str) -> None:
        self.calls.append(("add_device", device_id))

    async def remove_device(self, device_id: str) -> None:
        self.calls.append(("remove_device", device_id))

    async def transfer_device(self, options: TransferDeviceOptions) -> None:
        self.calls.append(("transfer_device", options.device_id))

    # -- metrics -------------------------------------------------------

    async def create_subscription(
        self, device_id: str, request: MetricSubscriptionRequest, server_type: str
    ) -> str:
        self.calls.append(("create_subscription", device_id, request.metric, server_type))
        if self.subscribe_gate is not None:
            await self.subscribe_gate.wait()
        self._next_id += 1
        subscription_id = f"sub-{self._next_id}"
        self.subscriptions[subscription_id] = (device_id, request, server_type)
        return subscription_id

    async def remove_subscription(self, device_id: str, subscription_id: str) -> None:
        self.calls.append(("remove_subscription", device_id, subscription_id))
        self.subscriptions.pop(subscription_id, None)

    async def write_metric(self, device_id: str, metric: str, value: dict) -> None:
        self.calls.append(("write_metric", device_id, metric, value))

    async def dispatch_action(self, device_id: str, action: Action) -> Any:
        self.calls.append(("dispatch_action", device_id, action.command, action.action))
        if self.action_delay_s:
            await asyncio.sleep(self.action_delay_s)
        return {"command": action.command, "action": action.action, "ok": True}

    async def get_timesync(self) -> int:
        self.calls.append(("get_timesync",))
        return self.device_time

    async def remove_oauth_access(self) -> dict:
        self.calls.append(("remove_oauth_access",))
        return {"revoked": True}


class FakeLocalSocket(LocalSocketClient):
    """In-memory device socket.  ``push(metric, value)`` feeds open streams."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.connected_url: str | None = None
        self.connect_error: Exception | None = None
        self.disconnect_gate: asyncio.Event | None = None
        self.streams: dict[str, list[asyncio.Queue]] = {}
        self.actions: list[Action] = []

    def push(self, metric: str, value: Any) -> None:
        for queue in self.streams.get(metric, []):
            queue.put_nowait(value)

    async def connect(self, url: str) -> None:
        self.calls.append(("connect", url))
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_url = url

    def subscribe_metric(self, request: MetricSubscriptionRequest) -> AsyncIterator[Any]:
        self.calls.append(("subscribe_metric", request.metric))
        queue: asyncio.Queue = asyncio.Queue()
        self.streams.setdefault(request.metric, []).append(queue)
        return _drain(queue)

    async def send_action(
        self, action: Action, response_required: bool = False, timeout_ms: int | None = None
    ) -> Any:
        self.calls.append(("send_action", action.command, action.action))
        self.actions.append(action)
        return {"command": action.command, "action": action.action, "ok": True}

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        if self.disconnect_gate is not None:
            await self.disconnect_gate.wait()
        self.connected_url = None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def catalog() -> MetricCatalog:
    """Load the bundled metric catalog."""
    return load_metric_catalog()


@pytest.fixture
def settings() -> ClientSettings:
    """Settings isolated from the environment, with auto-select off."""
    return ClientSettings(_env_file=None, auto_select_device=False, timesync=False)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def local_socket() -> FakeLocalSocket:
    return FakeLocalSocket()


@pytest.fixture
def client(
    backend: FakeBackend,
    local_socket: FakeLocalSocket,
    settings: ClientSettings,
    catalog: MetricCatalog,
) -> NeuroClient:
    return NeuroClient(
        backend=backend,
        local_socket=local_socket,
        settings=settings,
        catalog=catalog,
    )


async def login_and_select(client: NeuroClient, device_id: str = "crown-1") -> DeviceInfo:
    """Log in and select ``device_id``."""
    await client.login(CREDENTIALS)
    return await client.select_device(
        lambda devices: next((d for d in devices if d.device_id == device_id), None)
    )
