"""Tests for the NeuroClient facade: guarding, routing and actions."""

from __future__ import annotations

import pytest

from neurostream.catalog import MetricCatalog
from neurostream.client import NeuroClient
from neurostream.config import ClientSettings
from neurostream.errors import (
    AckTimeoutError,
    DeviceSelectionError,
    LimitError,
    ScopeError,
    TransportUnsupportedError,
)
from neurostream.models import Action, TransferDeviceOptions, TransportKind
from neurostream.tests.conftest import (
    CREDENTIALS,
    FakeBackend,
    FakeLocalSocket,
    login_and_select,
)


@pytest.fixture
def limited_backend() -> FakeBackend:
    """Backend granting only device info and calm."""
    return FakeBackend(scopes=["read:devices-info", "read:calm"])


@pytest.fixture
def limited_client(
    limited_backend: FakeBackend, local_socket: FakeLocalSocket, settings: ClientSettings
) -> NeuroClient:
    return NeuroClient(limited_backend, local_socket, settings=settings)


# ---------------------------------------------------------------------------
# Capability guard in front of transports
# ---------------------------------------------------------------------------


class TestGuarding:
    @pytest.mark.asyncio
    async def test_denied_subscribe_makes_no_transport_call(
        self, limited_client: NeuroClient, limited_backend: FakeBackend
    ) -> None:
        await login_and_select(limited_client)
        before = limited_backend.transport_calls()

        with pytest.raises(ScopeError) as excinfo:
            await limited_client.brainwaves("alpha")
        assert excinfo.value.required_scope == "read:brainwaves"
        assert limited_backend.transport_calls() == before
        await limited_client.logout()

    @pytest.mark.asyncio
    async def test_denied_write_makes_no_transport_call(
        self, limited_client: NeuroClient, limited_backend: FakeBackend
    ) -> None:
        await login_and_select(limited_client)
        before = limited_backend.transport_calls()

        with pytest.raises(ScopeError):
            await limited_client.add_marker("eyes-closed")
        with pytest.raises(ScopeError):
            await limited_client.haptics({"P7": ["strong_click_100"]})
        with pytest.raises(ScopeError):
            await limited_client.remove_device("crown-1")
        assert limited_backend.transport_calls() == before
        await limited_client.logout()

    @pytest.mark.asyncio
    async def test_unknown_metric_and_label_denied_without_transport_call(
        self, limited_client: NeuroClient, limited_backend: FakeBackend
    ) -> None:
        await login_and_select(limited_client)
        before = limited_backend.transport_calls()

        with pytest.raises(ScopeError) as excinfo:
            await limited_client.subscribe("heartRate")
        assert excinfo.value.operation == "subscribe:heartRate"
        with pytest.raises(ScopeError) as excinfo:
            await limited_client.subscribe("awareness", "calm", "stress")
        assert excinfo.value.operation == "subscribe:awareness-stress"
        with pytest.raises(ScopeError):
            await limited_client.subscribe("awareness")
        assert limited_backend.transport_calls() == before
        await limited_client.logout()

    @pytest.mark.asyncio
    async def test_granted_scope_allows_subscribe(
        self, limited_client: NeuroClient
    ) -> None:
        await login_and_select(limited_client)
        sub = await limited_client.calm()
        assert sub.active
        with pytest.raises(ScopeError):
            await limited_client.focus()
        await limited_client.logout()

    @pytest.mark.asyncio
    async def test_subscribe_without_device(self, client: NeuroClient) -> None:
        await client.login(CREDENTIALS)
        with pytest.raises(DeviceSelectionError):
            await client.brainwaves()
        await client.logout()


# ---------------------------------------------------------------------------
# Metric subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_cloud_subscription_creates_backend_record(
        self, client: NeuroClient, backend: FakeBackend
    ) -> None:
        await login_and_select(client)
        sub = await client.brainwaves("powerByBand")
        assert sub.transport is TransportKind.CLOUD
        assert ("create_subscription", "crown-1", "brainwaves", "firebase") in backend.calls
        assert ("observe_path", "crown-1", "metrics/brainwaves") in backend.calls

        sub.unsubscribe()
        await client.multiplexer.wait_closed()
        assert backend.subscriptions == {}
        await client.logout()

    @pytest.mark.asyncio
    async def test_two_callers_share_one_backend_subscription(
        self, client: NeuroClient, backend: FakeBackend
    ) -> None:
        await login_and_select(client)
        a = await client.calm()
        b = await client.calm()
        assert len(backend.subscriptions) == 1

        backend.push("metrics/awareness", {"calm": 0.91, "focus": 0.2})
        assert await a.get(timeout=1) == 0.91
        assert await b.get(timeout=1) == 0.91
        await client.logout()

    @pytest.mark.asyncio
    async def test_local_mode_routes_allow_listed_metrics(
        self, client: NeuroClient, backend: FakeBackend, local_socket: FakeLocalSocket
    ) -> None:
        await login_and_select(client)
        await client.enable_local_mode(True)

        sub = await client.kinesis("push")
        assert sub.transport is TransportKind.LOCAL_SOCKET
        assert ("create_subscription", "crown-1", "kinesis", "websocket") in backend.calls

        local_socket.push("kinesis", {"push": 0.7, "leftArm": 0.1})
        assert await sub.get(timeout=1) == {"push": 0.7}

        settings_sub = await client.settings()
        assert settings_sub.transport is TransportKind.CLOUD
        await client.logout()

    @pytest.mark.asyncio
    async def test_existing_subscription_keeps_its_transport(
        self, client: NeuroClient
    ) -> None:
        await login_and_select(client)
        cloud = await client.brainwaves()
        await client.enable_local_mode(True)
        local = await client.brainwaves()

        assert cloud.transport is TransportKind.CLOUD
        assert local.transport is TransportKind.LOCAL_SOCKET
        assert cloud.active
        assert client.multiplexer.physical_count == 2
        await client.logout()

    @pytest.mark.asyncio
    async def test_local_only_without_local_mode(self, client: NeuroClient) -> None:
        await login_and_select(client)
        with pytest.raises(TransportUnsupportedError):
            await client.subscribe("brainwaves", local_only=True)
        await client.logout()

    @pytest.mark.asyncio
    async def test_accelerometer_rejected_on_model_1(
        self, client: NeuroClient, backend: FakeBackend
    ) -> None:
        await login_and_select(client, "notion-1")
        before = backend.transport_calls()
        with pytest.raises(TransportUnsupportedError, match="model version 1"):
            await client.accelerometer()
        assert backend.transport_calls() == before
        await client.logout()

    @pytest.mark.asyncio
    async def test_signal_quality_is_atomic(
        self, client: NeuroClient, backend: FakeBackend, catalog: MetricCatalog
    ) -> None:
        await login_and_select(client)
        sub = await client.signal_quality()
        assert sub.request.atomic
        assert sub.request.atomic == catalog.metrics["signalQuality"].atomic
        reading = {"CP3": {"standardDeviation": 3.1}, "C3": {"standardDeviation": 2.9}}
        backend.push("metrics/signalQuality", reading)
        assert await sub.get(timeout=1) == reading
        await client.logout()


# ---------------------------------------------------------------------------
# Device management and writes
# ---------------------------------------------------------------------------


class TestDeviceCalls:
    @pytest.mark.asyncio
    async def test_get_info_merges_backend_record(self, client: NeuroClient) -> None:
        await login_and_select(client)
        info = await client.get_info()
        assert info.device_id == "crown-1"
        assert info.api_version == "1.4.2"
        assert info.os_version == "16.1.0"
        await client.logout()

    @pytest.mark.asyncio
    async def test_device_management_forwarded(
        self, client: NeuroClient, backend: FakeBackend
    ) -> None:
        await client.login(CREDENTIALS)
        await client.add_device("crown-2")
        await client.remove_device("crown-2")
        await client.transfer_device(
            TransferDeviceOptions(deviceId="crown-1", recipientsEmail="friend@example.com")
        )
        assert ("add_device", "crown-2") in backend.calls
        assert ("remove_device", "crown-2") in backend.calls
        assert ("transfer_device", "crown-1") in backend.calls
        await client.logout()

    @pytest.mark.asyncio
    async def test_change_settings_and_next_metric(
        self, client: NeuroClient, backend: FakeBackend
    ) -> None:
        await login_and_select(client)
        await client.change_settings({"lsl": True})
        await client.next_metric("awareness", {"calm": 0.5})
        assert ("change_settings", "crown-1", {"lsl": True}) in backend.calls
        assert ("write_metric", "crown-1", "awareness", {"calm": 0.5}) in backend.calls
        await client.logout()


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class TestActions:
    @pytest.mark.asyncio
    async def test_marker_uses_clock_timestamp(
        self, client: NeuroClient, backend: FakeBackend
    ) -> None:
        await login_and_select(client)
        client.clock.enable()
        client.clock.add_sample(0, 100, 60)
        result = await client.add_marker("eyes-closed")
        assert result["ok"]
        assert ("dispatch_action", "crown-1", "marker", "add") in backend.calls
        await client.logout()

    @pytest.mark.asyncio
    async def test_empty_marker_label_rejected(self, client: NeuroClient) -> None:
        await login_and_select(client)
        with pytest.raises(LimitError) as excinfo:
            await client.add_marker("")
        assert excinfo.value.kind == "invalid"
        await client.logout()

    @pytest.mark.asyncio
    async def test_actions_go_local_in_local_mode(
        self, client: NeuroClient, backend: FakeBackend, local_socket: FakeLocalSocket
    ) -> None:
        await login_and_select(client)
        await client.enable_local_mode(True)
        await client.training.record("kinesis", "push")
        await client.training.stop_all()
        assert ("send_action", "training", "record") in local_socket.calls
        assert ("send_action", "training", "stopAll") in local_socket.calls
        assert not any(c[0] == "dispatch_action" for c in backend.calls)
        assert local_socket.actions[0].message["label"] == "push"
        await client.logout()

    @pytest.mark.asyncio
    async def test_unknown_action_denied(self, client: NeuroClient) -> None:
        await login_and_select(client)
        with pytest.raises(ScopeError):
            await client.dispatch_action(Action(command="firmware", action="flash"))
        await client.logout()

    @pytest.mark.asyncio
    async def test_ack_timeout(self, client: NeuroClient, backend: FakeBackend) -> None:
        await login_and_select(client)
        backend.action_delay_s = 1.0
        action = Action(
            command="marker",
            action="add",
            message={"label": "slow"},
            response_required=True,
            response_timeout_ms=20,
        )
        with pytest.raises(AckTimeoutError) as excinfo:
            await client.dispatch_action(action)
        assert isinstance(excinfo.value, TimeoutError)
        assert excinfo.value.kind == "timeout"
        await client.logout()


class TestHaptics:
    @pytest.mark.asyncio
    async def test_queues_effects_per_motor(
        self, client: NeuroClient, backend: FakeBackend
    ) -> None:
        await login_and_select(client)
        result = await client.haptics({"P7": ["strong_click_100"], "P8": []})
        assert result["ok"]
        assert ("dispatch_action", "crown-1", "haptics", "queue") in backend.calls
        await client.logout()

    @pytest.mark.asyncio
    async def test_unknown_motor_location(self, client: NeuroClient) -> None:
        await login_and_select(client)
        with pytest.raises(TransportUnsupportedError, match="P9"):
            await client.haptics({"P9": ["buzz"]})
        await client.logout()

    @pytest.mark.asyncio
    async def test_too_many_effects(self, client: NeuroClient) -> None:
        await login_and_select(client)
        with pytest.raises(LimitError, match="7") as excinfo:
            await client.haptics({"P7": ["buzz"] * 8})
        assert excinfo.value.kind == "invalid"
        assert isinstance(excinfo.value, ValueError)
        await client.logout()

    @pytest.mark.asyncio
    async def test_model_without_motors(self, client: NeuroClient) -> None:
        await login_and_select(client, "notion-1")
        with pytest.raises(TransportUnsupportedError, match="haptics"):
            await client.haptics({"P7": ["buzz"]})
        await client.logout()


class TestMisc:
    @pytest.mark.asyncio
    async def test_remove_oauth_access_forwarded(
        self, client: NeuroClient, backend: FakeBackend
    ) -> None:
        await client.login(CREDENTIALS)
        assert await client.remove_oauth_access() == {"revoked": True}
        await client.logout()

    def test_timesync_offset_zero_before_enable(self, client: NeuroClient) -> None:
        assert client.get_timesync_offset() == 0
