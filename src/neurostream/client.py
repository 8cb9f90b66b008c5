"""NeuroClient: the public entry point of the SDK.

Every public call follows the same path::

    capability guard → (device check) → router → multiplexer / transport

The guard runs first and synchronously, so a denied call never reaches a
transport.

Usage::

    client = NeuroClient(backend=MyBackend(), local_socket=MySocket())
    await client.login(Credentials(email="...", password="..."))
    await client.select_device(lambda devices: devices[0])

    async with await client.calm() as calm:
        async for probability in calm:
            print(probability)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from neurostream.catalog import MetricCatalog, get_metric_catalog
from neurostream.config import ClientSettings, get_settings
from neurostream.errors import (
    AckTimeoutError,
    LimitError,
    exceeded_max_items,
    location_not_found,
    metric_not_supported_by_model,
)
from neurostream.guard import Capability, Operation, authorize, authorize_action, authorize_metric
from neurostream.models import (
    Action,
    Credentials,
    DeviceInfo,
    MetricSubscriptionRequest,
    OAuthConfig,
    OAuthQuery,
    OAuthQueryResult,
    TransferDeviceOptions,
    TransportKind,
)
from neurostream.multiplexer import MetricSubscription, SubscriptionMultiplexer
from neurostream.router import TransportRouter
from neurostream.session import DeviceSelector, Session, SessionManager, SessionState
from neurostream.signals import ConnectionState
from neurostream.timesync import ClockSync
from neurostream.transports.base import BackendClient, LocalSocketClient
from neurostream.transports.cloud import CloudMetricTransport
from neurostream.transports.local import LocalMetricTransport
from neurostream.transports.oauth import OAuthClient

logger = logging.getLogger("neurostream.client")

class Training:
    """Training commands for kinesis/predictions labels."""

    def __init__(self, client: "NeuroClient") -> None:
        self._client = client

    async def record(self, metric: str, label: str, **options: Any) -> Any:
        user = self._client.session
        message = {
            "fit": False,
            "baseline": False,
            "timestamp": self._client.timestamp,
            "metric": metric,
            "label": label,
            **options,
            "userId": user.user_id if user else None,
        }
        return await self._client.dispatch_action(
            Action(command="training", action="record", message=message)
        )

    async def stop(self, metric: str, label: str) -> Any:
        return await self._client.dispatch_action(
            Action(command="training", action="stop", message={"metric": metric, "label": label})
        )

    async def stop_all(self) -> Any:
        return await self._client.dispatch_action(
            Action(command="training", action="stopAll", message={})
        )


class NeuroClient:
    """Authenticate, pick a device, and stream its metrics.

    Args:
        backend:      Cloud backend client.
        local_socket: Local socket client; enables local mode when given.
        settings:     Client settings (defaults from the environment).
        catalog:      Metric catalog (defaults to the bundled one).
        oauth:        OAuth helper client.
        clock:        Clock sync service (built from settings by default).
    """

    def __init__(
        self,
        backend: BackendClient,
        local_socket: LocalSocketClient | None = None,
        settings: ClientSettings | None = None,
        catalog: MetricCatalog | None = None,
        oauth: OAuthClient | None = None,
        clock: ClockSync | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._catalog = catalog or get_metric_catalog()
        self._backend = backend
        self._local_socket = local_socket
        self._oauth = oauth
        self._clock = clock or ClockSync(
            get_device_time=backend.get_timesync,
            interval_s=self._settings.timesync_interval_s,
            window=self._settings.timesync_window,
            probe_timeout_s=self._settings.timesync_probe_timeout_s,
        )
        self._router = TransportRouter(self._catalog)
        self._multiplexer = SubscriptionMultiplexer()
        self._sessions = SessionManager(
            backend=backend,
            multiplexer=self._multiplexer,
            clock=self._clock,
            local_socket=local_socket,
            settings=self._settings,
        )

        def device_id() -> str | None:
            device = self._sessions.selected_device
            return device.device_id if device else None

        self._multiplexer.set_transport(
            TransportKind.CLOUD,
            CloudMetricTransport(backend, device_id, self._catalog),
        )
        if local_socket is not None:
            self._multiplexer.set_transport(
                TransportKind.LOCAL_SOCKET,
                LocalMetricTransport(local_socket, backend, device_id),
            )
        self.training = Training(self)

    # ------------------------------------------------------------------
    # Components (exposed for advanced use and tests)
    # ------------------------------------------------------------------

    @property
    def router(self) -> TransportRouter:
        return self._router

    @property
    def multiplexer(self) -> SubscriptionMultiplexer:
        return self._multiplexer

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def clock(self) -> ClockSync:
        return self._clock

    @property
    def session(self) -> Session | None:
        return self._sessions.session

    @property
    def state(self) -> SessionState:
        return self._sessions.state

    @property
    def timestamp(self) -> int:
        return self._clock.now()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def login(self, credentials: Credentials) -> Session:
        return await self._sessions.login(credentials)

    async def logout(self) -> None:
        await self._sessions.logout()

    async def disconnect(self) -> None:
        await self._sessions.disconnect()

    async def get_devices(self) -> list[DeviceInfo]:
        authorize(self._sessions.claims, Operation.GET_DEVICES)
        return list(await self._sessions.get_devices())

    async def select_device(self, selector: DeviceSelector) -> DeviceInfo:
        authorize(self._sessions.claims, Operation.SELECT_DEVICE)
        return await self._sessions.select_device(selector)

    def get_selected_device(self) -> DeviceInfo | None:
        authorize(self._sessions.claims, Operation.GET_SELECTED_DEVICE)
        return self._sessions.selected_device

    async def get_info(self) -> DeviceInfo:
        authorize(self._sessions.claims, Operation.GET_INFO)
        device = self._sessions.require_device()
        info = await self._backend.get_info(device.device_id)
        return DeviceInfo.model_validate({**device.model_dump(by_alias=True), **info})

    async def enable_local_mode(self, enabled: bool) -> bool:
        authorize(self._sessions.claims, Operation.ENABLE_LOCAL_MODE)
        return await self._sessions.enable_local_mode(enabled)

    def is_local_mode(self) -> bool:
        authorize(self._sessions.claims, Operation.IS_LOCAL_MODE)
        return self._sessions.local_mode_enabled

    # ------------------------------------------------------------------
    # Observables
    #
    # Each stream yields the current value first, then every change.  The
    # guard runs when the method is called, before anything is yielded.
    # ------------------------------------------------------------------

    def on_user_devices_change(self) -> AsyncIterator[tuple[DeviceInfo, ...]]:
        authorize(self._sessions.claims, Operation.ON_USER_DEVICES_CHANGE)
        return self._sessions.devices_signal.watch()

    def on_device_change(self) -> AsyncIterator[DeviceInfo | None]:
        authorize(self._sessions.claims, Operation.ON_DEVICE_CHANGE)
        return self._sessions.selected_device_signal.watch()

    def on_user_claims_change(self) -> AsyncIterator[frozenset[Capability]]:
        authorize(self._sessions.claims, Operation.ON_USER_CLAIMS_CHANGE)
        return self._sessions.claims_signal.watch()

    def on_local_mode_change(self) -> AsyncIterator[bool]:
        authorize(self._sessions.claims, Operation.IS_LOCAL_MODE)
        return self._sessions.local_mode_signal.watch()

    def on_connection_change(self) -> AsyncIterator[ConnectionState]:
        """Best-effort realtime connection state (ONLINE / OFFLINE)."""
        authorize(self._sessions.claims, Operation.ON_CONNECTION_CHANGE)
        return self._sessions.connection_signal.watch()

    async def go_online(self) -> None:
        authorize(self._sessions.claims, Operation.GO_ONLINE)
        await self._sessions.go_online()

    async def go_offline(self) -> None:
        authorize(self._sessions.claims, Operation.GO_OFFLINE)
        await self._sessions.go_offline()

    async def add_device(self, device_id: str) -> None:
        authorize(self._sessions.claims, Operation.ADD_DEVICE)
        await self._backend.add_device(device_id)

    async def remove_device(self, device_id: str) -> None:
        authorize(self._sessions.claims, Operation.REMOVE_DEVICE)
        await self._backend.remove_device(device_id)

    async def transfer_device(self, options: TransferDeviceOptions) -> None:
        authorize(self._sessions.claims, Operation.TRANSFER_DEVICE)
        await self._backend.transfer_device(options)

    async def change_settings(self, settings: dict[str, Any]) -> None:
        authorize(self._sessions.claims, Operation.CHANGE_SETTINGS)
        device = self._sessions.require_device()
        await self._backend.change_settings(device.device_id, settings)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        metric: str,
        *labels: str,
        atomic: bool = False,
        local_only: bool = False,
        unwrap: str | None = None,
    ) -> MetricSubscription:
        """Subscribe to ``metric`` filtered to ``labels`` (none = all).

        Args:
            metric:     Metric name.
            labels:     Label filter, in caller order.
            atomic:     Deliver the full labeled object as one unit.
            local_only: Fail instead of falling back to the cloud.
            unwrap:     Yield only this label's value.

        Raises:
            ScopeError:                Missing capability, or an unknown metric or label.
            DeviceSelectionError:      No device selected.
            TransportUnsupportedError: Device model or local socket cannot serve it.
        """
        authorize_metric(self._sessions.claims, metric, labels)
        device = self._sessions.require_device()
        self._router.require_model_support(metric, device.model_version)

        context = self._sessions.routing_context()
        if local_only:
            self._router.require_local(metric, context)
        kind = self._router.route(metric, context)

        request = MetricSubscriptionRequest(metric=metric, labels=tuple(labels), atomic=atomic)
        return await self._multiplexer.subscribe(request, kind, unwrap=unwrap)

    def unsubscribe(self, subscription: MetricSubscription) -> None:
        self._multiplexer.unsubscribe(subscription)

    def _atomic(self, metric: str) -> bool:
        spec = self._catalog.metrics.get(metric)
        return bool(spec and spec.atomic)

    async def brainwaves(self, *labels: str) -> MetricSubscription:
        return await self.subscribe("brainwaves", *labels)

    async def calm(self) -> MetricSubscription:
        return await self.subscribe("awareness", "calm", unwrap="calm")

    async def focus(self) -> MetricSubscription:
        return await self.subscribe("awareness", "focus", unwrap="focus")

    async def accelerometer(self) -> MetricSubscription:
        return await self.subscribe(
            "accelerometer",
            *self._catalog.labels("accelerometer"),
            atomic=self._atomic("accelerometer"),
        )

    async def signal_quality(self) -> MetricSubscription:
        return await self.subscribe(
            "signalQuality",
            *self._catalog.labels("signalQuality"),
            atomic=self._atomic("signalQuality"),
        )

    async def kinesis(self, *labels: str) -> MetricSubscription:
        return await self.subscribe("kinesis", *labels)

    async def predictions(self, *labels: str) -> MetricSubscription:
        return await self.subscribe("predictions", *labels)

    async def status(self) -> MetricSubscription:
        return await self.subscribe("status", atomic=self._atomic("status"))

    async def settings(self) -> MetricSubscription:
        return await self.subscribe("settings", atomic=self._atomic("settings"))

    async def next_metric(self, metric: str, value: dict[str, Any]) -> None:
        """Write a metric value for the selected device."""
        authorize(self._sessions.claims, Operation.NEXT_METRIC)
        device = self._sessions.require_device()
        await self._backend.write_metric(device.device_id, metric, value)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def dispatch_action(self, action: Action) -> Any:
        """Guard, route and send ``action``.

        When ``action.response_required`` the call waits at most
        ``response_timeout_ms`` for the acknowledgment and raises
        AckTimeoutError on expiry.  The command is not recalled.
        """
        authorize_action(self._sessions.claims, action)
        device = self._sessions.require_device()

        kind = self._router.route_action(action, self._sessions.routing_context())
        timeout_ms = action.response_timeout_ms or self._settings.action_timeout_ms
        if kind is TransportKind.LOCAL_SOCKET and self._local_socket is not None:
            pending = self._local_socket.send_action(
                action,
                response_required=action.response_required,
                timeout_ms=timeout_ms,
            )
        else:
            pending = self._backend.dispatch_action(device.device_id, action)

        logger.debug("Dispatching %s/%s via %s", action.command, action.action, kind.value)
        if not action.response_required:
            return await pending
        try:
            return await asyncio.wait_for(pending, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            raise AckTimeoutError(
                f"{action.command}/{action.action} not acknowledged within {timeout_ms}ms"
            ) from exc

    async def add_marker(self, label: str) -> Any:
        """Inject a timestamped marker into the EEG stream."""
        self._sessions.require_device()
        if not label:
            raise LimitError("A label is required for add_marker")
        return await self.dispatch_action(
            Action(
                command="marker",
                action="add",
                message={"label": label, "timestamp": self.timestamp},
            )
        )

    async def haptics(self, effects: dict[str, list[str]]) -> Any:
        """Queue haptic effects per motor location (e.g. ``{"P7": [...]}``)."""
        metric = "haptics"
        device = self._sessions.require_device()
        platform = self._catalog.platform(device.model_version)
        if platform is None or not platform.supports_haptics:
            raise metric_not_supported_by_model(metric, device.model_version)

        max_items = self._catalog.haptics.max_effects_per_motor
        request: dict[str, list[str]] = {motor: [] for motor in platform.haptic_motors}
        for location, motor_effects in effects.items():
            if location not in request:
                raise location_not_found(location, device.model_version)
            if len(motor_effects) > max_items:
                raise exceeded_max_items(max_items)
            request[location] = list(motor_effects)

        return await self.dispatch_action(
            Action(
                command=metric,
                action="queue",
                message={"effects": request},
                response_required=True,
                response_timeout_ms=self._catalog.haptics.response_timeout_ms,
            )
        )

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------

    def get_timesync_offset(self) -> int:
        return self._clock.get_offset()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def _oauth_client(self) -> OAuthClient:
        if self._oauth is None:
            self._oauth = OAuthClient(self._settings)
        return self._oauth

    async def create_oauth_url(self, config: OAuthConfig) -> str:
        return await self._oauth_client().create_oauth_url(config)

    async def get_oauth_token(self, query: OAuthQuery) -> OAuthQueryResult:
        return await self._oauth_client().get_oauth_token(query)

    async def remove_oauth_access(self) -> dict:
        return await self._backend.remove_oauth_access()
