"""Session and device selection state machine.

States::

    LOGGED_OUT ──login──▶ LOGGING_IN ──ok──▶ LOGGED_IN ──select_device──▶ DEVICE_SELECTED
        ▲                     │ fail                                       (cloud | local)
        └─────────────────────┴──────────── logout / disconnect ◀──────────────┘

Local mode is an orthogonal flag on DEVICE_SELECTED.  It can only be turned
on when the selected device advertises a socket URL.

The device list is an immutable snapshot, replaced wholesale on every push
from the backend.  If a push drops the selected device, the selection is
cleared and every live subscription is torn down; callers resubscribe after
selecting again.  A push that moves the selected device to a new socket URL
reconnects the local socket in the background.

Every change to the device list, the selection, the claims, the local-mode
flag and the realtime connection is published on a ``StateSignal`` so
callers can watch it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable, Sequence

from neurostream.config import ClientSettings, get_settings
from neurostream.errors import AuthError, DeviceSelectionError, StateError, must_select_device
from neurostream.guard import Capability, Operation, check, claims_from_token, parse_claims
from neurostream.models import Credentials, DeviceInfo, RoutingContext
from neurostream.multiplexer import SubscriptionMultiplexer
from neurostream.signals import ConnectionState, StateSignal
from neurostream.timesync import ClockSync
from neurostream.transports.base import BackendClient, LocalSocketClient

logger = logging.getLogger("neurostream.session")

DeviceSelector = Callable[[Sequence[DeviceInfo]], "DeviceInfo | None"]


class SessionState(str, Enum):
    LOGGED_OUT = "logged_out"
    LOGGING_IN = "logging_in"
    LOGGED_IN = "logged_in"
    DEVICE_SELECTED = "device_selected"


@dataclass
class Session:
    """The one live session of a client.

    Attributes:
        user_id:            Backend user id.
        claims:             Granted capabilities.
        devices:            Latest device list snapshot.
        selected_device:    Member of ``devices`` or None.
        local_mode_enabled: Route allow-listed metrics over the local socket.
    """

    user_id: str
    claims: frozenset[Capability] = frozenset()
    devices: tuple[DeviceInfo, ...] = ()
    selected_device: DeviceInfo | None = None
    local_mode_enabled: bool = False
    _watchers: list[asyncio.Task] = field(default_factory=list, repr=False)


class SessionManager:
    """Drive login, device selection and local mode.

    Args:
        backend:      Cloud backend client.
        multiplexer:  Torn down on logout and on selected-device loss.
        clock:        Enabled after login when ``settings.timesync`` is set.
        local_socket: Optional local socket client; without it local mode
                      can never be enabled.
        settings:     Client settings.
    """

    def __init__(
        self,
        backend: BackendClient,
        multiplexer: SubscriptionMultiplexer,
        clock: ClockSync,
        local_socket: LocalSocketClient | None = None,
        settings: ClientSettings | None = None,
    ) -> None:
        self._backend = backend
        self._multiplexer = multiplexer
        self._clock = clock
        self._local_socket = local_socket
        self._local_connected_url: str | None = None
        self._settings = settings or get_settings()
        self._state = SessionState.LOGGED_OUT
        self._session: Session | None = None
        # Bumped on every login attempt and teardown.
        self._generation = 0
        self._reconnect: asyncio.Task | None = None

        self.devices_signal: StateSignal[tuple[DeviceInfo, ...]] = StateSignal("devices", ())
        self.selected_device_signal: StateSignal[DeviceInfo | None] = StateSignal(
            "selected_device", None
        )
        self.claims_signal: StateSignal[frozenset[Capability]] = StateSignal("claims", frozenset())
        self.local_mode_signal: StateSignal[bool] = StateSignal("local_mode", False)
        self.connection_signal: StateSignal[ConnectionState] = StateSignal(
            "connection", ConnectionState.OFFLINE
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def claims(self) -> frozenset[Capability]:
        return self._session.claims if self._session else frozenset()

    @property
    def devices(self) -> tuple[DeviceInfo, ...]:
        return self._session.devices if self._session else ()

    @property
    def selected_device(self) -> DeviceInfo | None:
        return self._session.selected_device if self._session else None

    @property
    def local_mode_enabled(self) -> bool:
        return bool(self._session and self._session.local_mode_enabled)

    @property
    def connection(self) -> ConnectionState:
        return self.connection_signal.value

    def socket_url(self) -> str | None:
        """Socket URL in effect: the configured override, else the device's."""
        device = self.selected_device
        if device is None:
            return None
        return self._settings.on_device_socket_url or device.socket_url

    def routing_context(self) -> RoutingContext:
        device = self.selected_device
        return RoutingContext(
            local_mode_enabled=self.local_mode_enabled,
            socket_url=self.socket_url(),
            model_version=device.model_version if device else None,
        )

    def require_device(self) -> DeviceInfo:
        device = self.selected_device
        if device is None:
            raise must_select_device()
        return device

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    async def login(self, credentials: Credentials) -> Session:
        if self._state is not SessionState.LOGGED_OUT:
            raise StateError(f"Cannot log in while {self._state.value}; log out first")

        self._state = SessionState.LOGGING_IN
        self._generation += 1
        generation = self._generation
        try:
            user = await self._backend.login(credentials)
        except Exception as exc:
            if generation == self._generation:
                self._state = SessionState.LOGGED_OUT
            logger.warning("Login failed: %s", exc)
            raise AuthError(f"Login failed: {exc}") from exc

        if generation != self._generation or self._state is not SessionState.LOGGING_IN:
            logger.info("Discarding login for %s: session ended while logging in", user.user_id)
            raise StateError("Logged out while logging in")

        if user.claims:
            claims = parse_claims(user.claims)
        elif user.id_token:
            claims = claims_from_token(user.id_token)
        else:
            claims = frozenset()

        session = Session(user_id=user.user_id, claims=claims)
        self._session = session
        self._state = SessionState.LOGGED_IN
        logger.info("Logged in as %s with %d scope(s)", user.user_id, len(claims))
        self.connection_signal.set(ConnectionState.ONLINE)
        self._publish()

        self._watch(self._backend.observe_devices(), self.apply_device_list, "devices")
        self._watch(self._backend.observe_claims(), self.apply_claims, "claims")
        self._watch(self._backend.observe_connection(), self.apply_connection, "connection")

        if self._settings.timesync:
            self._clock.enable()

        if self._settings.auto_select_device:
            await self._auto_select()

        return session

    async def logout(self) -> None:
        self._teardown_session("logout")
        await self._multiplexer.wait_closed()
        await self._disconnect_local()
        await self._backend.logout()

    async def disconnect(self) -> None:
        self._teardown_session("disconnect")
        await self._multiplexer.wait_closed()
        await self._disconnect_local()
        await self._backend.disconnect()

    def _teardown_session(self, reason: str) -> None:
        self._generation += 1
        self._multiplexer.close_all()
        self._clock.disable()
        if self._session is not None:
            for task in self._session._watchers:
                task.cancel()
            logger.info("Session for %s ended (%s)", self._session.user_id, reason)
        self._session = None
        self._reconnect = None
        self._state = SessionState.LOGGED_OUT
        self.connection_signal.set(ConnectionState.OFFLINE)
        self._publish()

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def get_devices(self) -> tuple[DeviceInfo, ...]:
        """Fetch the device list and store it as the current snapshot."""
        session = self._require_session()
        try:
            devices = await self._backend.get_devices()
        except Exception as exc:
            logger.warning("Device listing failed: %s", exc)
            raise AuthError(
                "Could not list devices. You must authenticate before selecting a device."
            ) from exc
        if self._session is not session:
            raise StateError("Session ended while listing devices")
        self.apply_device_list(devices)
        return self.devices

    async def select_device(self, selector: DeviceSelector) -> DeviceInfo:
        """Select the device ``selector`` picks from a freshly fetched list.

        Raises:
            AuthError:            Not logged in, or the device list could not be fetched.
            DeviceSelectionError: The selector matched nothing in the list.
        """
        devices = await self.get_devices()
        if not devices:
            raise DeviceSelectionError("No devices found on this account")

        chosen = selector(devices)
        if chosen is None:
            raise DeviceSelectionError("No device matched the selector")
        match = next((d for d in devices if d.device_id == chosen.device_id), None)
        if match is None:
            raise DeviceSelectionError(
                f"Device {chosen.device_id} is not in the current device list"
            )

        session = self._require_session()
        previous = session.selected_device
        if previous is not None and previous.device_id != match.device_id:
            # Subscriptions belong to the old device.
            self._multiplexer.close_all(
                DeviceSelectionError(f"Device changed from {previous.device_id} to {match.device_id}")
            )
            await self._disconnect_local()
            if self._session is not session:
                raise StateError("Session ended while switching devices")
            session.local_mode_enabled = False

        session.selected_device = match
        self._state = SessionState.DEVICE_SELECTED
        self._publish()
        logger.info("Selected device %s (%s)", match.device_id, match.device_nickname)
        return match

    async def _auto_select(self) -> None:
        denied = check(self.claims, Operation.SELECT_DEVICE)
        if denied is not None:
            logger.info("Auto-select skipped: missing %s", denied.required_scope)
            return
        device_id = self._settings.device_id

        def selector(devices: Sequence[DeviceInfo]) -> DeviceInfo | None:
            if device_id:
                return next((d for d in devices if d.device_id == device_id), None)
            return devices[0] if devices else None

        try:
            await self.select_device(selector)
        except (AuthError, DeviceSelectionError) as exc:
            logger.warning("Auto-select skipped: %s", exc.message)

    def apply_device_list(self, devices: Iterable[DeviceInfo | dict]) -> None:
        """Replace the device snapshot (called for every backend push)."""
        session = self._session
        if session is None:
            return
        snapshot = tuple(
            d if isinstance(d, DeviceInfo) else DeviceInfo.model_validate(d) for d in devices
        )
        session.devices = snapshot

        selected = session.selected_device
        if selected is None:
            self._publish()
            return

        fresh = next((d for d in snapshot if d.device_id == selected.device_id), None)
        if fresh is None:
            logger.warning("Selected device %s is no longer available", selected.device_id)
            session.selected_device = None
            session.local_mode_enabled = False
            self._state = SessionState.LOGGED_IN
            self._multiplexer.close_all(
                DeviceSelectionError(f"Device {selected.device_id} is no longer available")
            )
            self._publish()
            return

        session.selected_device = fresh
        url = self.socket_url()
        if session.local_mode_enabled and not url:
            logger.warning("Device %s stopped advertising a socket URL; local mode off", fresh.device_id)
            session.local_mode_enabled = False
        elif session.local_mode_enabled and url != self._local_connected_url:
            self._start_reconnect(session, url)
        self._publish()

    def apply_claims(self, tokens: Iterable[str]) -> None:
        if self._session is None:
            return
        self._session.claims = parse_claims(tokens)
        logger.info("Claims refreshed: %s", sorted(c.value for c in self._session.claims))
        self._publish()

    def apply_connection(self, online: bool) -> None:
        state = ConnectionState.ONLINE if online else ConnectionState.OFFLINE
        if state is not self.connection_signal.value:
            logger.info("Backend connection %s", state.value)
        self.connection_signal.set(state)

    async def go_online(self) -> None:
        await self._backend.go_online()

    async def go_offline(self) -> None:
        await self._backend.go_offline()

    # ------------------------------------------------------------------
    # Local mode
    # ------------------------------------------------------------------

    async def enable_local_mode(self, enabled: bool) -> bool:
        """Turn local mode on or off.

        Raises:
            TypeError:            ``enabled`` is not a bool.
            DeviceSelectionError: No device selected.
            StateError:           Enabling without an advertised socket URL,
                                  or the socket could not be reached.
        """
        if not isinstance(enabled, bool):
            raise TypeError("enable_local_mode only accepts a boolean")

        self.require_device()
        session = self._require_session()

        if not enabled:
            session.local_mode_enabled = False
            self._publish()
            logger.info("Local mode disabled")
            return False

        url = self.socket_url()
        if not url:
            raise StateError(
                "Your device's OS does not support local mode. Try updating to the latest OS."
            )
        if self._local_socket is None:
            raise StateError("No local socket client configured")

        if self._local_connected_url != url:
            await self._disconnect_local()
            try:
                await self._local_socket.connect(url)
            except Exception as exc:
                raise StateError(f"Could not reach device at {url}: {exc}") from exc
            self._local_connected_url = url

        if self._session is not session:
            raise StateError("Session ended while enabling local mode")
        session.local_mode_enabled = True
        self._publish()
        logger.info("Local mode enabled via %s", url)
        return True

    async def _disconnect_local(self) -> None:
        if self._local_socket is None or self._local_connected_url is None:
            return
        self._local_connected_url = None
        try:
            await self._local_socket.disconnect()
        except Exception as exc:
            logger.warning("Local socket disconnect failed: %s", exc)

    def _start_reconnect(self, session: Session, url: str) -> None:
        if self._reconnect is not None and not self._reconnect.done():
            self._reconnect.cancel()
        task = asyncio.get_running_loop().create_task(self._reconnect_local(session, url))
        self._reconnect = task
        session._watchers.append(task)

    async def _reconnect_local(self, session: Session, url: str) -> None:
        """Follow a device that moved to a new socket URL."""
        assert self._local_socket is not None
        logger.info("Device socket moved to %s; reconnecting", url)
        await self._disconnect_local()
        try:
            await self._local_socket.connect(url)
        except Exception as exc:
            logger.warning("Could not reach device at %s: %s; local mode off", url, exc)
            if self._session is session:
                session.local_mode_enabled = False
                self._publish()
            return
        self._local_connected_url = url

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_session(self) -> Session:
        if self._session is None:
            raise AuthError("You must log in first")
        return self._session

    def _publish(self) -> None:
        session = self._session
        self.devices_signal.set(session.devices if session else ())
        self.selected_device_signal.set(session.selected_device if session else None)
        self.claims_signal.set(session.claims if session else frozenset())
        self.local_mode_signal.set(bool(session and session.local_mode_enabled))

    def _watch(
        self,
        stream: AsyncIterator,
        apply: Callable[[Any], None],
        name: str,
    ) -> None:
        session = self._require_session()

        async def run() -> None:
            try:
                async for value in stream:
                    apply(value)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("%s watcher stopped: %s", name, exc)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

        session._watchers.append(asyncio.get_running_loop().create_task(run()))
