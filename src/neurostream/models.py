"""Canonical data shapes shared by the router, multiplexer and session.

``DeviceInfo`` is a frozen pydantic model so backend payloads (camelCase)
parse directly and snapshots can never be mutated in place.  The remaining
types are plain dataclasses owned by the SDK.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NeuroBase(BaseModel):
    """Base model with shared config for payloads coming off the backend."""

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceInfo(NeuroBase):
    """Immutable snapshot of one device claimed by the user.

    Attributes:
        device_id:       Unique device identifier.
        device_nickname: Human-readable name (e.g. "Crown-A1B").
        model_version:   Hardware model ("1", "2", "3").
        api_version:     Firmware API version.
        os_version:      Device OS version.
        socket_url:      Local socket URL when the device advertises one.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str = Field(alias="deviceId")
    device_nickname: str = Field(default="", alias="deviceNickname")
    model_version: str = Field(default="1", alias="modelVersion")
    api_version: str = Field(default="", alias="apiVersion")
    os_version: str = Field(default="", alias="osVersion")
    socket_url: str | None = Field(default=None, alias="socketUrl")


class TransferDeviceOptions(NeuroBase):
    device_id: str = Field(alias="deviceId")
    recipients_email: str | None = Field(default=None, alias="recipientsEmail")
    recipients_user_id: str | None = Field(default=None, alias="recipientsUserId")


# ---------------------------------------------------------------------------
# OAuth payloads
# ---------------------------------------------------------------------------


class OAuthConfig(NeuroBase):
    client_id: str = Field(alias="clientId")
    client_secret: str = Field(alias="clientSecret")
    redirect_uri: str = Field(alias="redirectUri")
    response_type: str = Field(default="token", alias="responseType")
    state: str
    scope: list[str] = Field(default_factory=list)


class OAuthQuery(NeuroBase):
    client_id: str = Field(alias="clientId")
    client_secret: str = Field(alias="clientSecret")
    user_id: str = Field(alias="userId")


class OAuthQueryResult(NeuroBase):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credentials:
    """Email/password pair or a custom token issued by the backend."""

    email: str | None = None
    password: str | None = None
    custom_token: str | None = None

    def __post_init__(self) -> None:
        if not self.custom_token and not (self.email and self.password):
            raise ValueError("Credentials need email and password, or a custom_token")


@dataclass
class AuthUser:
    """What the backend returns from a successful login.

    Attributes:
        user_id:  Backend user id.
        claims:   Raw scope tokens, if the backend reports them directly.
        id_token: Signed ID token; scopes are read from it when ``claims`` is empty.
    """

    user_id: str
    claims: list[str] = field(default_factory=list)
    id_token: str | None = None


# ---------------------------------------------------------------------------
# Transport / subscriptions
# ---------------------------------------------------------------------------


class TransportKind(str, Enum):
    CLOUD = "cloud"
    LOCAL_SOCKET = "local_socket"


@dataclass(frozen=True)
class MetricSubscriptionRequest:
    """One logical request for a metric stream.

    Attributes:
        metric: Metric name (e.g. "brainwaves", "awareness").
        labels: Requested labels in caller order; empty means all labels.
        atomic: Deliver the full labeled object as one unit.
    """

    metric: str
    labels: tuple[str, ...] = ()
    atomic: bool = False

    @property
    def normalized_labels(self) -> tuple[str, ...]:
        return tuple(sorted(set(self.labels)))

    def key(self, transport: TransportKind) -> "SubscriptionKey":
        return SubscriptionKey(
            metric=self.metric,
            labels=self.normalized_labels,
            atomic=self.atomic,
            transport=transport,
        )


@dataclass(frozen=True)
class SubscriptionKey:
    """Identity of a physical subscription."""

    metric: str
    labels: tuple[str, ...]
    atomic: bool
    transport: TransportKind

    def __str__(self) -> str:
        labels = ",".join(self.labels) or "*"
        atomic = "atomic" if self.atomic else "labeled"
        return f"{self.transport.value}:{self.metric}:{labels}:{atomic}"


@dataclass(frozen=True)
class RoutingContext:
    """Snapshot of session state the router decides on."""

    local_mode_enabled: bool = False
    socket_url: str | None = None
    model_version: str | None = None


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass
class Action:
    """A command dispatched to the device.

    Attributes:
        command:             Target subsystem ("marker", "haptics", "training").
        action:              Verb within that subsystem ("add", "queue", ...).
        message:             Payload.
        response_required:   Wait for an acknowledgment.
        response_timeout_ms: Acknowledgment timeout when ``response_required``.
    """

    command: str
    action: str
    message: dict[str, Any] = field(default_factory=dict)
    response_required: bool = False
    response_timeout_ms: int | None = None
