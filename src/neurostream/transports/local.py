"""Local-socket metric transport.

The device still learns about subscriptions through the backend record (with
``server_type`` set to the socket's), but the values themselves arrive over
the local network.
"""

from __future__ import annotations

import logging
from typing import Callable

from neurostream.errors import must_select_device
from neurostream.models import MetricSubscriptionRequest, TransportKind
from neurostream.transports.base import (
    BackendClient,
    LocalSocketClient,
    MetricTransport,
    TransportHandle,
)

logger = logging.getLogger("neurostream.transports.local")


class LocalMetricTransport(MetricTransport):
    """Open metric streams straight from the device socket.

    The socket client must already be connected; the session connects it
    when local mode is enabled.
    """

    KIND = TransportKind.LOCAL_SOCKET

    def __init__(
        self,
        socket: LocalSocketClient,
        backend: BackendClient,
        device_id: Callable[[], str | None],
    ) -> None:
        self._socket = socket
        self._backend = backend
        self._device_id = device_id

    async def open(self, request: MetricSubscriptionRequest) -> TransportHandle:
        device_id = self._device_id()
        if device_id is None:
            raise must_select_device()

        subscription_id = await self._backend.create_subscription(
            device_id, request, self._socket.SERVER_TYPE
        )
        stream = self._socket.subscribe_metric(request)
        logger.debug("Local socket stream opened for %s (%s)", request.metric, subscription_id)
        return TransportHandle(
            kind=self.KIND,
            stream=stream,
            subscription_id=subscription_id,
            device_id=device_id,
        )

    async def release(self, handle: TransportHandle) -> None:
        await self._close_stream(handle)
        if handle.subscription_id is not None and handle.device_id is not None:
            await self._backend.remove_subscription(handle.device_id, handle.subscription_id)
