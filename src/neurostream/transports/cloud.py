"""Cloud metric transport backed by the BackendClient.

Metrics go through a subscription record (so the device knows to publish
them) and are then observed under ``metrics/<metric>``.  Namespace metrics
such as ``status`` and ``settings`` are plain paths and need no record.
"""

from __future__ import annotations

import logging
from typing import Callable

from neurostream.catalog import MetricCatalog, get_metric_catalog
from neurostream.errors import must_select_device
from neurostream.models import MetricSubscriptionRequest, TransportKind
from neurostream.transports.base import BackendClient, MetricTransport, TransportHandle

logger = logging.getLogger("neurostream.transports.cloud")

SERVER_TYPE = "firebase"


class CloudMetricTransport(MetricTransport):
    """Open metric streams through the cloud backend.

    Args:
        backend:   The backend client.
        device_id: Callable returning the currently selected device id.
        catalog:   Metric catalog (namespace lookup).
    """

    KIND = TransportKind.CLOUD

    def __init__(
        self,
        backend: BackendClient,
        device_id: Callable[[], str | None],
        catalog: MetricCatalog | None = None,
    ) -> None:
        self._backend = backend
        self._device_id = device_id
        self._catalog = catalog or get_metric_catalog()

    async def open(self, request: MetricSubscriptionRequest) -> TransportHandle:
        device_id = self._device_id()
        if device_id is None:
            raise must_select_device()

        if self._catalog.is_namespace(request.metric):
            stream = self._backend.observe_path(device_id, request.metric)
            return TransportHandle(kind=self.KIND, stream=stream, device_id=device_id)

        subscription_id = await self._backend.create_subscription(
            device_id, request, SERVER_TYPE
        )
        logger.debug("Cloud subscription %s created for %s", subscription_id, request.metric)
        stream = self._backend.observe_path(device_id, f"metrics/{request.metric}")
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
            logger.debug("Cloud subscription %s removed", handle.subscription_id)
