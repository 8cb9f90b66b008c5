"""Transport router: pick cloud or local socket for each request.

A metric goes over the local socket only when all three hold:

1. local mode is enabled on the session,
2. the selected device advertised a socket URL,
3. the metric is in the firmware allow-list from the metric catalog.

Everything else goes to the cloud.  The decision is made once, when a
subscription is created.  Live subscriptions are never moved to another
transport when local mode flips; callers resubscribe to pick up the new
route.
"""

from __future__ import annotations

import logging

from neurostream.catalog import MetricCatalog, get_metric_catalog
from neurostream.errors import (
    metric_not_supported_by_model,
    metric_not_supported_locally,
)
from neurostream.models import Action, RoutingContext, TransportKind

logger = logging.getLogger("neurostream.router")


class TransportRouter:
    def __init__(self, catalog: MetricCatalog | None = None) -> None:
        self._catalog = catalog or get_metric_catalog()

    @property
    def local_metrics(self) -> frozenset[str]:
        return self._catalog.local_metrics

    @staticmethod
    def local_available(context: RoutingContext) -> bool:
        return context.local_mode_enabled and bool(context.socket_url)

    def route(self, metric: str, context: RoutingContext) -> TransportKind:
        if self.local_available(context) and self._catalog.is_local(metric):
            kind = TransportKind.LOCAL_SOCKET
        else:
            kind = TransportKind.CLOUD
        logger.debug("Routing %s → %s", metric, kind.value)
        return kind

    def route_action(self, action: Action, context: RoutingContext) -> TransportKind:
        if self.local_available(context):
            return TransportKind.LOCAL_SOCKET
        return TransportKind.CLOUD

    def require_local(self, metric: str, context: RoutingContext) -> None:
        """Raise TransportUnsupportedError unless ``metric`` would route locally."""
        if self.route(metric, context) is not TransportKind.LOCAL_SOCKET:
            raise metric_not_supported_locally(metric)

    def require_model_support(self, metric: str, model_version: str | None) -> None:
        """Raise TransportUnsupportedError if the device model lacks ``metric``."""
        if not self._catalog.supports(metric, model_version):
            raise metric_not_supported_by_model(metric, str(model_version))
