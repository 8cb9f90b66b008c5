"""Transport adapters for Neurostream.

Available adapters:
    CloudMetricTransport — metrics through the cloud backend
    LocalMetricTransport — metrics straight from the device socket
    OAuthClient          — OAuth helper endpoints (httpx)
"""

from neurostream.transports.base import (
    BackendClient,
    LocalSocketClient,
    MetricTransport,
    TransportHandle,
)
from neurostream.transports.cloud import CloudMetricTransport
from neurostream.transports.local import LocalMetricTransport
from neurostream.transports.oauth import OAuthClient

__all__ = [
    "BackendClient",
    "LocalSocketClient",
    "MetricTransport",
    "TransportHandle",
    "CloudMetricTransport",
    "LocalMetricTransport",
    "OAuthClient",
]

