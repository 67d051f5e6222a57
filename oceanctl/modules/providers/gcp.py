"""Google Cloud placeholder."""
from typing import Optional
import threading

from ..errors import ProviderError
from ..models import Cluster
from .base import Provider, Sink


class GoogleProvider(Provider):
    """Accepted as a cluster type but not implemented."""

    name = "google"

    def _unsupported(self, cluster: Cluster):
        raise ProviderError(f"cluster {cluster.name}: provider {self.name} is not supported")

    def validate(self, cluster: Cluster) -> None:
        self._unsupported(cluster)

    def start(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        self._unsupported(cluster)

    def stop(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        self._unsupported(cluster)

    def get(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        self._unsupported(cluster)
