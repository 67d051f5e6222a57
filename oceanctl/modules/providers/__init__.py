"""Cloud Resource Provisioner variants."""
from ..models import Cluster, ClusterType
from .base import Provider, apply_outputs, stack_lock, stack_locks


def get_provider(cluster: Cluster, settings) -> Provider:
    """Return the provisioner for the cluster's type."""
    if cluster.type == ClusterType.LOCAL:
        from .local import LocalProvider
        return LocalProvider(settings)
    if cluster.type == ClusterType.ALICLOUD:
        from .alicloud import AliCloudProvider
        return AliCloudProvider(settings)
    if cluster.type == ClusterType.AWS:
        from .aws import AWSProvider
        return AWSProvider(settings)
    from .gcp import GoogleProvider
    return GoogleProvider(settings)


__all__ = ["Provider", "apply_outputs", "get_provider", "stack_lock", "stack_locks"]
