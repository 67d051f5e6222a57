"""oceanctl - Kubernetes cluster provisioning and lifecycle orchestration."""

__version__ = "0.1.0"
