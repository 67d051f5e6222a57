"""
Exception hierarchy shared by the oceanctl modules.
"""
from typing import Optional


class OceanError(Exception):
    """Base exception for oceanctl errors."""
    pass


class ConfigurationError(OceanError):
    """Raised when configuration or a cluster declaration is invalid."""
    pass


class ValidationError(ConfigurationError):
    """Raised when a cluster aggregate fails eager validation."""
    pass


class RemoteExecutionError(OceanError):
    """Base exception for remote execution failures."""

    def __init__(self, host: str, message: str):
        super().__init__(f"{host}: {message}")
        self.host = host


class RemoteConnectionError(RemoteExecutionError):
    """Raised when a session to a host cannot be opened."""
    pass


class RemoteCommandError(RemoteExecutionError):
    """Raised when a remote command exits non-zero or times out."""

    def __init__(self, host: str, command: str, exit_code: int, stdout: str = "", stderr: str = ""):
        detail = stderr.strip() or stdout.strip() or "no output"
        super().__init__(host, f"command '{command}' failed with exit status {exit_code}: {detail}")
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class PlaybookError(OceanError):
    """Raised when the configuration-management engine run fails."""

    def __init__(self, operation: str, message: str, status: Optional[str] = None, rc: Optional[int] = None):
        super().__init__(f"playbook {operation} failed: {message}")
        self.operation = operation
        self.status = status
        self.rc = rc


class ProviderError(OceanError):
    """Raised for provider API and infrastructure-as-code failures."""
    pass


class InstanceTypeNotFound(ProviderError):
    """Raised when no catalog entry satisfies the requested shape."""
    pass


class LifecycleError(OceanError):
    """Raised when a cluster lifecycle operation cannot proceed."""
    pass


class NodeOperationError(LifecycleError):
    """Raised when an operation on a single node fails inside a batch."""

    def __init__(self, node_name: str, operation: str, cause: Exception):
        super().__init__(f"{operation} failed on node {node_name}: {cause}")
        self.node_name = node_name
        self.operation = operation
        self.cause = cause


class RepositoryError(OceanError):
    """Base exception for cluster persistence errors."""
    pass


class ClusterNotFound(RepositoryError):
    """Raised when a cluster is not present in the registry."""
    pass


class ClusterConflictError(RepositoryError):
    """Raised when a save is based on a stale version of the aggregate."""
    pass


class NotImplementedByProvider(OceanError):
    """Raised for optional autoscaler calls the provider does not implement."""

    code = 12


class ClusterRuntimeError(OceanError):
    """Raised when the live cluster cannot be read."""
    pass
