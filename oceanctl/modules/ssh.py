"""
Remote execution over SSH using paramiko.

A RemoteBash session runs commands on one host with an explicit timeout and
either returns (stdout, stderr) or streams output into a sink. Whether a
single host failure aborts a larger operation is left to the caller.
"""
import io
import logging
import os
import shlex
import socket
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import paramiko
from paramiko.ssh_exception import (
    AuthenticationException,
    NoValidConnectionsError,
    SSHException,
)

from .errors import RemoteCommandError, RemoteConnectionError

logger = logging.getLogger("oceanctl.ssh")

DEFAULT_COMMAND_TIMEOUT = 30 * 60
DEFAULT_CONNECT_TIMEOUT = 5

_KEY_CLASSES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)


@dataclass
class RemoteHost:
    """Connection parameters for one host."""
    host: str
    user: str = 'root'
    port: int = 22
    private_key: Optional[str] = None
    key_path: Optional[str] = None
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.host

    @property
    def connection_id(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"


def load_private_key(private_key: Optional[str] = None, key_path: Optional[str] = None) -> paramiko.PKey:
    """Load a private key held in memory or on disk."""
    if not private_key and key_path:
        private_key = Path(os.path.expanduser(key_path)).read_text()
    if not private_key:
        raise ValueError("A private key or key path is required")
    last_error: Optional[Exception] = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(private_key))
        except SSHException as e:
            last_error = e
    raise ValueError(f"Unsupported private key format: {last_error}")


class RemoteBash:
    """Command execution on one remote host."""

    def __init__(
        self,
        host: RemoteHost,
        timeout: int = DEFAULT_COMMAND_TIMEOUT,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
    ):
        self.host = host
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def connect(self) -> paramiko.SSHClient:
        with self._lock:
            if self.connected:
                return self._client
            try:
                pkey = load_private_key(self.host.private_key, self.host.key_path)
            except (ValueError, OSError) as e:
                raise RemoteConnectionError(self.host.label, f"cannot load private key: {e}") from e
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    self.host.host,
                    port=self.host.port,
                    username=self.host.user,
                    pkey=pkey,
                    timeout=self.connect_timeout,
                    banner_timeout=self.connect_timeout,
                    auth_timeout=self.connect_timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except AuthenticationException as e:
                client.close()
                raise RemoteConnectionError(self.host.label, f"authentication failed for {self.host.user}") from e
            except NoValidConnectionsError as e:
                client.close()
                raise RemoteConnectionError(self.host.label, f"connection refused on port {self.host.port}") from e
            except (SSHException, socket.error) as e:
                client.close()
                raise RemoteConnectionError(self.host.label, f"ssh connection failed: {e}") from e
            logger.debug(f"Connected to {self.host.connection_id}")
            self._client = client
            return client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    @staticmethod
    def build_command(command: str, *args: str) -> str:
        if not args:
            return command
        return " ".join([command] + [shlex.quote(str(a)) for a in args])

    def run(self, command: str, *args: str, timeout: Optional[int] = None) -> Tuple[str, str]:
        """Run a command and return (stdout, stderr).

        Raises:
            RemoteConnectionError: If the session cannot be opened
            RemoteCommandError: If the command exits non-zero or times out
        """
        full_command = self.build_command(command, *args)
        exit_status, stdout, stderr = self._execute(full_command, timeout)
        if exit_status != 0:
            raise RemoteCommandError(self.host.label, full_command, exit_status, stdout, stderr)
        return stdout, stderr

    def run_shell(self, command: str, *args: str, timeout: Optional[int] = None) -> Tuple[str, str]:
        """Run a command inside a login shell."""
        return self.run("bash -lc " + shlex.quote(self.build_command(command, *args)), timeout=timeout)

    def run_with_logging(
        self,
        command: str,
        *args: str,
        sink: Optional[Callable[[str], None]] = None,
        timeout: Optional[int] = None,
    ) -> str:
        """Run a command streaming its output line by line.

        Stdout lines are logged at INFO and stderr lines at ERROR; both are
        forwarded to ``sink`` prefixed with the host label.
        """
        full_command = self.build_command(command, *args)
        client = self.connect()
        timeout = timeout or self.timeout
        prefix = f"[{self.host.label}] "
        stdout_lines = []
        stderr_lines = []
        try:
            _, stdout, stderr = client.exec_command(full_command, timeout=timeout)
            for line in iter(stdout.readline, ""):
                stdout_lines.append(line)
                logger.info(f"{prefix}{line.rstrip()}")
                if sink:
                    sink(prefix + line)
            for line in iter(stderr.readline, ""):
                stderr_lines.append(line)
                logger.error(f"{prefix}{line.rstrip()}")
                if sink:
                    sink(prefix + line)
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise RemoteCommandError(
                self.host.label, full_command, 255, "".join(stdout_lines),
                f"timed out after {timeout} seconds"
            ) from e
        except SSHException as e:
            self.close()
            raise RemoteConnectionError(self.host.label, f"session failed: {e}") from e
        output = "".join(stdout_lines)
        if exit_status != 0:
            raise RemoteCommandError(self.host.label, full_command, exit_status, output, "".join(stderr_lines))
        return output

    def exec_script(
        self,
        script: str,
        *args: str,
        sink: Optional[Callable[[str], None]] = None,
        timeout: Optional[int] = None,
    ) -> str:
        """Upload a local script to /tmp and run it with bash."""
        remote_path = f"/tmp/{Path(script).name}"
        self.put(script, remote_path)
        if sink:
            return self.run_with_logging("bash", remote_path, *args, sink=sink, timeout=timeout)
        stdout, _ = self.run("bash", remote_path, *args, timeout=timeout)
        return stdout

    def put(self, local_path: str, remote_path: str) -> None:
        """Upload a file over SFTP."""
        client = self.connect()
        try:
            with client.open_sftp() as sftp:
                sftp.put(str(local_path), remote_path)
        except (OSError, SSHException) as e:
            raise RemoteConnectionError(
                self.host.label, f"failed to upload {local_path} to {remote_path}: {e}"
            ) from e

    def put_text(self, content: str, remote_path: str) -> None:
        """Write ``content`` to a remote file over SFTP."""
        client = self.connect()
        try:
            with client.open_sftp() as sftp:
                with sftp.open(remote_path, 'w') as f:
                    f.write(content)
        except (OSError, SSHException) as e:
            raise RemoteConnectionError(self.host.label, f"failed to write {remote_path}: {e}") from e

    def home(self) -> str:
        stdout, _ = self.run_shell("echo $HOME")
        return stdout.strip()

    def _execute(self, command: str, timeout: Optional[int]) -> Tuple[int, str, str]:
        client = self.connect()
        timeout = timeout or self.timeout
        logger.debug(f"[{self.host.label}] $ {command}")
        try:
            _, stdout, stderr = client.exec_command(command, timeout=timeout)
            out = stdout.read().decode(errors="replace")
            err = stderr.read().decode(errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise RemoteCommandError(self.host.label, command, 255, "", f"timed out after {timeout} seconds") from e
        except SSHException as e:
            self.close()
            raise RemoteConnectionError(self.host.label, f"session failed: {e}") from e
        return exit_status, out, err


class ConnectionPool:
    """Thread-safe pool of RemoteBash sessions keyed by user@host:port."""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super(ConnectionPool, cls).__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if getattr(self, '_initialized', False):
            return
        self.connections: Dict[str, RemoteBash] = {}
        self.lock = threading.RLock()
        self._initialized = True

    def get_connection(self, host: RemoteHost, **kwargs) -> RemoteBash:
        """Return a pooled session for ``host``, replacing dead ones."""
        with self.lock:
            session = self.connections.get(host.connection_id)
            if session is not None and session.connected:
                return session
            if session is not None:
                logger.debug(f"Dropping inactive session {host.connection_id}")
                session.close()
            session = RemoteBash(host, **kwargs)
            self.connections[host.connection_id] = session
            return session

    def close_all(self) -> None:
        with self.lock:
            for session in self.connections.values():
                session.close()
            self.connections.clear()


ssh_pool = ConnectionPool()


def get_ssh_pool() -> ConnectionPool:
    """Get the global SSH connection pool."""
    return ssh_pool
