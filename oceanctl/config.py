"""Configuration management for the oceanctl application.

Configuration is loaded from multiple sources with the following precedence:
1. Environment variables (``OCEAN_*``, a ``.env`` file is honoured)
2. The first configuration file found in DEFAULT_CONFIG_PATHS
3. Default values
"""
import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("oceanctl.config")

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_CONFIG_PATHS = [
    Path("/etc/ocean/config.yaml"),
    Path("~/.config/ocean/config.yaml").expanduser(),
    Path("ocean-config.yaml").absolute(),
]


class SSHConfig(BaseModel):
    """Remote session settings."""
    user: str = Field(default="root", description="Default SSH username")
    port: int = Field(default=22, description="SSH port number")
    connect_timeout: int = Field(default=5, description="SSH connection timeout in seconds")
    command_timeout: int = Field(default=1800, description="Remote command timeout in seconds")
    max_workers: int = Field(default=10, description="Concurrent remote sessions per operation")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level")
    file: Optional[str] = Field(default=None, description="Path to log file (stderr if unset)")
    max_size_mb: int = Field(default=100, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of backup log files to keep")

    @field_validator('level')
    @classmethod
    def upper_level(cls, v: str) -> str:
        return v.upper()


class ResourceConfig(BaseModel):
    """Local workspace and installer resources."""
    workspace: str = Field(default="~/.ocean", description="Working directory for runs and state")
    database_file: str = Field(default="~/.ocean/data/ocean.db", description="Local database file migrated to the bastion")
    package: str = Field(default="~/.ocean/resource.tar.gz", description="Installer resource tarball staged on every node")
    shell_dir: str = Field(default="resource/shell", description="Script directory relative to the remote resource root")
    remote_dir: str = Field(default="resource", description="Resource directory relative to the remote home")
    kubernetes_version: str = Field(default="v1.30.2", description="Kubernetes version installed on nodes")
    image_repo: str = Field(default="registry.k8s.io", description="Default container image repository")
    alicloud_image_repo: str = Field(
        default="registry.aliyuncs.com/google_containers",
        description="Image repository used for AliCloud clusters"
    )

    @field_validator('workspace', 'database_file', 'package')
    @classmethod
    def expand_path(cls, v: str) -> str:
        return os.path.expanduser(v)

    @property
    def clusters_dir(self) -> Path:
        return Path(self.workspace) / "clusters"

    @property
    def runs_dir(self) -> Path:
        return Path(self.workspace) / "runs"


class AnsibleConfig(BaseModel):
    """Runtime settings rendered for every playbook run."""
    binary: str = Field(default="ansible-playbook")
    forks: int = Field(default=10, description="Concurrent hosts per run")
    timeout: int = Field(default=3600, description="Whole-run timeout in seconds")
    connection_timeout: int = Field(default=30)
    fact_caching: str = Field(default="jsonfile")
    fact_caching_timeout: int = Field(default=86400)


class PulumiConfig(BaseModel):
    """Infrastructure-as-code workspace settings."""
    home: str = Field(default="~/.pulumi", description="Pulumi home directory")
    passphrase: str = Field(default="", description="Secrets passphrase for the local backend")
    alicloud_plugin_version: str = Field(default="v3.56.0")
    aws_plugin_version: str = Field(default="v6.38.0")

    @field_validator('home')
    @classmethod
    def expand_home(cls, v: str) -> str:
        return os.path.expanduser(v)


class ApiConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    api_key: str = Field(default="ocean-secret")


class Settings(BaseModel):
    """oceanctl settings."""
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    resource: ResourceConfig = Field(default_factory=ResourceConfig)
    ansible: AnsibleConfig = Field(default_factory=AnsibleConfig)
    pulumi: PulumiConfig = Field(default_factory=PulumiConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = {"extra": "ignore"}

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'Settings':
        """Load configuration from file and environment variables."""
        config_data: Dict[str, Any] = {}

        if config_path:
            path = Path(config_path).expanduser().absolute()
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {path}")
            config_data = cls._load_config_file(path)
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        return cls(**_apply_env_overrides(config_data))

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return {}

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.model_dump(), f, default_flow_style=False, sort_keys=False)


# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "OCEAN_SSH_USER": ("ssh", "user"),
    "OCEAN_SSH_PORT": ("ssh", "port"),
    "OCEAN_SSH_CONNECT_TIMEOUT": ("ssh", "connect_timeout"),
    "OCEAN_SSH_COMMAND_TIMEOUT": ("ssh", "command_timeout"),
    "OCEAN_LOG_LEVEL": ("logging", "level"),
    "OCEAN_LOG_FILE": ("logging", "file"),
    "OCEAN_WORKSPACE": ("resource", "workspace"),
    "OCEAN_DATABASE_FILE": ("resource", "database_file"),
    "OCEAN_RESOURCE_PACKAGE": ("resource", "package"),
    "OCEAN_KUBERNETES_VERSION": ("resource", "kubernetes_version"),
    "OCEAN_ANSIBLE_FORKS": ("ansible", "forks"),
    "OCEAN_ANSIBLE_TIMEOUT": ("ansible", "timeout"),
    "PULUMI_HOME": ("pulumi", "home"),
    "PULUMI_CONFIG_PASSPHRASE": ("pulumi", "passphrase"),
    "OCEAN_API_KEY": ("api", "api_key"),
    "OCEAN_API_PORT": ("api", "port"),
}


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    data = {k: dict(v) if isinstance(v, dict) else v for k, v in data.items()}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is None or value == "":
            continue
        section_data = data.setdefault(section, {})
        section_data[key] = value
    return data


# Global configuration instance
_config: Optional[Settings] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> Settings:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = Settings.load(config_path)
    return _config


def set_config(config: Optional[Settings]) -> None:
    """Set (or reset with None) the global configuration instance."""
    global _config
    _config = config


def redact(data: Dict[str, Any], keys: List[str] = None) -> Dict[str, Any]:
    """Return a copy of ``data`` with credential fields masked."""
    keys = keys or ["access_key", "private_key", "api_key", "passphrase", "secret"]
    return {
        k: ("***" if any(s in k for s in keys) and v else v)
        for k, v in data.items()
    }
