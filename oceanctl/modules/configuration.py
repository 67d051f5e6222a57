"""Rendered configuration for the cluster installer.

Templates live in the ``templates`` directory next to this module and are
rendered with Jinja2 using strict undefined handling, so a missing Cluster
or Node field fails loudly instead of producing an incomplete file.
"""

import logging
import os
from typing import Any, Dict

import yaml
from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

from .errors import ConfigurationError
from .models import Cluster, Node

logger = logging.getLogger("oceanctl.configuration")

CLUSTER_CONFIG_TEMPLATE = 'cluster-config.yaml.j2'
INSTALL_MANIFEST_TEMPLATE = 'install.yaml.j2'


def get_template_path() -> str:
    """Get the absolute path to the templates directory."""
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates')


def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(get_template_path()),
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
    )
    return env


def render_template(name: str, **context: Any) -> str:
    """Render a template and check the result is valid YAML.

    Raises:
        ConfigurationError: If the template is missing, broken, refers to an
            undefined value or renders to invalid YAML
    """
    try:
        rendered = _environment().get_template(name).render(**context)
    except TemplateNotFound as e:
        raise ConfigurationError(f"Template not found: {name}") from e
    except TemplateSyntaxError as e:
        raise ConfigurationError(f"Syntax error in template {name} line {e.lineno}: {e.message}") from e
    except UndefinedError as e:
        raise ConfigurationError(f"Undefined value in template {name}: {e.message}") from e

    try:
        list(yaml.safe_load_all(rendered))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Template {name} rendered invalid YAML: {e}") from e
    return rendered


def control_plane_endpoint(cluster: Cluster, control_plane: Node) -> str:
    """Address the API server is reached on."""
    if cluster.type.is_cloud and cluster.load_balancer_address:
        return cluster.load_balancer_address
    return control_plane.internal_ip or control_plane.external_ip


def image_repository(cluster: Cluster, settings) -> str:
    if cluster.image_repo:
        return cluster.image_repo
    if cluster.type.value == 'alicloud':
        return settings.resource.alicloud_image_repo
    return settings.resource.image_repo


def render_cluster_config(cluster: Cluster, control_plane: Node, settings) -> str:
    """Render the installer configuration for ``cluster``."""
    if control_plane is None:
        raise ConfigurationError("no master node found")
    context: Dict[str, Any] = {
        'cluster': cluster,
        'control_plane': control_plane,
        'endpoint': control_plane_endpoint(cluster, control_plane),
        'kubernetes_version': cluster.kubernetes_version or settings.resource.kubernetes_version,
        'image_repository': image_repository(cluster, settings),
        'nodes': [n for n in cluster.nodes if n.status.value != 'unspecified'],
    }
    return render_template(CLUSTER_CONFIG_TEMPLATE, **context)


def render_install_manifest(cluster: Cluster) -> str:
    return render_template(INSTALL_MANIFEST_TEMPLATE, cluster=cluster)
