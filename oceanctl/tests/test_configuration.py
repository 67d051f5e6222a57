import pytest
import yaml

from oceanctl.modules import configuration
from oceanctl.modules.configuration import (
    control_plane_endpoint,
    image_repository,
    render_cluster_config,
    render_install_manifest,
    render_template,
)
from oceanctl.modules.errors import ConfigurationError
from oceanctl.modules.models import ClusterType


def test_cluster_config_renders_valid_kubeadm_documents(settings, cluster):
    rendered = render_cluster_config(cluster, cluster.first_master(), settings)

    docs = list(yaml.safe_load_all(rendered))
    kinds = [d["kind"] for d in docs]
    assert kinds == ["InitConfiguration", "ClusterConfiguration", "KubeletConfiguration"]
    assert docs[0]["nodeRegistration"]["name"] == "node-1"
    assert docs[1]["controlPlaneEndpoint"] == "10.0.0.1:6443"
    assert docs[1]["kubernetesVersion"] == cluster.kubernetes_version
    assert docs[1]["imageRepository"] == settings.resource.image_repo


def test_cluster_config_requires_a_master(settings, cluster):
    with pytest.raises(ConfigurationError, match="no master node found"):
        render_cluster_config(cluster, None, settings)


def test_cloud_endpoint_is_the_load_balancer(settings, cluster):
    cluster.type = ClusterType.ALICLOUD
    cluster.load_balancer_address = "47.1.1.1"
    assert control_plane_endpoint(cluster, cluster.first_master()) == "47.1.1.1"
    assert image_repository(cluster, settings) == settings.resource.alicloud_image_repo
    cluster.image_repo = "mirror.local/k8s"
    assert image_repository(cluster, settings) == "mirror.local/k8s"


def test_install_manifest_carries_cluster_info(cluster):
    docs = list(yaml.safe_load_all(render_install_manifest(cluster)))
    assert docs[0]["kind"] == "Namespace"
    assert docs[1]["data"]["name"] == "demo"


def test_missing_template_is_configuration_error():
    with pytest.raises(ConfigurationError, match="Template not found"):
        render_template("nope.yaml.j2")


def test_undefined_value_fails_loudly(tmp_path, monkeypatch):
    (tmp_path / "broken.yaml.j2").write_text("value: {{ missing }}\n")
    monkeypatch.setattr(configuration, "get_template_path", lambda: str(tmp_path))
    with pytest.raises(ConfigurationError, match="Undefined value"):
        render_template("broken.yaml.j2")


def test_invalid_yaml_is_rejected(tmp_path, monkeypatch):
    (tmp_path / "bad.yaml.j2").write_text("key: [unclosed\n")
    monkeypatch.setattr(configuration, "get_template_path", lambda: str(tmp_path))
    with pytest.raises(ConfigurationError, match="invalid YAML"):
        render_template("bad.yaml.j2")
