import json
import threading
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import yaml
from ansible_runner.exceptions import AnsibleRunnerException

from oceanctl.modules.errors import PlaybookError, ValidationError
from oceanctl.modules.models import BostionHost
from oceanctl.modules.playbook import (
    PlaybookKind,
    PlaybookResult,
    PlaybookRunner,
    build_inventory,
    parse_probe_output,
    server_for_bostion,
    servers_for_nodes,
)


def test_inventory_groups_hosts_by_role(cluster):
    inventory = build_inventory(servers_for_nodes(cluster.nodes), key_file="/tmp/key")

    children = inventory["all"]["children"]
    assert set(children["kube_control_plane"]["hosts"]) == {"node-1"}
    assert set(children["etcd"]["hosts"]) == {"node-1"}
    assert set(children["kube_node"]["hosts"]) == {"node-2", "node-3", "node-4"}
    assert inventory["all"]["hosts"]["node-2"]["ansible_host"] == "10.0.0.2"
    assert inventory["all"]["vars"]["ansible_ssh_private_key_file"] == "/tmp/key"


def test_inventory_rejects_hosts_without_address(cluster):
    cluster.nodes[1].internal_ip = ""
    with pytest.raises(ValidationError, match="node-2"):
        build_inventory(servers_for_nodes(cluster.nodes))


def test_bostion_server_validation(cluster):
    with pytest.raises(ValidationError, match="not defined"):
        server_for_bostion(cluster)
    cluster.bostion_host = BostionHost(user="", external_ip="1.2.3.4")
    with pytest.raises(ValidationError, match="username is empty"):
        server_for_bostion(cluster)
    cluster.bostion_host = BostionHost(external_ip="")
    with pytest.raises(ValidationError, match="external ip is empty"):
        server_for_bostion(cluster)
    cluster.bostion_host = BostionHost(external_ip="1.2.3.4", user="ubuntu", ssh_port=0)
    server = server_for_bostion(cluster)
    assert (server.ip, server.user, server.port, server.role) == ("1.2.3.4", "ubuntu", 22, "bostion")


def _fake_run(status="successful", rc=0, events=()):
    captured = {}

    def run(**kwargs):
        captured.update(kwargs)
        playbook = Path(kwargs["private_data_dir"]) / "project" / kwargs["playbook"]
        captured["playbook_content"] = yaml.safe_load(playbook.read_text())
        captured["key_exists"] = (Path(kwargs["private_data_dir"]) / "id_cluster").exists()
        for event in events:
            kwargs["event_handler"](event)
        return SimpleNamespace(status=status, rc=rc)

    return run, captured


def test_run_invokes_engine_once_for_all_hosts(settings, cluster):
    sink = []
    run, captured = _fake_run(events=[
        {"event": "runner_on_ok", "stdout": "ok: [node-1]", "event_data": {"host": "node-1", "res": {"stdout": "x"}}},
    ])
    runner = PlaybookRunner(settings)

    with patch("oceanctl.modules.playbook.ansible_runner.run", side_effect=run) as engine:
        result = runner.run(cluster, PlaybookKind.SERVER_INIT, servers_for_nodes(cluster.nodes),
                            extravars={"a": 1}, stream=sink.append)

    assert engine.call_count == 1
    assert result.successful
    assert result.host_results == {"node-1": {"stdout": "x"}}
    assert sink == ["ok: [node-1]\n"]
    assert set(captured["inventory"]["all"]["hosts"]) == {"node-1", "node-2", "node-3", "node-4"}
    assert captured["extravars"] == {"a": 1}
    assert captured["envvars"]["ANSIBLE_FORKS"] == str(settings.ansible.forks)
    assert captured["playbook_content"][0]["name"] == "server init"
    assert captured["key_exists"]
    key_file = Path(captured["private_data_dir"]) / "id_cluster"
    assert not key_file.exists()


def test_failed_run_raises_with_failed_hosts(settings, cluster):
    run, _ = _fake_run(status="failed", rc=2, events=[
        {"event": "runner_on_failed", "event_data": {"host": "node-3"}},
    ])
    with patch("oceanctl.modules.playbook.ansible_runner.run", side_effect=run):
        with pytest.raises(PlaybookError) as exc:
            PlaybookRunner(settings).run(cluster, PlaybookKind.CLUSTER_INSTALL, servers_for_nodes(cluster.nodes))
    assert exc.value.rc == 2
    assert exc.value.operation == "cluster_install"
    assert "node-3" in str(exc.value)


def test_advisory_run_returns_failed_hosts(settings, cluster):
    run, _ = _fake_run(status="failed", rc=4, events=[
        {"event": "runner_on_unreachable", "event_data": {"host": "node-2"}},
        {"event": "runner_on_failed", "event_data": {"host": "node-4", "ignore_errors": True}},
    ])
    with patch("oceanctl.modules.playbook.ansible_runner.run", side_effect=run):
        result = PlaybookRunner(settings).run(
            cluster, PlaybookKind.SYSTEM_PROBE, servers_for_nodes(cluster.nodes), fatal=False,
        )
    assert not result.successful
    assert result.failed_hosts == ["node-2"]


def test_engine_exception_is_wrapped(settings, cluster):
    with patch("oceanctl.modules.playbook.ansible_runner.run", side_effect=AnsibleRunnerException("no binary")):
        with pytest.raises(PlaybookError, match="no binary"):
            PlaybookRunner(settings).run(cluster, PlaybookKind.SERVER_INIT, servers_for_nodes(cluster.nodes))


def test_cancel_event_is_wired_to_engine(settings, cluster):
    cancel = threading.Event()
    run, captured = _fake_run()
    with patch("oceanctl.modules.playbook.ansible_runner.run", side_effect=run):
        PlaybookRunner(settings).run(cluster, PlaybookKind.SERVER_INIT, servers_for_nodes(cluster.nodes),
                                     cancel=cancel)
    assert captured["cancel_callback"]() is False
    cancel.set()
    assert captured["cancel_callback"]() is True


def test_no_servers_is_rejected(settings, cluster):
    with pytest.raises(ValidationError):
        PlaybookRunner(settings).run(cluster, PlaybookKind.SERVER_INIT, [])


def test_migrate_playbook_targets_bostion(settings, cluster):
    cluster.bostion_host = BostionHost(external_ip="1.2.3.4")
    run, captured = _fake_run()
    with patch("oceanctl.modules.playbook.ansible_runner.run", side_effect=run):
        PlaybookRunner(settings).run(
            cluster, PlaybookKind.MIGRATE, [server_for_bostion(cluster)],
            playbook_args={"paths": {"database": "/data/ocean.db"}},
        )
    play = captured["playbook_content"][0]
    assert play["hosts"] == "bostion"
    assert play["tasks"][1]["ansible.posix.synchronize"]["dest"] == "/data/ocean.db"


def test_parse_probe_output_skips_bad_json():
    result = PlaybookResult(status="successful", rc=0, host_results={
        "a": {"stdout": json.dumps({"cpu": 4, "mem": "8", "arch": "x86_64"})},
        "b": {"stdout": "not json"},
        "c": {},
    })
    facts = parse_probe_output(result)
    assert facts == {"a": {"cpu": "4", "mem": "8", "arch": "x86_64"}}


def test_forks_are_bounded_per_run(settings, cluster):
    settings.ansible.forks = 25
    run, captured = _fake_run()
    with patch("oceanctl.modules.playbook.ansible_runner.run", side_effect=run):
        PlaybookRunner(settings).run(cluster, PlaybookKind.SYSTEM_PROBE, servers_for_nodes(cluster.nodes), forks=10)
    assert captured["forks"] == 10
    assert captured["envvars"]["ANSIBLE_FORKS"] == "10"


def test_reset_playbook_tears_down_runtime(settings, cluster):
    run, captured = _fake_run()
    with patch("oceanctl.modules.playbook.ansible_runner.run", side_effect=run):
        PlaybookRunner(settings).run(cluster, PlaybookKind.RESET, servers_for_nodes(cluster.nodes[1:2]))
    tasks = captured["playbook_content"][0]["tasks"]
    assert tasks[0]["shell"] == "kubeadm reset --force"
    assert tasks[2]["loop"] == ["containerd", "kubelet"]


def test_migrate_inventory_logs_in_as_the_bostion_user(settings, cluster):
    cluster.bostion_host = BostionHost(external_ip="3.3.3.3", user="ubuntu")
    run, captured = _fake_run()
    with patch("oceanctl.modules.playbook.ansible_runner.run", side_effect=run):
        PlaybookRunner(settings).run(cluster, PlaybookKind.MIGRATE, [server_for_bostion(cluster)],
                                     playbook_args={"paths": {}})
    host = captured["inventory"]["all"]["hosts"]["bostion"]
    assert (host["ansible_host"], host["ansible_user"]) == ("3.3.3.3", "ubuntu")
