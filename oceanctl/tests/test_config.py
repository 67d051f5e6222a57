import pytest

from oceanctl.config import Settings, get_config, redact, set_config


def test_defaults():
    settings = Settings()
    assert settings.ssh.connect_timeout == 5
    assert settings.ssh.command_timeout == 1800
    assert settings.ansible.forks == 10
    assert settings.resource.clusters_dir.name == "clusters"


def test_load_from_file_with_env_override(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("ssh:\n  user: ubuntu\nlogging:\n  level: debug\nansible:\n  forks: 5\n")
    monkeypatch.setenv("OCEAN_ANSIBLE_FORKS", "20")
    monkeypatch.delenv("OCEAN_SSH_USER", raising=False)

    settings = Settings.load(path)

    assert settings.ssh.user == "ubuntu"
    assert settings.logging.level == "DEBUG"
    assert settings.ansible.forks == 20


def test_explicit_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Settings.load(tmp_path / "absent.yaml")


def test_save_and_reload(tmp_path):
    settings = Settings()
    settings.api.port = 9000
    settings.save(tmp_path / "out.yaml")
    assert Settings.load(tmp_path / "out.yaml").api.port == 9000


def test_global_config_can_be_replaced():
    custom = Settings()
    set_config(custom)
    try:
        assert get_config() is custom
    finally:
        set_config(None)


def test_redact_masks_credentials():
    data = redact({"access_key": "secret", "private_key": "", "name": "demo"})
    assert data == {"access_key": "***", "private_key": "", "name": "demo"}
