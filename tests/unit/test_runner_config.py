import pytest
from pydantic import ValidationError

from runner_config import CONFIG_FILE_ENV, RunnerConfig, load_runner_config


@pytest.fixture(autouse=True)
def no_config_env(monkeypatch):
    monkeypatch.delenv(CONFIG_FILE_ENV, raising=False)


def test_defaults():
    config = load_runner_config()
    assert config.base_url is None
    assert config.default_step_timeout_ms == 30000
    assert config.dry_run is False and config.verify_ssl is True
    assert config.session_idle_timeout_s == 3600


def test_yaml_file_accepts_display_names_and_field_names(tmp_path):
    path = tmp_path / "runner.yaml"
    path.write_text(
        "Base URL: http://api.test\n"
        "Default Step Timeout MS: 1500\n"
        "verify_ssl: false\n"
        "Session Idle Timeout S: 0\n"
    )
    config = load_runner_config(path)
    assert config.base_url == "http://api.test"
    assert config.default_step_timeout_ms == 1500
    assert config.verify_ssl is False
    assert config.session_idle_timeout_s is None


def test_overrides_win_and_none_overrides_are_ignored(tmp_path, monkeypatch):
    path = tmp_path / "runner.yaml"
    path.write_text("Base URL: http://file.test\nDry Run: true\n")
    monkeypatch.setenv(CONFIG_FILE_ENV, str(path))

    config = load_runner_config(base_url="http://cli.test", dry_run=None)
    assert config.base_url == "http://cli.test"
    assert config.dry_run is True


@pytest.mark.parametrize("base_url", ["api.test", "ftp://api.test", "http://"])
def test_base_url_must_be_absolute_http(base_url):
    with pytest.raises(ValidationError):
        RunnerConfig(base_url=base_url)


def test_empty_base_url_is_unset():
    assert RunnerConfig(base_url="  ").base_url is None


def test_non_mapping_file_is_rejected(tmp_path):
    path = tmp_path / "runner.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_runner_config(path)
