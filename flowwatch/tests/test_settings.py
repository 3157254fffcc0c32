import pytest

from flowwatch.config import MonitorSettings, get_settings


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("FLOWWATCH_CONFIG_FILE", "FLOWWATCH_API_BASE_URL", "FLOWWATCH_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults():
    settings = MonitorSettings()

    assert settings.api_root == "http://localhost:8000"
    assert settings.reconnect_max_attempts == 5
    assert settings.stale_execution_seconds == 300
    assert settings.recent_executions_limit == 5
    assert settings.heartbeat_promotes_connected is True
    assert settings.config_path is None


def test_yaml_file_is_loaded(monkeypatch, tmp_path):
    config = tmp_path / "monitor.yaml"
    config.write_text("api_base_url: http://engine:9000\nstale_execution_seconds: 60\nlog_level: debug\n")
    monkeypatch.setenv("FLOWWATCH_CONFIG_FILE", str(config))

    settings = get_settings()

    assert settings.api_root == "http://engine:9000"
    assert settings.stale_execution_seconds == 60
    assert settings.log_level == "DEBUG"
    assert settings.config_path == config
    assert get_settings() is settings


def test_init_values_override_file(monkeypatch, tmp_path):
    config = tmp_path / "monitor.json"
    config.write_text('{"reconnect_max_attempts": 2}')
    monkeypatch.setenv("FLOWWATCH_CONFIG_FILE", str(config))

    assert MonitorSettings().reconnect_max_attempts == 2
    assert MonitorSettings(reconnect_max_attempts=9).reconnect_max_attempts == 9


def test_environment_is_read(monkeypatch):
    monkeypatch.setenv("FLOWWATCH_LOG_LEVEL", "warning")

    assert MonitorSettings().log_level == "WARNING"


def test_invalid_file_contents_are_rejected(monkeypatch, tmp_path):
    config = tmp_path / "monitor.yaml"
    config.write_text("- just\n- a list\n")
    monkeypatch.setenv("FLOWWATCH_CONFIG_FILE", str(config))

    with pytest.raises(ValueError, match="mapping"):
        MonitorSettings()


def test_out_of_range_values_fail_validation():
    with pytest.raises(ValueError):
        MonitorSettings(reconnect_jitter=1.5)
