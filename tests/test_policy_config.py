"""
Unit Tests for engine configuration loading (defaults, YAML file, environment).
"""

from datetime import timedelta
from pathlib import Path

import pytest

from office_ops.policy_config import ClientCascade, EngineConfig, load_config, read_yaml_config


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.retention_window == timedelta(days=90)
        assert config.guest_access_window == timedelta(days=30)
        assert config.client_cascade == ClientCascade.DETACH
        assert config.state_dir is None
        assert config.scanner_enabled

    @pytest.mark.parametrize("field,value", [
        ("retention_window_days", -1),
        ("guest_access_days", 0),
        ("expiry_tick_interval_seconds", 0),
        ("expiry_tick_timeout_seconds", -5),
    ])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValueError):
            EngineConfig(**{field: value})


class TestLoadConfig:
    def test_no_file_no_env(self):
        assert load_config(environ={}) == EngineConfig()

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "office_ops.yaml"
        path.write_text(
            "retention_window_days: 30\n"
            "client_cascade: DELETE\n"
            "state_dir: /var/lib/office_ops\n"
            "scanner_enabled: false\n"
        )
        config = load_config(path, environ={})
        assert config.retention_window_days == 30
        assert config.client_cascade == ClientCascade.DELETE
        assert config.state_dir == Path("/var/lib/office_ops")
        assert config.scanner_enabled is False

    def test_env_overrides_file(self, tmp_path):
        path = tmp_path / "office_ops.yaml"
        path.write_text("guest_access_days: 10\n")
        env = {
            "OFFICE_OPS_CONFIG": str(path),
            "OFFICE_OPS_GUEST_ACCESS_DAYS": "14",
            "OFFICE_OPS_NOTIFICATION_WEBHOOK": "https://hooks.example.com/notify",
        }
        config = load_config(environ=env)
        assert config.guest_access_days == 14
        assert config.notification_webhook_url == "https://hooks.example.com/notify"

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        assert load_config(tmp_path / "missing.yaml", environ={}) == EngineConfig()

    def test_unknown_keys_rejected(self, tmp_path):
        path = tmp_path / "office_ops.yaml"
        path.write_text("retention_days: 30\n")
        with pytest.raises(ValueError):
            read_yaml_config(path)

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "office_ops.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ValueError):
            read_yaml_config(path)

    def test_bad_env_value_raises(self):
        with pytest.raises(ValueError):
            load_config(environ={"OFFICE_OPS_CLIENT_CASCADE": "archive"})

    def test_to_dict(self):
        data = EngineConfig(state_dir=Path("/tmp/x")).to_dict()
        assert data["state_dir"] == "/tmp/x"
        assert data["client_cascade"] == "detach"
