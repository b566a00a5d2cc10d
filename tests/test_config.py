"""
Tests for configuration resolution.

Sources in order of precedence: environment, runtime overrides, YAML file,
defaults. Resolution yields one frozen ClientSettings value.
"""

import dataclasses
import os

import pytest

from docstate.errors import ConfigurationError
from docstate.platform import PlatformContextProvider
from docstate.runtime.config import ClientSettings, ConfigManager, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("DOCSTATE_"):
            monkeypatch.delenv(name)


def _write(tmp_path, text):
    path = tmp_path / "docstate.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestResolve:
    def test_defaults(self):
        settings = ConfigManager().resolve()
        assert settings == ClientSettings()
        assert settings.initial_revision == 1
        assert settings.signing_security_levels == ("HIGH", "CRITICAL")
        assert settings.platform_uri == "http://127.0.0.1:1443"
        assert settings.core_uri == "http://127.0.0.1:19998"

    def test_settings_are_frozen(self):
        settings = ClientSettings()
        with pytest.raises(dataclasses.FrozenInstanceError):
            settings.host = "10.0.0.1"

    def test_yaml_file(self, tmp_path):
        path = _write(
            tmp_path,
            """
connection:
  host: 10.0.0.2
  network: mainnet
submission:
  max_submit_attempts: 5
  confirmation_timeout_seconds: 12.5
document:
  signing_security_levels: [critical]
""",
        )
        settings = load_settings(path)
        assert settings.host == "10.0.0.2"
        assert settings.network == "mainnet"
        assert settings.max_submit_attempts == 5
        assert settings.confirmation_timeout_seconds == 12.5
        assert settings.signing_security_levels == ("CRITICAL",)

    def test_empty_yaml_keeps_defaults(self, tmp_path):
        assert load_settings(_write(tmp_path, "")) == ClientSettings()

    def test_environment_beats_file(self, tmp_path, monkeypatch):
        path = _write(tmp_path, "connection:\n  host: 10.0.0.2\n")
        monkeypatch.setenv("DOCSTATE_HOST", "10.9.9.9")
        monkeypatch.setenv("DOCSTATE_MAX_SUBMIT_ATTEMPTS", "7")
        monkeypatch.setenv("DOCSTATE_SIGNING_SECURITY_LEVELS", "high, medium")
        settings = load_settings(path)
        assert settings.host == "10.9.9.9"
        assert settings.max_submit_attempts == 7
        assert settings.signing_security_levels == ("HIGH", "MEDIUM")

    def test_runtime_override(self):
        manager = ConfigManager()
        manager.set("submission.poll_interval_seconds", 0.1)
        assert manager.get("submission.poll_interval_seconds") == 0.1
        assert manager.resolve().poll_interval_seconds == 0.1


class TestInvalid:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "absent.yaml")

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(_write(tmp_path, "- one\n- two\n"))

    def test_malformed_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(_write(tmp_path, "connection: [unclosed\n"))

    def test_unknown_key(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(_write(tmp_path, "connection:\n  hots: x\n"))
        assert "connection.hots" in str(exc_info.value)

    @pytest.mark.parametrize(
        "path, value",
        [
            ("connection.network", "moonnet"),
            ("connection.core_port", 70000),
            ("submission.max_submit_attempts", 0),
            ("document.signing_security_levels", ["ULTRA"]),
            ("observability.log_format", "xml"),
        ],
    )
    def test_validator_rejects(self, path, value):
        with pytest.raises(ConfigurationError):
            ConfigManager().set(path, value)

    def test_unparseable_environment_value(self, monkeypatch):
        monkeypatch.setenv("DOCSTATE_CORE_PORT", "not-a-port")
        manager = ConfigManager()
        assert any("DOCSTATE_CORE_PORT" in e for e in manager.validate())
        with pytest.raises(ConfigurationError):
            manager.resolve()

    def test_invalid_environment_value(self, monkeypatch):
        monkeypatch.setenv("DOCSTATE_NETWORK", "moonnet")
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigManager().resolve()
        assert "connection.network" in str(exc_info.value)

    def test_unknown_path(self):
        with pytest.raises(ConfigurationError):
            ConfigManager().set("connection.nope", 1)


class TestRedaction:
    def test_password_redacted(self, monkeypatch):
        monkeypatch.setenv("DOCSTATE_CORE_PASSWORD", "s3cret")
        settings = ConfigManager().resolve()
        assert settings.to_dict()["core_password"] == "***"
        assert settings.to_dict(redact=False)["core_password"] == "s3cret"
        assert "s3cret" not in repr(settings)

    def test_schema_export_hides_secret_default(self):
        schema = ConfigManager().export_schema()["properties"]
        assert schema["connection"]["core_password"]["default"] == "***"
        assert schema["connection"]["host"]["env_var"] == "DOCSTATE_HOST"
        assert schema["submission"]["max_submit_attempts"]["type"] == "int"

    def test_context_provider_describe(self):
        settings = ClientSettings(core_password="s3cret", host="node.local")
        described = PlatformContextProvider(settings).describe()
        assert described["platform_uri"] == "http://node.local:1443"
        assert described["core_password"] == "***"
