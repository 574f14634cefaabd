"""Tests for config.py: defaults, environment overrides, YAML loading, validation."""

from __future__ import annotations

import os
from dataclasses import FrozenInstanceError
from pathlib import Path
from unittest.mock import patch

import pytest

from octopus_client.config import ClientConfiguration, load_configuration, validate_configuration


def _make_config(**overrides: object) -> ClientConfiguration:
    values: dict[str, object] = {"server_url": "https://octopus.example.com", "api_key": "API-ABC123"}
    values.update(overrides)
    return ClientConfiguration(**values)  # type: ignore[arg-type]


class TestClientConfiguration:
    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = _make_config()
        assert config.request_timeout_seconds == 30
        assert config.retry_attempts == 3
        assert config.retry_backoff_seconds == 0.5
        assert config.poll_interval_seconds == 10
        assert config.poll_timeout_seconds == 600
        assert config.space is None

    def test_env_overrides_tunables(self) -> None:
        env = {
            "OCTOPUS_REQUEST_TIMEOUT": "12.5",
            "OCTOPUS_RETRY_ATTEMPTS": "5",
            "OCTOPUS_RETRY_BACKOFF": "2",
            "OCTOPUS_POLL_INTERVAL": "3",
            "OCTOPUS_POLL_TIMEOUT": "90",
        }
        with patch.dict(os.environ, env, clear=True):
            config = _make_config()
        assert config.request_timeout_seconds == 12.5
        assert config.retry_attempts == 5
        assert config.retry_backoff_seconds == 2.0
        assert config.poll_interval_seconds == 3.0
        assert config.poll_timeout_seconds == 90.0

    def test_is_frozen(self) -> None:
        config = _make_config()
        with pytest.raises(FrozenInstanceError):
            config.space = "Other"  # type: ignore[misc]

    def test_server_identity_is_normalised(self) -> None:
        assert _make_config(server_url="https://Octopus.Example.com/").server_identity == "https://octopus.example.com"

    def test_with_space_returns_copy(self) -> None:
        config = _make_config()
        scoped = config.with_space("Spaces-2")
        assert scoped.space == "Spaces-2"
        assert config.space is None


class TestLoadConfiguration:
    def test_from_environment_only(self) -> None:
        env = {"OCTOPUS_HOST": "https://deploy.example.com", "OCTOPUS_API_KEY": "API-XYZ", "OCTOPUS_SPACE": "Ops"}
        with patch.dict(os.environ, env, clear=True):
            config = load_configuration()
        assert config.server_url == "https://deploy.example.com"
        assert config.api_key == "API-XYZ"
        assert config.space == "Ops"

    def test_from_yaml_file(self, tmp_path: Path) -> None:
        path = tmp_path / "client.yaml"
        path.write_text(
            "server_url: https://file.example.com\n"
            "api_key: API-FILE\n"
            "space: Default\n"
            "retry_attempts: 7\n"
            "poll_interval_seconds: 2\n"
        )
        with patch.dict(os.environ, {}, clear=True):
            config = load_configuration(path)
        assert config.server_url == "https://file.example.com"
        assert config.retry_attempts == 7
        assert config.poll_interval_seconds == 2.0
        assert config.space == "Default"

    def test_environment_beats_file(self, tmp_path: Path) -> None:
        path = tmp_path / "client.yaml"
        path.write_text("server_url: https://file.example.com\napi_key: API-FILE\n")
        env = {"OCTOPUS_CLIENT_CONFIG": str(path), "OCTOPUS_API_KEY": "API-ENV"}
        with patch.dict(os.environ, env, clear=True):
            config = load_configuration()
        assert config.server_url == "https://file.example.com"
        assert config.api_key == "API-ENV"

    def test_missing_credentials(self) -> None:
        with patch.dict(os.environ, {"OCTOPUS_HOST": "https://x.example.com"}, clear=True):
            with pytest.raises(ValueError, match="api_key"):
                load_configuration()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_configuration(tmp_path / "nope.yaml")

    def test_non_mapping_file(self, tmp_path: Path) -> None:
        path = tmp_path / "client.yaml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            load_configuration(path)

    def test_unknown_keys(self, tmp_path: Path) -> None:
        path = tmp_path / "client.yaml"
        path.write_text("server_url: https://x.example.com\napi_key: API-1\nproxy: http://p\n")
        with pytest.raises(ValueError, match="unknown keys: proxy"):
            load_configuration(path)


class TestValidateConfiguration:
    def test_valid(self) -> None:
        validate_configuration(_make_config())

    def test_collects_every_problem(self) -> None:
        config = _make_config(server_url="ftp://x", api_key="secret", request_timeout_seconds=0, retry_attempts=0)
        with pytest.raises(ValueError) as excinfo:
            validate_configuration(config)
        message = str(excinfo.value)
        assert "http(s) URL" in message
        assert "API-" in message
        assert "request_timeout_seconds" in message
        assert "retry_attempts" in message

    def test_negative_backoff(self) -> None:
        with pytest.raises(ValueError, match="retry_backoff_seconds"):
            validate_configuration(_make_config(retry_backoff_seconds=-1))
