"""Client configuration: server location, credential, space, timeouts, retry policy."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

DEFAULT_USER_AGENT = "octopus-deploy-client/0.1"


@dataclass(frozen=True)
class ClientConfiguration:
    """Connection settings for one client session.

    Tunables pick up environment overrides at construction time; the instance is
    read-only afterwards.
    """

    server_url: str
    api_key: str
    space: str | None = None
    request_timeout_seconds: float = field(
        default_factory=lambda: float(os.environ.get("OCTOPUS_REQUEST_TIMEOUT", "30"))
    )
    retry_attempts: int = field(default_factory=lambda: int(os.environ.get("OCTOPUS_RETRY_ATTEMPTS", "3")))
    retry_backoff_seconds: float = field(default_factory=lambda: float(os.environ.get("OCTOPUS_RETRY_BACKOFF", "0.5")))
    retry_backoff_max_seconds: float = 8.0
    poll_interval_seconds: float = field(default_factory=lambda: float(os.environ.get("OCTOPUS_POLL_INTERVAL", "10")))
    poll_timeout_seconds: float = field(default_factory=lambda: float(os.environ.get("OCTOPUS_POLL_TIMEOUT", "600")))
    user_agent: str = DEFAULT_USER_AGENT

    @property
    def server_identity(self) -> str:
        """Normalised server URL used as the cache identity of this server."""
        return self.server_url.rstrip("/").lower()

    def with_space(self, space: str | None) -> ClientConfiguration:
        return replace(self, space=space)


_TUNABLE_KEYS = {
    "request_timeout_seconds": float,
    "retry_attempts": int,
    "retry_backoff_seconds": float,
    "retry_backoff_max_seconds": float,
    "poll_interval_seconds": float,
    "poll_timeout_seconds": float,
    "user_agent": str,
}


def _read_config_file(path: Path) -> dict[str, Any]:
    """Parse a YAML client configuration file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a mapping or holds unknown keys.
    """
    if not path.exists():
        msg = f"Client configuration file not found: {path}."
        raise FileNotFoundError(msg)

    raw = yaml.safe_load(path.read_text())
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        msg = f"Client config file {path} must contain a mapping, got {type(raw).__name__}."
        raise ValueError(msg)

    known = {"server_url", "api_key", "space", *_TUNABLE_KEYS}
    unknown = sorted(str(k) for k in raw if k not in known)
    if unknown:
        msg = f"Client config file {path} has unknown keys: {', '.join(unknown)}."
        raise ValueError(msg)
    return raw


def load_configuration(path: Path | str | None = None) -> ClientConfiguration:
    """Build a configuration from an optional YAML file plus environment overrides.

    The file path comes from ``path`` or the ``OCTOPUS_CLIENT_CONFIG`` environment
    variable. ``OCTOPUS_HOST``, ``OCTOPUS_API_KEY`` and ``OCTOPUS_SPACE`` take
    precedence over values in the file.

    Raises:
        FileNotFoundError: If an explicit configuration file is missing.
        ValueError: If the server URL or API key cannot be determined.
    """
    file_path = path or os.environ.get("OCTOPUS_CLIENT_CONFIG")
    values: dict[str, Any] = _read_config_file(Path(file_path)) if file_path else {}

    server_url = os.environ.get("OCTOPUS_HOST") or values.get("server_url")
    api_key = os.environ.get("OCTOPUS_API_KEY") or values.get("api_key")
    space = os.environ.get("OCTOPUS_SPACE") or values.get("space")

    missing = [name for name, value in (("server_url", server_url), ("api_key", api_key)) if not value]
    if missing:
        msg = (
            f"Client configuration is missing: {', '.join(missing)}. "
            "Set OCTOPUS_HOST and OCTOPUS_API_KEY or provide them in the config file."
        )
        raise ValueError(msg)

    tunables = {key: cast(values[key]) for key, cast in _TUNABLE_KEYS.items() if key in values}
    return ClientConfiguration(
        server_url=str(server_url),
        api_key=str(api_key),
        space=str(space) if space else None,
        **tunables,
    )


def validate_configuration(config: ClientConfiguration) -> None:
    """Validate a configuration before first use.

    Raises ValueError listing every problem found.
    """
    errors: list[str] = []
    parsed = urlparse(config.server_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        errors.append(f"server_url {config.server_url!r} must be an absolute http(s) URL")
    if not config.api_key.startswith("API-"):
        errors.append("api_key must start with 'API-'")
    if config.request_timeout_seconds <= 0:
        errors.append("request_timeout_seconds must be positive")
    if config.retry_attempts < 1:
        errors.append("retry_attempts must be at least 1")
    if config.retry_backoff_seconds < 0:
        errors.append("retry_backoff_seconds must not be negative")
    if config.poll_interval_seconds <= 0:
        errors.append("poll_interval_seconds must be positive")
    if config.poll_timeout_seconds <= 0:
        errors.append("poll_timeout_seconds must be positive")

    if errors:
        detail = "; ".join(errors)
        msg = f"Client configuration errors: {detail}."
        raise ValueError(msg)
