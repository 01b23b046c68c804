"""
Configuration management for the OpenPond SDK.
"""

import os
import json
from pathlib import Path
from urllib.parse import urlparse
from dataclasses import dataclass, asdict, fields, replace
from typing import Optional, Mapping

from .errors import ConfigError

OPENPOND_DIR = Path.home() / ".openpond"
CONFIG_FILE = OPENPOND_DIR / "config.json"

DEFAULT_API_URL = "https://api.openpond.com"

# Environment variables consulted by OpenPondConfig.with_env()
ENV_API_URL = "OPENPOND_API_URL"
ENV_PRIVATE_KEY = "OPENPOND_PRIVATE_KEY"
ENV_API_KEY = "OPENPOND_API_KEY"
ENV_AGENT_NAME = "OPENPOND_AGENT_NAME"

# Delivery defaults
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_INACTIVITY_TIMEOUT = 90.0  # Server heartbeats every ~30s
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_BACKOFF_MIN = 1.0
DEFAULT_BACKOFF_MAX = 60.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_BACKOFF_JITTER = 0.25
DEFAULT_STREAM_RETRY_INTERVAL = 300.0
DEFAULT_RECONNECT_ATTEMPTS = 3
DEFAULT_DEDUP_WINDOW = 1000


@dataclass
class OpenPondConfig:
    """
    OpenPond client configuration.

    The SDK can be used in two ways:
    1. With a private key - your own agent identity, registered on start()
    2. Without a private key - a hosted agent, optionally with an API key

    If both private_key and api_key are given, private_key takes precedence.
    """
    api_url: Optional[str] = None
    private_key: Optional[str] = None
    api_key: Optional[str] = None
    agent_name: Optional[str] = None
    allow_anonymous: bool = True
    register_on_start: bool = True
    use_stream: bool = True
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    backoff_min: float = DEFAULT_BACKOFF_MIN
    backoff_max: float = DEFAULT_BACKOFF_MAX
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    backoff_jitter: float = DEFAULT_BACKOFF_JITTER
    stream_retry_interval: Optional[float] = DEFAULT_STREAM_RETRY_INTERVAL
    reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS
    dedup_window: int = DEFAULT_DEDUP_WINDOW
    log_level: str = "INFO"

    @classmethod
    def default(cls) -> "OpenPondConfig":
        """Create default configuration."""
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> "OpenPondConfig":
        """Create configuration from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, path: Path) -> "OpenPondConfig":
        """Load configuration from file."""
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    def save(self, path: Path) -> None:
        """Save configuration to file (with restricted permissions, it may hold keys)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
        path.chmod(0o600)

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "OpenPondConfig":
        """
        Return a copy with unset fields filled from the environment.

        Explicit values win over the environment; the environment wins over
        built-in defaults. Empty environment values are ignored.
        """
        env = os.environ if environ is None else environ

        def pick(explicit: Optional[str], name: str) -> Optional[str]:
            if explicit is not None:
                return explicit
            return env.get(name) or None

        return replace(
            self,
            api_url=pick(self.api_url, ENV_API_URL) or DEFAULT_API_URL,
            private_key=pick(self.private_key, ENV_PRIVATE_KEY),
            api_key=pick(self.api_key, ENV_API_KEY),
            agent_name=pick(self.agent_name, ENV_AGENT_NAME),
        )

    @property
    def base_url(self) -> str:
        return (self.api_url or DEFAULT_API_URL).rstrip('/')

    def validate(self) -> None:
        """Raise ConfigError if the configuration cannot be used."""
        parsed = urlparse(self.base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"api_url must be an http(s) URL, got {self.api_url!r}")

        for name in ("request_timeout", "inactivity_timeout", "poll_interval",
                     "backoff_min", "backoff_max"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")

        if self.backoff_min > self.backoff_max:
            raise ConfigError("backoff_min must not exceed backoff_max")
        if self.backoff_factor < 1:
            raise ConfigError("backoff_factor must be at least 1")
        if not 0 <= self.backoff_jitter <= 1:
            raise ConfigError("backoff_jitter must be between 0 and 1")
        if self.stream_retry_interval is not None and self.stream_retry_interval <= 0:
            raise ConfigError("stream_retry_interval must be positive or None")
        if self.reconnect_attempts < 0:
            raise ConfigError("reconnect_attempts must not be negative")
        if self.dedup_window < 1:
            raise ConfigError("dedup_window must be at least 1")

        if self.private_key and self.register_on_start and not self.agent_name:
            raise ConfigError("agent_name is required to register a private-key identity")
