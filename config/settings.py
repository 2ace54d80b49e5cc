"""
config/settings.py — Tether Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - RelayConfig rejects non-http(s) server URLs at parse time
  - ReconnectConfig requires base_delay <= max_delay
  - AgentConfig validates family, starting mode and permission mode
  - validate_all() performs full startup validation and raises ConfigError
    with a clear, human-readable message listing every problem found
  - load_settings() respects TETHER_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import shutil
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

VALID_AGENT_FAMILIES = {"claude", "codex", "gemini"}
VALID_MODES = {"local", "remote"}
VALID_PERMISSION_MODES = {
    "default", "acceptEdits", "bypassPermissions", "plan",
    "read-only", "safe-yolo", "yolo",
}
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_DEFAULT_BINARIES = {"claude": "claude", "codex": "codex", "gemini": "gemini"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class RelayConfig(BaseModel):
    server_url: str = "https://relay.tether.dev"
    keep_alive_seconds: float = 2.0
    request_timeout_seconds: float = 10.0

    @field_validator("server_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(
                f"relay.server_url must start with http:// or https://, got '{v}'"
            )
        return v.rstrip("/")

    @field_validator("keep_alive_seconds", "request_timeout_seconds")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("relay timings must be > 0")
        return v


class ReconnectConfig(BaseModel):
    """Exponential backoff config for the offline reconnection loop."""
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5
    probe_timeout_seconds: float = 5.0

    @model_validator(mode="after")
    def _ordered_delays(self) -> "ReconnectConfig":
        if self.base_delay <= 0:
            raise ValueError("reconnect.base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("reconnect.max_delay must be >= reconnect.base_delay")
        if self.jitter < 0:
            raise ValueError("reconnect.jitter must be >= 0")
        return self


class AgentConfig(BaseModel):
    family: str = "claude"
    binary: Optional[str] = None
    starting_mode: str = "local"
    permission_mode: str = "default"
    model: Optional[str] = None
    extra_args: list[str] = Field(default_factory=list)
    terminate_grace_seconds: float = 5.0

    @field_validator("family")
    @classmethod
    def _known_family(cls, v: str) -> str:
        if v not in VALID_AGENT_FAMILIES:
            raise ValueError(
                f"agent.family '{v}' is not supported. "
                f"Supported: {sorted(VALID_AGENT_FAMILIES)}"
            )
        return v

    @field_validator("starting_mode")
    @classmethod
    def _known_mode(cls, v: str) -> str:
        if v not in VALID_MODES:
            raise ValueError(f"agent.starting_mode must be 'local' or 'remote', got '{v}'")
        return v

    @field_validator("permission_mode")
    @classmethod
    def _known_permission_mode(cls, v: str) -> str:
        if v not in VALID_PERMISSION_MODES:
            raise ValueError(
                f"agent.permission_mode '{v}' is not valid. "
                f"Must be one of: {sorted(VALID_PERMISSION_MODES)}"
            )
        return v

    @property
    def resolved_binary(self) -> str:
        return self.binary or _DEFAULT_BINARIES[self.family]


class ReasoningConfig(BaseModel):
    history_size: int = 50

    @field_validator("history_size")
    @classmethod
    def _positive_history(cls, v: int) -> int:
        if v < 1:
            raise ValueError("reasoning.history_size must be >= 1")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "~/.tether/logs"
    max_file_size_mb: int = 20
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Tether runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    relay_token: Optional[str] = Field(default=None, alias="TETHER_RELAY_TOKEN")

    # -- Structured config (from config.yaml) --------------------------------
    relay: RelayConfig = Field(default_factory=RelayConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("relay", mode="before")
    @classmethod
    def _coerce_relay(cls, v: Any) -> Any:
        return RelayConfig(**v) if isinstance(v, dict) else v

    @field_validator("reconnect", mode="before")
    @classmethod
    def _coerce_reconnect(cls, v: Any) -> Any:
        return ReconnectConfig(**v) if isinstance(v, dict) else v

    @field_validator("agent", mode="before")
    @classmethod
    def _coerce_agent(cls, v: Any) -> Any:
        return AgentConfig(**v) if isinstance(v, dict) else v

    @field_validator("reasoning", mode="before")
    @classmethod
    def _coerce_reasoning(cls, v: Any) -> Any:
        return ReasoningConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def server_url(self) -> str:
        return self.relay.server_url

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir).expanduser()

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Called once at startup in main.py bootstrap(). Pydantic field
        validators catch type/value errors at parse time; this method catches
        problems that depend on the machine (binary on PATH, secrets present).
        """
        errors: list[str] = []

        # ── Agent binary must be resolvable ─────────────────────────────────
        binary = self.agent.resolved_binary
        if shutil.which(binary) is None and not Path(binary).is_file():
            errors.append(
                f"Agent binary '{binary}' for family '{self.agent.family}' was not "
                f"found on PATH. Install it or set agent.binary in config.yaml."
            )

        # ── Relay token for https relays ────────────────────────────────────
        if self.relay.server_url.startswith("https://") and not self.relay_token:
            errors.append(
                "TETHER_RELAY_TOKEN is not set. Run the pairing flow or add it "
                "to your .env file."
            )

        # ── Keep-alive must fire well within the request timeout ────────────
        if self.relay.keep_alive_seconds >= self.relay.request_timeout_seconds:
            errors.append(
                "relay.keep_alive_seconds must be smaller than "
                "relay.request_timeout_seconds."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nTether startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in your config.yaml or .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"relay", "reconnect", "agent", "reasoning", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


_PACKAGED_CONFIG = Path(__file__).parent / "config.yaml"
_USER_CONFIG = Path("~/.tether/config.yaml")


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. TETHER_CONFIG environment variable
      3. ~/.tether/config.yaml, when present
      4. The config.yaml shipped next to this module

    The working directory is never consulted: it belongs to the project
    the agent is working on.
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("TETHER_CONFIG")
    if env_path:
        return Path(env_path)
    user_path = _USER_CONFIG.expanduser()
    if user_path.is_file():
        return user_path
    return _PACKAGED_CONFIG


def load_settings(config_path: str | Path | None = None, **overrides: Any) -> Settings:
    """
    Load settings by merging config.yaml with environment variables.

    Keyword overrides replace whole sections after YAML merging, e.g.
    load_settings(agent={"family": "codex"}) from CLI flags.
    """
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
    for section, values in overrides.items():
        if section not in _KNOWN_SECTIONS:
            raise ValueError(f"Unknown settings section '{section}'")
        merged = dict(init_kwargs.get(section) or {})
        merged.update({k: v for k, v in values.items() if v is not None})
        init_kwargs[section] = merged

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading defaults on first use.
    Guarded by _singleton_lock to prevent double-initialisation.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(**{
                k: v for k, v in _load_yaml(_resolve_config_path(None)).items()
                if k in _KNOWN_SECTIONS
            })
        return _singleton
