"""Monitor configuration loading and validation."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Literal

import yaml
from pydantic import AnyHttpUrl, Field, NonNegativeInt, PositiveFloat, PositiveInt
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("/etc/flowwatch/flowwatch.yaml"),
    Path("/etc/flowwatch/flowwatch.yml"),
    Path("./config/flowwatch.yaml"),
    Path("./config/flowwatch.yml"),
)


class MonitorSettings(BaseSettings):
    """Validated settings for the execution monitor."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="FLOWWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Engine endpoints + identity
    api_base_url: AnyHttpUrl = Field(
        default="http://localhost:8000",
        description="Base URL of the orchestration engine REST API.",
    )
    auth_token: str | None = Field(
        default=None,
        description="Bearer token sent to the engine; also passed as ?token= on the event stream.",
        repr=False,
    )
    request_timeout_seconds: PositiveFloat = Field(
        default=30.0,
        description="Timeout for REST command requests.",
    )
    stream_connect_timeout_seconds: PositiveFloat = Field(
        default=10.0,
        description="Timeout for opening the event stream (reads never time out).",
    )

    # Reconnection policy
    reconnect_base_delay_seconds: PositiveFloat = Field(
        default=1.0,
        description="Base delay for stream reconnection backoff.",
    )
    reconnect_max_delay_seconds: PositiveFloat = Field(
        default=30.0,
        description="Maximum delay for stream reconnection backoff.",
    )
    reconnect_jitter: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Jitter factor applied to reconnection backoff (0.0-1.0).",
    )
    reconnect_max_attempts: NonNegativeInt = Field(
        default=5,
        description="Consecutive failed attempts tolerated before giving up on the stream.",
    )
    reconnect_abort_on_auth_error: bool = Field(
        default=True,
        description="Give up immediately when the engine rejects the stream credentials.",
    )
    heartbeat_promotes_connected: bool = Field(
        default=True,
        description="Treat heartbeat events as proof that the stream is connected.",
    )

    # Execution tracking policy
    stale_execution_seconds: PositiveInt = Field(
        default=300,
        description="Running executions without updates for longer than this are not resumed on load.",
    )
    recent_executions_limit: PositiveInt = Field(
        default=5,
        description="How many recent executions to inspect when resuming on load.",
    )
    cancel_confirm_timeout_seconds: PositiveFloat = Field(
        default=10.0,
        description="How long to keep watching for execution_cancelled after a cancel request.",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level for the monitor process.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        if isinstance(value, str):
            return value.upper()
        return value

    config_path: Path | None = Field(
        default=None,
        description="Resolved path to the on-disk config that seeded the settings.",
        exclude=True,
    )

    @property
    def api_root(self) -> str:
        return str(self.api_base_url).rstrip("/")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[MonitorSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            cls._file_settings_source,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @staticmethod
    def _file_settings_source(settings_cls: type[MonitorSettings] | None = None) -> Dict[str, Any]:
        candidates: Iterable[Path] = MonitorSettings._resolve_candidate_paths()

        for path in candidates:
            data = MonitorSettings._load_file(path)
            if data is not None:
                data.setdefault("config_path", path)
                return data
        return {}

    @staticmethod
    def _resolve_candidate_paths() -> Iterable[Path]:
        explicit = os.getenv("FLOWWATCH_CONFIG_FILE")
        if explicit:
            yield Path(explicit).expanduser()
        yield from DEFAULT_CONFIG_LOCATIONS

    @staticmethod
    def _load_file(path: Path) -> Dict[str, Any] | None:
        if not path.is_file():
            return None
        suffix = path.suffix.lower()
        try:
            with path.open("r", encoding="utf-8") as handle:
                if suffix in {".yaml", ".yml"}:
                    raw = yaml.safe_load(handle)
                elif suffix == ".json":
                    raw = json.load(handle)
                else:
                    return None
        except OSError as exc:
            raise RuntimeError(f"Failed to read flowwatch config file {path}") from exc
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid flowwatch config file {path}") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"flowwatch config file {path} must contain a mapping at top level.")
        return raw


@lru_cache()
def get_settings() -> MonitorSettings:
    """Return memoized monitor settings."""

    return MonitorSettings()
