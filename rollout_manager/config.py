"""Configuration management for the Rollout Manager."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


@dataclass(slots=True)
class Settings:
    """Application configuration loaded from environment variables."""

    environment_name: str
    stub_mode: bool
    kubectl_path: str
    kube_context: Optional[str]
    kubeconfig_path: Optional[str]
    kube_in_cluster: bool
    database_path: Path
    rollout_timeout_seconds: int
    poll_interval_seconds: float
    command_timeout_seconds: float
    smoke_timeout_seconds: float
    auto_retry_attempts: int
    log_level: str
    web_host: str
    web_port: int

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Create settings from environment variables (optionally loading a .env file)."""
        if env_file:
            load_dotenv(env_file, override=True)
        else:
            load_dotenv(override=False)

        environment_name = _determine_environment_name(os.environ.get("ENVIRONMENT_NAME", "dev"))
        database_path = _resolve_database_path(
            os.environ.get("DATABASE_PATH", "./data/rollout-manager.db"),
        )

        auto_retry_attempts = int(os.environ.get("AUTO_RETRY_ATTEMPTS", "1"))
        if auto_retry_attempts < 0:
            raise ValueError("AUTO_RETRY_ATTEMPTS must not be negative")
        rollout_timeout_seconds = int(os.environ.get("ROLLOUT_TIMEOUT_SECONDS", "300"))
        if rollout_timeout_seconds <= 0:
            raise ValueError("ROLLOUT_TIMEOUT_SECONDS must be positive")

        return cls(
            environment_name=environment_name,
            stub_mode=_to_bool(os.environ.get("STUB_MODE", "false")),
            kubectl_path=os.environ.get("KUBECTL_PATH", "kubectl"),
            kube_context=os.environ.get("KUBE_CONTEXT") or None,
            kubeconfig_path=os.environ.get("KUBECONFIG_PATH") or None,
            kube_in_cluster=_to_bool(os.environ.get("KUBE_IN_CLUSTER", "false")),
            database_path=database_path,
            rollout_timeout_seconds=rollout_timeout_seconds,
            poll_interval_seconds=float(os.environ.get("POLL_INTERVAL_SECONDS", "5")),
            command_timeout_seconds=float(os.environ.get("COMMAND_TIMEOUT_SECONDS", "30")),
            smoke_timeout_seconds=float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "5")),
            auto_retry_attempts=auto_retry_attempts,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            web_host=os.environ.get("WEB_HOST", "0.0.0.0"),
            web_port=int(os.environ.get("WEB_PORT", "8080")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings.from_env()


def _to_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _determine_environment_name(raw: str) -> str:
    name = raw.strip() or "dev"
    return name.replace(" ", "-").lower()


def _resolve_database_path(raw: str) -> Path:
    input_path = Path(raw).expanduser()

    # Treat trailing slash or lack of suffix as a directory hint.
    if raw.endswith("/") or input_path.suffix == "":
        directory = input_path.resolve()
        directory.mkdir(parents=True, exist_ok=True)
        return (directory / "rollout-manager.db").resolve()

    resolved = input_path.resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved
