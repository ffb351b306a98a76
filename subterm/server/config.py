"""
Server configuration from environment variables.

A .env file in the working directory is loaded first; variables
already present in the environment take precedence.

Usage:
    from subterm.server.config import get_settings

    settings = get_settings()
    print(settings.host, settings.port)
"""

from functools import lru_cache
from typing import List, Optional
import os

from dotenv import load_dotenv

from subterm.exceptions import ConfigError


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(
        f"{name} must be a boolean (true/false, 1/0, yes/no, on/off), got {raw!r}"
    )


class Settings:
    """Server configuration loaded from environment variables."""

    def __init__(self) -> None:
        load_dotenv(override=False)

        # Server
        self.host: str = os.getenv("SUBTERM_HOST", "0.0.0.0")
        self.port: int = _int_env("SUBTERM_PORT", 4000, minimum=1)
        self.client_origins: List[str] = [
            origin.strip()
            for origin in os.getenv("SUBTERM_CLIENT_ORIGIN", "http://localhost:5173").split(",")
            if origin.strip()
        ]
        self.log_level: str = os.getenv("SUBTERM_LOG_LEVEL", "INFO").upper()

        # State store
        self.state_store: str = os.getenv("SUBTERM_STATE_STORE", "memory").lower()
        if self.state_store not in ("memory", "redis"):
            raise ConfigError(
                f"SUBTERM_STATE_STORE must be 'memory' or 'redis', got {self.state_store!r}"
            )
        self.redis_url: str = os.getenv("SUBTERM_REDIS_URL", "redis://localhost:6379/0")
        self.key_prefix: str = os.getenv("SUBTERM_KEY_PREFIX", "subterm")

        # Capacity and per-sandbox limits
        self.max_sandboxes: int = _int_env("SUBTERM_MAX_SANDBOXES", 10, minimum=1)
        self.sandbox_memory_bytes: int = _int_env(
            "SUBTERM_SANDBOX_MEMORY_BYTES", 512 * 1024 * 1024, minimum=1
        )
        self.sandbox_cpus: float = _float_env("SUBTERM_SANDBOX_CPUS", 1.0, minimum=0.01)
        self.sandbox_pids_limit: int = _int_env("SUBTERM_SANDBOX_PIDS_LIMIT", 100, minimum=1)
        self.workspace_size_bytes: int = _int_env(
            "SUBTERM_WORKSPACE_SIZE_BYTES", 1024 * 1024 * 1024, minimum=1
        )
        self.workspace_path: str = os.getenv("SUBTERM_WORKSPACE_PATH", "/workspace")
        self.disk_quota: bool = _bool_env("SUBTERM_DISK_QUOTA", True)

        # Lifecycle
        self.inactivity_timeout_ms: int = _int_env(
            "SUBTERM_INACTIVITY_TIMEOUT_MS", 10 * 60 * 1000, minimum=1
        )
        self.cleanup_interval_ms: int = _int_env(
            "SUBTERM_CLEANUP_INTERVAL_MS", 60 * 1000, minimum=1
        )
        self.stop_grace_seconds: float = _float_env("SUBTERM_STOP_GRACE_SECONDS", 5.0)

        # Runtime
        self.sandbox_network: str = os.getenv("SUBTERM_SANDBOX_NETWORK", "subterm-net")
        self.sandbox_image: str = os.getenv("SUBTERM_SANDBOX_IMAGE", "subterm-server")
        self.container_runtime: str = os.getenv("SUBTERM_CONTAINER_RUNTIME", "auto").lower()

        # Audit logging
        self.audit_log_path: Optional[str] = os.getenv("SUBTERM_AUDIT_LOG_PATH")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()
