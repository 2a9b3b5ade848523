"""
Configuration module for driftsync.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional

ROOT_SCOPE = ":root"


def _int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class ReconcilerConfig:
    """Which scope this process reconciles and from where."""

    scope: str = ROOT_SCOPE
    sync_name: str = "root-sync"
    source_dir: str = "/repo/source"
    resync_interval: int = 60  # seconds
    root_precedence: bool = False
    remediator_workers: int = 4
    inventory_namespace: str = "config-management-system"

    @property
    def is_root(self) -> bool:
        return self.scope == ROOT_SCOPE

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        scope = os.getenv("SYNC_SCOPE", ROOT_SCOPE) or ROOT_SCOPE
        default_name = "root-sync" if scope == ROOT_SCOPE else "repo-sync"
        config = cls(
            scope=scope,
            sync_name=os.getenv("SYNC_NAME", default_name),
            source_dir=os.getenv("SOURCE_DIR", "/repo/source"),
            resync_interval=_int("RESYNC_INTERVAL", "60"),
            root_precedence=_bool("ROOT_PRECEDENCE", "false"),
            remediator_workers=_int("REMEDIATOR_WORKERS", "4"),
            inventory_namespace=os.getenv(
                "INVENTORY_NAMESPACE", "config-management-system"
            ),
        )
        if config.resync_interval <= 0:
            raise ValueError("RESYNC_INTERVAL must be positive")
        if config.remediator_workers < 1:
            raise ValueError("REMEDIATOR_WORKERS must be at least 1")
        if not config.sync_name:
            raise ValueError("SYNC_NAME must not be empty")
        return config


@dataclass
class KubeConfig:
    """Cluster API connection configuration."""

    kubeconfig: Optional[str] = None  # in-cluster service account when unset
    context: Optional[str] = None
    verify_ssl: bool = True
    request_timeout: int = 30  # seconds
    watch_timeout: int = 300  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubeconfig=os.getenv("KUBECONFIG") or None,
            context=os.getenv("KUBE_CONTEXT") or None,
            verify_ssl=_bool("KUBE_VERIFY_SSL", "true"),
            request_timeout=_int("KUBE_REQUEST_TIMEOUT", "30"),
            watch_timeout=_int("KUBE_WATCH_TIMEOUT", "300"),
        )


@dataclass
class BackoffConfig:
    """Retry backoff for cluster API calls."""

    base_delay: float = 0.5  # seconds
    max_delay: float = 30.0  # seconds
    jitter_factor: float = 0.1  # ±10% jitter
    max_attempts: int = 5

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        config = cls(
            base_delay=_float("BACKOFF_BASE_DELAY", "0.5"),
            max_delay=_float("BACKOFF_MAX_DELAY", "30"),
            jitter_factor=_float("BACKOFF_JITTER_FACTOR", "0.1"),
            max_attempts=_int("BACKOFF_MAX_ATTEMPTS", "5"),
        )
        if config.max_delay < config.base_delay:
            raise ValueError("BACKOFF_MAX_DELAY must not be less than BACKOFF_BASE_DELAY")
        if not 0 <= config.jitter_factor <= 1:
            raise ValueError("BACKOFF_JITTER_FACTOR must be between 0 and 1")
        if config.max_attempts < 1:
            raise ValueError("BACKOFF_MAX_ATTEMPTS must be at least 1")
        return config


@dataclass
class APIConfig:
    """Status API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=_int("API_PORT", "8000"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@dataclass
class Config:
    """Main configuration object."""

    reconciler: ReconcilerConfig
    kube: KubeConfig
    backoff: BackoffConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            reconciler=ReconcilerConfig.from_env(),
            kube=KubeConfig.from_env(),
            backoff=BackoffConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            reconciler=ReconcilerConfig(),
            kube=KubeConfig(),
            backoff=BackoffConfig(),
            api=APIConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
