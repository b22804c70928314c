"""
Configuration module for the APIManager operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class KubernetesConfig:
    """Cluster connection configuration."""

    in_cluster: bool = False
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    # Empty string watches every namespace
    watch_namespace: str = ""

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        watch_namespace = os.getenv("WATCH_NAMESPACE")
        if watch_namespace is None:
            raise ValueError(
                "WATCH_NAMESPACE environment variable must be set. "
                "Use an empty value to watch all namespaces."
            )

        return cls(
            in_cluster=os.getenv("IN_CLUSTER", "false").lower() == "true",
            kubeconfig=os.getenv("KUBECONFIG") or None,
            context=os.getenv("KUBE_CONTEXT") or None,
            watch_namespace=watch_namespace,
        )


@dataclass
class ControllerConfig:
    """Controller work queue and worker configuration."""

    reconcile_interval: int = 300  # full resync period, seconds
    max_concurrent_reconciles: int = 5
    reconcile_timeout: float = 120.0  # seconds per reconcile call
    conflict_requeue_delay: float = 1.0  # seconds

    # Exponential backoff configuration
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds (5 minutes)
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "300")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "120")),
            conflict_requeue_delay=float(os.getenv("CONFLICT_REQUEUE_DELAY", "1")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class APIConfig:
    """Health and event API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8080")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    kubernetes: KubernetesConfig
    controller: ControllerConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kubernetes=KubernetesConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kubernetes=KubernetesConfig(),
            controller=ControllerConfig(),
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
