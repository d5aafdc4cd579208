"""
Configuration module for the Volume Unregister Operator.

Loads configuration from environment variables.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKER_THREADS = 40


def _optional_float(name: str) -> Optional[float]:
    value = os.getenv(name, "")
    return float(value) if value else None


def get_max_worker_threads() -> int:
    """
    Read the worker count for the unregister controller.

    WORKER_THREADS_UNREGISTER_VOLUME overrides the default of 40. Values
    that are not positive integers are ignored with a warning.
    """
    value = os.getenv("WORKER_THREADS_UNREGISTER_VOLUME")
    if not value:
        return DEFAULT_MAX_WORKER_THREADS
    try:
        threads = int(value)
    except ValueError:
        logger.warning(
            f"WORKER_THREADS_UNREGISTER_VOLUME={value!r} is not an integer, "
            f"using default of {DEFAULT_MAX_WORKER_THREADS}"
        )
        return DEFAULT_MAX_WORKER_THREADS
    if threads <= 0:
        logger.warning(
            f"WORKER_THREADS_UNREGISTER_VOLUME={threads} must be positive, "
            f"using default of {DEFAULT_MAX_WORKER_THREADS}"
        )
        return DEFAULT_MAX_WORKER_THREADS
    return threads


@dataclass
class KubernetesConfig:
    """Connection settings for the cluster API server."""

    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    # Overrides the server from the kubeconfig or the in-cluster environment
    api_server: Optional[str] = None
    insecure: bool = False
    request_timeout: float = 30.0

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubeconfig=os.getenv("KUBECONFIG") or None,
            context=os.getenv("KUBE_CONTEXT") or None,
            api_server=os.getenv("KUBE_API_SERVER") or None,
            insecure=os.getenv("KUBE_INSECURE", "false").lower() == "true",
            request_timeout=float(os.getenv("KUBE_REQUEST_TIMEOUT", "30")),
        )


@dataclass
class ControllerConfig:
    """Controller reconciliation loop configuration."""

    max_concurrent_reconciles: int = DEFAULT_MAX_WORKER_THREADS
    resync_interval: int = 300  # seconds

    # Exponential backoff configuration
    backoff_base_delay: float = 1.0  # seconds
    backoff_max_delay: Optional[float] = None  # None = uncapped

    # Immediate retries of a conflicting volume update
    conflict_retry_steps: int = 5

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=get_max_worker_threads(),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "300")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=_optional_float("BACKOFF_MAX_DELAY"),
            conflict_retry_steps=int(os.getenv("CONFLICT_RETRY_STEPS", "5")),
        )


@dataclass
class WebhookConfig:
    """Admission webhook server configuration."""

    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 9443
    cert_file: Optional[str] = field(default=None, repr=False)
    key_file: Optional[str] = field(default=None, repr=False)

    @property
    def tls_enabled(self) -> bool:
        return bool(self.cert_file and self.key_file)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            enabled=os.getenv("WEBHOOK_ENABLED", "false").lower() == "true",
            host=os.getenv("WEBHOOK_HOST", "0.0.0.0"),
            port=int(os.getenv("WEBHOOK_PORT", "9443")),
            cert_file=os.getenv("WEBHOOK_CERT_FILE") or None,
            key_file=os.getenv("WEBHOOK_KEY_FILE") or None,
        )


@dataclass
class Config:
    """Main configuration object."""

    kubernetes: KubernetesConfig
    controller: ControllerConfig
    webhook: WebhookConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kubernetes=KubernetesConfig.from_env(),
            controller=ControllerConfig.from_env(),
            webhook=WebhookConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kubernetes=KubernetesConfig(),
            controller=ControllerConfig(),
            webhook=WebhookConfig(),
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
