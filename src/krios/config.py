"""Centralized configuration management for the Krios client.

Reads from environment variables with sensible defaults.
The client facade, the transport and the stores all read their tunables
from this module.

Environment variables follow the pattern KRIOS_*.

Example:
    >>> from krios.config import get_config
    >>> config = get_config()
    >>> print(config.api_url)
    http://localhost:5000
"""

import logging
import os
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


def _getenv_int(key: str, default: int) -> int:
    """Get integer from environment with fallback to default."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        log.warning(f"Invalid integer value for {key}={value}, using default {default}")
        return default


def _getenv_float(key: str, default: float) -> float:
    """Get float from environment with fallback to default."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        log.warning(f"Invalid float value for {key}={value}, using default {default}")
        return default


@dataclass
class KriosConfig:
    """Krios client configuration loaded from environment variables.

    Attributes
    ----------
    api_url : str
        Base URL of the Krios server. REST calls go to ``{api_url}/api``,
        the Socket.IO channel connects to ``api_url`` itself.
    request_timeout : float
        Timeout for REST calls in seconds.
    unread_min_interval : float
        Minimum seconds between two non-forced unread-count fetches.
    foreground_min_interval : float
        Minimum seconds between two foreground refreshes.
    reconnection_attempts : int
        Maximum automatic reconnection attempts after a transport error.
        0 means retry forever.
    reconnection_delay : float
        Initial reconnection backoff in seconds.
    reconnection_delay_max : float
        Upper bound of the reconnection backoff in seconds.
    socket_timeout : float
        Timeout for establishing the Socket.IO connection.
    cache_ttl : float
        Lifetime of cached GET responses in seconds.
    chat_page_size : int
        Number of messages fetched per chat history page.
    max_workers : int
        Size of the thread pool running background REST calls.
    log_level : str
        Logging level applied to the ``krios`` logger.
    """

    api_url: str = field(
        default_factory=lambda: os.getenv("KRIOS_API_URL", "http://localhost:5000")
    )
    request_timeout: float = field(
        default_factory=lambda: _getenv_float("KRIOS_REQUEST_TIMEOUT", 30.0)
    )

    # Throttling
    unread_min_interval: float = field(
        default_factory=lambda: _getenv_float("KRIOS_UNREAD_MIN_INTERVAL", 30.0)
    )
    foreground_min_interval: float = field(
        default_factory=lambda: _getenv_float("KRIOS_FOREGROUND_MIN_INTERVAL", 30.0)
    )

    # Push channel
    reconnection_attempts: int = field(
        default_factory=lambda: _getenv_int("KRIOS_RECONNECTION_ATTEMPTS", 15)
    )
    reconnection_delay: float = field(
        default_factory=lambda: _getenv_float("KRIOS_RECONNECTION_DELAY", 1.0)
    )
    reconnection_delay_max: float = field(
        default_factory=lambda: _getenv_float("KRIOS_RECONNECTION_DELAY_MAX", 10.0)
    )
    socket_timeout: float = field(
        default_factory=lambda: _getenv_float("KRIOS_SOCKET_TIMEOUT", 30.0)
    )

    # REST cache & paging
    cache_ttl: float = field(
        default_factory=lambda: _getenv_float("KRIOS_CACHE_TTL", 30.0)
    )
    chat_page_size: int = field(
        default_factory=lambda: _getenv_int("KRIOS_CHAT_PAGE_SIZE", 50)
    )

    max_workers: int = field(
        default_factory=lambda: _getenv_int("KRIOS_MAX_WORKERS", 4)
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.getenv("KRIOS_LOG_LEVEL", "WARNING")
    )

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate()
        self._log_config()

    def _validate(self):
        """Validate configuration values.

        Raises
        ------
        ValueError
            If configuration is invalid.
        """
        self.api_url = self.api_url.rstrip("/")
        if not self.api_url.startswith(("http://", "https://")):
            raise ValueError(
                f"Invalid API URL: {self.api_url!r}. Must start with http:// or https://"
            )

        if self.reconnection_delay <= 0 or self.reconnection_delay_max <= 0:
            raise ValueError("Reconnection delays must be positive")
        if self.reconnection_delay > self.reconnection_delay_max:
            raise ValueError(
                f"reconnection_delay ({self.reconnection_delay}) must not exceed "
                f"reconnection_delay_max ({self.reconnection_delay_max})"
            )
        if self.reconnection_attempts < 0:
            raise ValueError("reconnection_attempts must be >= 0 (0 retries forever)")

        if self.chat_page_size < 1:
            raise ValueError(
                f"Invalid chat page size: {self.chat_page_size}. Must be at least 1"
            )
        if self.max_workers < 1:
            raise ValueError(f"Invalid max_workers: {self.max_workers}. Must be at least 1")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_levels:
            log.warning(
                f"Invalid log level '{self.log_level}', using WARNING. "
                f"Valid levels: {', '.join(valid_levels)}"
            )
            self.log_level = "WARNING"

    def _log_config(self):
        """Log configuration for debugging."""
        log.debug("Krios client configuration:")
        log.debug(f"  API URL: {self.api_url}")
        log.debug(f"  Request timeout: {self.request_timeout}s")
        log.debug(f"  Unread min interval: {self.unread_min_interval}s")
        log.debug(
            f"  Reconnection: {self.reconnection_attempts} attempts, "
            f"{self.reconnection_delay}s..{self.reconnection_delay_max}s"
        )
        log.debug(f"  Cache TTL: {self.cache_ttl}s")


_config: KriosConfig | None = None


def get_config() -> KriosConfig:
    """Get or create the global configuration instance.

    Returns
    -------
    KriosConfig
        Global configuration instance loaded from environment variables.
    """
    global _config
    if _config is None:
        _config = KriosConfig()
    return _config


def reload_config() -> KriosConfig:
    """Reload configuration from environment.

    Useful for testing or when environment variables change at runtime.

    Returns
    -------
    KriosConfig
        Newly created configuration instance.
    """
    global _config
    _config = KriosConfig()
    return _config
