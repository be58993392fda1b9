"""
Configuration management for the clusterlink agent.

Handles loading and merging configuration from:
- Default configuration file
- Environment-specific configuration files
- Environment variables
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class Config:
    """Configuration manager for the clusterlink agent."""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_file: Path to configuration file. If None, uses default.
        """
        self._config: Dict[str, Any] = {}
        self._load_default_config()

        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _load_default_config(self) -> None:
        """Load default configuration."""
        default_config_path = Path(__file__).parent.parent.parent / "config" / "default.yaml"
        if default_config_path.exists():
            self._load_config_file(str(default_config_path))

    def _load_config_file(self, config_file: str) -> None:
        """
        Load configuration from YAML file.

        Args:
            config_file: Path to YAML configuration file
        """
        with open(config_file, "r") as f:
            file_config = yaml.safe_load(f) or {}
            self._merge_config(file_config)

    def _merge_config(self, new_config: Dict[str, Any]) -> None:
        """
        Deep merge new configuration into existing configuration.

        Args:
            new_config: Configuration dictionary to merge
        """
        self._config = self._deep_merge(self._config, new_config)

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep merge two dictionaries.

        Args:
            base: Base dictionary
            override: Override dictionary

        Returns:
            Merged dictionary
        """
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides."""
        if cluster_id := os.getenv("CLUSTER_ID"):
            self.set("agent.cluster_id", cluster_id)

        if resync := os.getenv("RESYNC_PERIOD_SECONDS"):
            self.set("agent.resync_period_seconds", float(resync))

        if workers := os.getenv("WORKERS"):
            self.set("agent.workers", int(workers))

        if max_retries := os.getenv("MAX_RETRIES"):
            self.set("retry.max_retries", int(max_retries))

        if log_level := os.getenv("LOG_LEVEL"):
            self.set("logging.level", log_level)

        if log_format := os.getenv("LOG_FORMAT"):
            self.set("logging.format", log_format)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in dot notation (e.g., "agent.workers")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config
        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in dot notation
            value: Value to set
        """
        keys = key.split(".")
        config = self._config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def to_dict(self) -> Dict[str, Any]:
        """
        Get entire configuration as dictionary.

        Returns:
            Configuration dictionary
        """
        return self._config.copy()


@dataclass
class AgentConfig:
    """
    Typed settings for one cluster agent.

    Attributes:
        cluster_id: Identifier of the cluster the agent runs in
        workers: Worker tasks per work queue
        resync_period_seconds: Interval between full relists (0 disables)
        max_retries: Requeues before a broker failure is surfaced in status
        retry_backoff_ms: Initial requeue backoff
        retry_backoff_max_ms: Maximum requeue backoff
        retry_jitter_ms: Random jitter added to each backoff
        conflict_retries: Re-read attempts on optimistic-update conflicts
    """
    cluster_id: str
    workers: int = 4
    resync_period_seconds: float = 300.0
    max_retries: int = 5
    retry_backoff_ms: int = 100
    retry_backoff_max_ms: int = 30000
    retry_jitter_ms: int = 20
    conflict_retries: int = 10

    @classmethod
    def from_config(cls, config: Config, cluster_id: Optional[str] = None) -> "AgentConfig":
        """
        Build agent settings from a Config.

        Args:
            config: Loaded configuration
            cluster_id: Overrides agent.cluster_id when given

        Returns:
            Agent settings

        Raises:
            ValueError: If no cluster ID is configured
        """
        cluster_id = cluster_id or config.get("agent.cluster_id")
        if not cluster_id:
            raise ValueError("agent.cluster_id must be configured")

        return cls(
            cluster_id=cluster_id,
            workers=int(config.get("agent.workers", cls.workers)),
            resync_period_seconds=float(
                config.get("agent.resync_period_seconds", cls.resync_period_seconds)
            ),
            max_retries=int(config.get("retry.max_retries", cls.max_retries)),
            retry_backoff_ms=int(config.get("retry.backoff_ms", cls.retry_backoff_ms)),
            retry_backoff_max_ms=int(
                config.get("retry.backoff_max_ms", cls.retry_backoff_max_ms)
            ),
            retry_jitter_ms=int(config.get("retry.jitter_ms", cls.retry_jitter_ms)),
            conflict_retries=int(
                config.get("aggregation.conflict_retries", cls.conflict_retries)
            ),
        )


# Global configuration instance
_config: Optional[Config] = None


def get_config(config_file: Optional[str] = None) -> Config:
    """
    Get global configuration instance.

    Args:
        config_file: Optional configuration file path

    Returns:
        Configuration instance
    """
    global _config
    if _config is None:
        _config = Config(config_file)
    return _config


def reset_config() -> None:
    """Reset global configuration (mainly for testing)."""
    global _config
    _config = None
