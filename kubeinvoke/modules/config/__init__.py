"""
Config Module - Black Box Interface

Purpose: Application configuration management
Interface: get_config(), ConfigModule.get(), ConfigModule.get_config_schema()
Hidden: Config sources, validation logic, environment parsing

Can be replaced with different config systems (ConfigMaps mounted as files, Consul, etcd).
"""

import os
from typing import Any, Dict, Optional


# Configuration Contract: Required and Optional Keys
# This defines the black box interface - what the config module guarantees to provide

REQUIRED_CONFIG_KEYS = {
    "host": "API server bind address",
    "port": "API server port",
    "log_level": "Logging level (DEBUG, INFO, WARNING, ERROR)",
    "default_namespace": "Namespace used when an invocation does not name one",
    "sync_wait_timeout": "Seconds a synchronous invocation waits for its Job",
    "task_cache_ttl": "Seconds a cached Task definition stays valid without a watch",
    "job_name_hash_length": "Hex digits of the request digest used in job names",
    "job_backoff_limit": "Pod retries the Job controller may perform",
    "watch_enabled": "Run background watches for Tasks and Jobs",
}

OPTIONAL_CONFIG_KEYS = {
    "debug": {
        "description": "Enable debug mode",
        "default": False,
    },
    "job_name_prefix": {
        "description": "Prefix prepended to every generated job name",
        "default": "",
    },
    "job_ttl_seconds_after_finished": {
        "description": "ttlSecondsAfterFinished for created Jobs (None defers to cluster policy)",
        "default": 3600,
    },
    "kube_api_url": {
        "description": "Kubernetes API URL (e.g. kubectl proxy); in-cluster discovery when unset",
        "default": None,
    },
    "kube_token_path": {
        "description": "Service account token file",
        "default": "/var/run/secrets/kubernetes.io/serviceaccount/token",
    },
    "kube_ca_path": {
        "description": "Cluster CA bundle",
        "default": "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt",
    },
    "kube_verify_ssl": {
        "description": "Verify the API server certificate",
        "default": True,
    },
    "watch_namespace": {
        "description": "Restrict watches to one namespace (all namespaces when unset)",
        "default": None,
    },
}


def _parse_optional_int(value: Optional[str], default: Optional[int]) -> Optional[int]:
    """Parse an integer that may be disabled with 'none'."""
    if value is None:
        return default
    if value.strip().lower() in ("", "none", "null"):
        return None
    return int(value)


class ConfigModule:
    """Configuration management module."""

    def __init__(self):
        """Initialize with environment variables."""
        self._config = self._load_from_env()
        self._validate_required_keys()

    def _validate_required_keys(self) -> None:
        """
        Validate that all required configuration keys are present.

        Raises:
            ValueError: If required keys are missing or out of range
        """
        missing_keys = []
        for key in REQUIRED_CONFIG_KEYS:
            if key not in self._config or self._config[key] is None:
                missing_keys.append(key)

        if missing_keys:
            raise ValueError(
                f"Missing required configuration keys: {', '.join(missing_keys)}. "
                f"Check environment variables and deployment configuration."
            )

        if self._config["sync_wait_timeout"] <= 0:
            raise ValueError("SYNC_WAIT_TIMEOUT must be positive")
        if not 6 <= self._config["job_name_hash_length"] <= 40:
            raise ValueError("JOB_NAME_HASH_LENGTH must be between 6 and 40")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment."""
        return {
            # API settings
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("HTTP_PORT", os.getenv("API_PORT", "8080"))),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "debug": os.getenv("DEBUG", "false").lower() == "true",
            # Dispatch settings
            "default_namespace": os.getenv("NAMESPACE", "default"),
            "sync_wait_timeout": float(os.getenv("SYNC_WAIT_TIMEOUT", "60")),
            "task_cache_ttl": float(os.getenv("TASK_CACHE_TTL", "30")),
            # Job naming and retention
            "job_name_prefix": os.getenv("JOB_NAME_PREFIX", ""),
            "job_name_hash_length": int(os.getenv("JOB_NAME_HASH_LENGTH", "10")),
            "job_backoff_limit": int(os.getenv("JOB_BACKOFF_LIMIT", "0")),
            "job_ttl_seconds_after_finished": _parse_optional_int(
                os.getenv("JOB_TTL_SECONDS_AFTER_FINISHED"), 3600
            ),
            # Cluster access
            "kube_api_url": os.getenv("KUBE_API_URL"),
            "kube_token_path": os.getenv(
                "KUBE_TOKEN_PATH", OPTIONAL_CONFIG_KEYS["kube_token_path"]["default"]
            ),
            "kube_ca_path": os.getenv(
                "KUBE_CA_PATH", OPTIONAL_CONFIG_KEYS["kube_ca_path"]["default"]
            ),
            "kube_verify_ssl": os.getenv("KUBE_VERIFY_SSL", "true").lower() == "true",
            # Watches
            "watch_enabled": os.getenv("WATCH_ENABLED", "true").lower() == "true",
            "watch_namespace": os.getenv("WATCH_NAMESPACE") or None,
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration values."""
        return self._config.copy()

    @staticmethod
    def get_config_schema() -> Dict[str, Any]:
        """
        Get the configuration schema (contract) for this module.

        Returns:
            Dictionary with 'required' and 'optional' key specifications

        Example:
            >>> schema = ConfigModule.get_config_schema()
            >>> print(schema['required']['default_namespace'])
            'Namespace used when an invocation does not name one'
        """
        return {
            "required": REQUIRED_CONFIG_KEYS.copy(),
            "optional": OPTIONAL_CONFIG_KEYS.copy(),
        }


# Singleton instance
_instance = None


def get_config() -> ConfigModule:
    """Get the configuration module singleton."""
    global _instance
    if _instance is None:
        _instance = ConfigModule()
    return _instance


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment."""
    global _instance
    _instance = None


__all__ = ["get_config", "reset_config", "ConfigModule"]
