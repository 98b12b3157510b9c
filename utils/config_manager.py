"""
Centralized Configuration Manager for the OAuth 2.0 authorization endpoint

Consolidates environment variable handling for the storage layer, the HTTP
server and the pluggable collaborators (authenticator, token issuer), with
validation and type-safe access.
"""

import importlib
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class StorageConfig:
    """Configuration for the encrypted authorization storage."""

    db_path: str
    encryption_key: Optional[str]
    pending_request_ttl: int
    cleanup_interval: int


@dataclass
class ServerConfig:
    """Configuration for the HTTP server."""

    host: str
    port: int
    authorize_path: str
    log_level: str
    log_format: str


@dataclass
class IntegrationConfig:
    """Dotted ``module:attribute`` paths of the external collaborators."""

    authenticator: Optional[str]
    token_issuer: Optional[str]


def load_object(path: str) -> Any:
    """Resolve a ``module:attribute`` reference."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)


class ConfigManager:
    """
    Centralized configuration manager for the authorization endpoint.

    This class provides a single point of access for all configuration
    settings, with proper validation and type safety.
    """

    def __init__(self):
        self._storage_config: Optional[StorageConfig] = None
        self._server_config: Optional[ServerConfig] = None
        self._integration_config: Optional[IntegrationConfig] = None
        self._load_configuration()

    def _load_configuration(self):
        """Load all configuration from environment variables and defaults."""
        try:
            self._storage_config = self._load_storage_config()
            self._server_config = self._load_server_config()
            self._integration_config = self._load_integration_config()
            logger.info("Configuration loaded successfully")
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise

    def _load_storage_config(self) -> StorageConfig:
        """Load storage-related configuration."""
        return StorageConfig(
            db_path=os.getenv("OAUTH2_DB_PATH", "oauth2_authorization.db"),
            encryption_key=os.getenv("OAUTH2_ENCRYPTION_KEY"),
            pending_request_ttl=int(os.getenv("OAUTH2_PENDING_REQUEST_TTL", "600")),
            cleanup_interval=int(os.getenv("OAUTH2_CLEANUP_INTERVAL", "3600")),
        )

    def _load_server_config(self) -> ServerConfig:
        """Load server-related configuration."""
        return ServerConfig(
            host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "8080")),
            authorize_path=os.getenv("OAUTH2_AUTHORIZE_PATH", "/oauth2/authorize"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text").lower(),
        )

    def _load_integration_config(self) -> IntegrationConfig:
        """Load collaborator references."""
        return IntegrationConfig(
            authenticator=os.getenv("OAUTH2_AUTHENTICATOR"),
            token_issuer=os.getenv("OAUTH2_TOKEN_ISSUER"),
        )

    @property
    def storage(self) -> StorageConfig:
        """Get storage configuration."""
        if self._storage_config is None:
            raise RuntimeError("Configuration not loaded")
        return self._storage_config

    @property
    def server(self) -> ServerConfig:
        """Get server configuration."""
        if self._server_config is None:
            raise RuntimeError("Configuration not loaded")
        return self._server_config

    @property
    def integration(self) -> IntegrationConfig:
        """Get integration configuration."""
        if self._integration_config is None:
            raise RuntimeError("Configuration not loaded")
        return self._integration_config

    def validate_configuration(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not self.integration.authenticator:
            issues.append("OAUTH2_AUTHENTICATOR is not configured")
        if not self.integration.token_issuer:
            issues.append("OAUTH2_TOKEN_ISSUER is not configured")

        if not self.storage.encryption_key:
            issues.append("OAUTH2_ENCRYPTION_KEY is not set; pending requests will not survive a restart")

        if self.storage.pending_request_ttl <= 0:
            issues.append("Pending request TTL must be positive")

        if not self.server.authorize_path.startswith("/"):
            issues.append(f"Authorize path ({self.server.authorize_path}) must start with '/'")

        if self.server.log_format not in ("text", "json"):
            issues.append(f"Log format ({self.server.log_format}) must be 'text' or 'json'")

        return issues

    def reload(self):
        """Reload configuration from environment variables."""
        self._load_configuration()


# Global configuration instance
_config_manager: Optional[ConfigManager] = None


def get_config() -> ConfigManager:
    """Get the global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def reload_config():
    """Reload the global configuration."""
    global _config_manager
    if _config_manager is not None:
        _config_manager.reload()
    else:
        _config_manager = ConfigManager()
