"""
Configuration management.

Uses Pydantic Settings for environment variable handling and validation,
optionally seeded from a config.yaml file.
"""

import json
import os
import yaml
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEPLOYMENT_ROOT_ENV = "AUDITPROXY_DEPLOYMENT_ROOT"


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        # Look for config.yaml in common locations
        possible_paths = [
            "config.yaml",  # Current directory
            "../../config.yaml",  # Project root from src/auditproxy
        ]

        for path in possible_paths:
            if os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
            return config_data
    return {}


def default_log_dir() -> Path:
    """Log directory under the deployment root when one is configured."""
    deployment_root = os.environ.get(DEPLOYMENT_ROOT_ENV)
    if deployment_root:
        return Path(deployment_root) / "logs"
    return Path("logs")


class AuditSettings(BaseSettings):
    """Audit log persistence configuration."""

    log_dir: Path = Field(default_factory=default_log_dir, description="Directory holding audit logs and key")
    api_log_file: str = Field(default="api-requests.log", description="Masked plaintext audit log")
    encrypted_log_file: str = Field(default="api-requests-encrypted.log", description="Encrypted audit log")
    error_log_file: str = Field(default="error.log", description="Error record log")
    key_file: str = Field(default="security.key", description="Symmetric key file")
    cipher: str = Field(default="aes-gcm", description="Cipher for new encrypted records (aes-gcm, aes-ecb)")

    @field_validator("cipher")
    def validate_cipher(cls, v: str) -> str:
        """Only known ciphers may be selected."""
        v = v.lower()
        if v not in ("aes-gcm", "aes-ecb"):
            raise ValueError(f"Unknown cipher '{v}'")
        return v

    model_config = SettingsConfigDict(env_prefix="AUDITPROXY_AUDIT_")


class ProxySettings(BaseSettings):
    """Outbound forwarding configuration."""

    connect_timeout_seconds: float = Field(default=30.0, description="Connect timeout")
    read_timeout_seconds: float = Field(default=30.0, description="Socket read timeout")
    max_redirects: int = Field(default=5, description="Maximum redirects followed per call")
    pool_limit: int = Field(default=100, description="Global pooled connection cap")
    pool_limit_per_host: int = Field(default=20, description="Per-destination pooled connection cap")
    trust_all_certificates: bool = Field(
        default=False,
        description="Skip certificate and hostname verification (interoperability testing only)",
    )
    tls_versions: List[str] = Field(
        default=["TLSv1.2"],
        description="Protocol allow-list used when trusting all certificates",
    )
    user_agent: str = Field(default="AuditProxy/1.0", description="Default outbound User-Agent")

    model_config = SettingsConfigDict(env_prefix="AUDITPROXY_PROXY_")


class SessionSettings(BaseSettings):
    """Session tracking configuration."""

    timeout_minutes: int = Field(default=30, description="Idle timeout")
    sweep_interval_minutes: int = Field(default=5, description="Expired session sweep interval")
    id_length: int = Field(default=16, description="Session identifier length")

    model_config = SettingsConfigDict(env_prefix="AUDITPROXY_SESSION_")


class SecuritySettings(BaseSettings):
    """Decrypted log access configuration."""

    decryption_token: str = Field(default="DECRYPT_API_LOGS_2025", description="Bearer token for decrypted logs")
    admin_key_hash: str = Field(
        default="sha256:8c6976e5b5410415bde908bd4dee15dfb167a9c873fc4bb8a81f6f2ab448a918",
        description="sha256:<hex> of the admin key",
    )
    local_dev_token: str = Field(default="dev_access_2025", description="local_auth value accepted from loopback")
    decrypt_rate_limit: int = Field(default=10, description="Decrypted log requests per source per window")
    rate_window_seconds: int = Field(default=3600, description="Rate limit window")
    rate_table_max_entries: int = Field(default=1000, description="Rate table size that triggers a reset")

    model_config = SettingsConfigDict(env_prefix="AUDITPROXY_SECURITY_")


class Settings(BaseSettings):
    """Main application settings."""

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")

    # Component settings
    audit: AuditSettings = Field(default_factory=AuditSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    model_config = SettingsConfigDict(env_prefix="AUDITPROXY_", case_sensitive=False)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""

    # Load config file data
    config_data = load_config_file()

    # Config file provides defaults, env vars override
    if config_data:
        _set_env_from_config(config_data)

    settings = Settings()
    return settings


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    mappings = {
        ("server", "host"): "AUDITPROXY_HOST",
        ("server", "port"): "AUDITPROXY_PORT",
        ("server", "debug"): "AUDITPROXY_DEBUG",
        ("server", "log_level"): "AUDITPROXY_LOG_LEVEL",
        ("audit", "log_dir"): "AUDITPROXY_AUDIT_LOG_DIR",
        ("audit", "cipher"): "AUDITPROXY_AUDIT_CIPHER",
        ("proxy", "connect_timeout_seconds"): "AUDITPROXY_PROXY_CONNECT_TIMEOUT_SECONDS",
        ("proxy", "read_timeout_seconds"): "AUDITPROXY_PROXY_READ_TIMEOUT_SECONDS",
        ("proxy", "max_redirects"): "AUDITPROXY_PROXY_MAX_REDIRECTS",
        ("proxy", "pool_limit"): "AUDITPROXY_PROXY_POOL_LIMIT",
        ("proxy", "pool_limit_per_host"): "AUDITPROXY_PROXY_POOL_LIMIT_PER_HOST",
        ("proxy", "trust_all_certificates"): "AUDITPROXY_PROXY_TRUST_ALL_CERTIFICATES",
        ("session", "timeout_minutes"): "AUDITPROXY_SESSION_TIMEOUT_MINUTES",
        ("session", "sweep_interval_minutes"): "AUDITPROXY_SESSION_SWEEP_INTERVAL_MINUTES",
        ("security", "decryption_token"): "AUDITPROXY_SECURITY_DECRYPTION_TOKEN",
        ("security", "admin_key_hash"): "AUDITPROXY_SECURITY_ADMIN_KEY_HASH",
        ("security", "local_dev_token"): "AUDITPROXY_SECURITY_LOCAL_DEV_TOKEN",
        ("security", "decrypt_rate_limit"): "AUDITPROXY_SECURITY_DECRYPT_RATE_LIMIT",
    }

    for (section, key), env_var in mappings.items():
        if env_var not in os.environ:
            value = config_data.get(section, {}).get(key)
            if value is not None:
                os.environ[env_var] = str(value)

    # Lists are passed to pydantic-settings as JSON
    if "AUDITPROXY_PROXY_TLS_VERSIONS" not in os.environ:
        tls_versions = config_data.get("proxy", {}).get("tls_versions")
        if tls_versions:
            os.environ["AUDITPROXY_PROXY_TLS_VERSIONS"] = json.dumps(tls_versions)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
