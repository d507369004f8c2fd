"""Configuration for tunnelvault."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Secure store
    store_backend: str = "sqlite"  # "sqlite" or "vault"
    store_path: str = "~/.tunnelvault/keychain.db"
    encryption_key: Optional[str] = None  # base64, 32 bytes
    service_name: str = "tunnelvault"
    access_group: Optional[str] = None

    # Vault backend
    vault_url: str = "http://localhost:8200"
    vault_token: Optional[str] = None
    vault_namespace: Optional[str] = None
    vault_mount_point: str = "secret"
    vault_path_prefix: str = "tunnelvault"

    # Key exchange API
    api_url: str = "http://localhost:8080/rpc/"
    api_timeout_seconds: float = 30.0

    # Key rotation
    key_rotation_interval_days: int = 7
    rotation_check_interval_hours: int = 24

    # Optimistic update loop (None = retry until the write lands)
    update_max_attempts: Optional[int] = None
    update_base_delay: float = 0.05  # seconds

    class Config:
        env_prefix = "TUNNELVAULT_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
