import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://rpc.sepolia.org"


class Settings(BaseSettings):
    # Service
    service_name: str = "certificate-registry"
    service_version: str = "1.0.0"
    server_port: int = 3001
    log_level: str = "INFO"

    # Ledger endpoints (comma-separated list wins over the single URL)
    blockchain_rpc_urls: str = ""
    blockchain_rpc_url: str = ""
    rpc_probe_timeout_ms: int = 5000
    rpc_request_timeout_seconds: float = 30.0

    # Ledger contract and signing identity
    private_key: str = ""
    contract_address: str = ""
    admin_address: str = ""
    gas_buffer: float = 1.5
    verify_contract_on_startup: bool = True

    # Pinning service
    pinata_api_key: str = ""
    pinata_secret_api_key: str = ""
    pinata_api_url: str = "https://api.pinata.cloud"
    ipfs_gateway_url: str = "https://gateway.pinata.cloud"
    store_timeout_seconds: float = 60.0

    # Local storage
    data_dir: str = "data"
    upload_dir: str = "uploads"
    registry_database_url: str = ""
    max_upload_bytes: int = 16 * 1024 * 1024

    # Issuance pipeline
    confirmation_timeout_seconds: float = 180.0
    confirmation_poll_seconds: float = 2.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.0

    # Reconciliation scheduler
    reconcile_enabled: bool = True
    reconcile_interval_minutes: int = 30

    @field_validator(
        "server_port", "rpc_probe_timeout_ms", "retry_attempts",
        "reconcile_interval_minutes", "max_upload_bytes", mode="before",
    )
    @classmethod
    def empty_str_to_default(cls, v: Any, info: Any) -> Any:
        if isinstance(v, str) and v.strip() == "":
            defaults = {
                "server_port": 3001,
                "rpc_probe_timeout_ms": 5000,
                "retry_attempts": 3,
                "reconcile_interval_minutes": 30,
                "max_upload_bytes": 16 * 1024 * 1024,
            }
            return defaults.get(info.field_name, 0)
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def rpc_candidates(self) -> list[str]:
        """Candidate ledger endpoints in configured order.

        Empty entries are dropped; duplicates and malformed URLs are kept so
        each one gets probed on its own.
        """
        raw = self.blockchain_rpc_urls or self.blockchain_rpc_url or ""
        urls = [u.strip() for u in raw.split(",") if u.strip()]
        if not urls:
            logger.info("No RPC configured, using default endpoint %s", DEFAULT_RPC_URL)
            urls.append(DEFAULT_RPC_URL)
        return urls

    @property
    def database_url(self) -> str:
        if self.registry_database_url:
            return self.registry_database_url
        return f"sqlite+aiosqlite:///{Path(self.data_dir) / 'registry.db'}"

    @property
    def upload_path(self) -> Path:
        return Path(self.upload_dir)


@lru_cache
def get_settings() -> Settings:
    return Settings()
