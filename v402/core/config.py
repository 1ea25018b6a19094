# v402/core/config.py
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Literal, Optional
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "v402 Gateway"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Master switch for payment gating (middleware passes everything through when off)
    V402_ENABLED: bool = True

    # Solana ledger
    SOLANA_RPC_URL: str = "https://api.devnet.solana.com"
    SOLANA_NETWORK: Literal["mainnet-beta", "devnet", "testnet"] = "devnet"
    SOLANA_COMMITMENT: Literal["processed", "confirmed", "finalized"] = "confirmed"
    USDC_MINT: str = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"  # devnet USDC
    USDC_DECIMALS: int = 6

    # Self-hosted backend
    V402_DATABASE_URL: str = "sqlite:///./v402.db"
    V402_ENCRYPTION_KEY: Optional[str] = None  # 32-byte hex, protects merchant signing keys

    # Cloud backend (takes precedence when V402_API_KEY is set)
    V402_API_KEY: Optional[str] = None
    V402_CLOUD_URL: str = "https://api.v402pay.com"

    # Intents
    V402_INTENT_TTL_SECONDS: int = 900
    V402_INTENT_RATE_LIMIT: int = 60
    V402_INTENT_RATE_WINDOW_SECONDS: int = 60

    # Timeouts
    V402_RPC_TIMEOUT_SECONDS: float = 10.0
    V402_UPSTREAM_TIMEOUT_SECONDS: float = 30.0

    # Forwarding / tool lookup
    V402_UPSTREAM_URL: Optional[str] = None  # fallback upstream when the backend does not name one
    V402_PUBLIC_BASE_URL: Optional[str] = None  # public origin used to match tools in middleware mode
    V402_PROTECTED_PREFIXES: List[str] = ["/api/v1/proxy"]

    # Audit log
    V402_AUDIT_ENABLED: bool = True
    V402_AUDIT_LOG_PATH: str = "logs/v402_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @property
    def use_cloud(self) -> bool:
        return bool(self.V402_API_KEY)


def validate_backend_settings(config: Settings) -> None:
    """
    Fail fast when neither backend is fully configured.

    Raises:
        ValueError: If cloud credentials are absent and the self-hosted set is incomplete
    """
    if config.use_cloud:
        if not config.V402_CLOUD_URL:
            raise ValueError("V402_CLOUD_URL must be set when V402_API_KEY is configured")
        return

    missing = [
        name for name in ("SOLANA_RPC_URL", "USDC_MINT", "V402_ENCRYPTION_KEY", "V402_DATABASE_URL")
        if not getattr(config, name)
    ]
    if missing:
        raise ValueError(
            "Gateway requires either V402_API_KEY (cloud) or "
            f"{', '.join(missing)} (self-hosted)"
        )


@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
