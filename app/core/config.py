# app/core/config.py
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

ENVIRONMENT_ALIASES = {
    "development": "development",
    "dev": "development",
    "testnet": "testnet",
    "test": "testnet",
    "production": "production",
    "prod": "production",
}


class Settings(BaseSettings):
    PROJECT_NAME: str = "Gas Prediction Gateway"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Ethereum mainnet (data source), primary then fallback
    ETH_RPC_URL: str = "https://eth.llamarpc.com"
    ETH_RPC_FALLBACK: Optional[str] = None
    DATA_SOURCE_NAME: str = "ethereum-mainnet"

    # Base Sepolia (settlement network)
    BASE_RPC_URL: str = "https://sepolia.base.org"

    # x402 payment settings
    X402_ENABLED: bool = True
    X402_NETWORK: str = "base-sepolia"
    X402_USDC_ADDRESS: Optional[str] = None  # Derived from X402_NETWORK when unset
    X402_PAY_TO_ADDRESS: str = ""
    X402_PRICE_USD: str = "0.01"
    X402_FACILITATOR_URL: Optional[str] = None
    X402_AUDIT_ENABLED: bool = True
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"
    PAYMENT_RECORD_RETENTION_SECONDS: int = 7 * 24 * 3600

    # Shared store; memory only when unset
    REDIS_URL: Optional[str] = None
    CACHE_MAX_ENTRIES: int = 1000

    # Token bucket per client IP
    RATE_LIMIT_PER_SECOND: float = 10.0
    RATE_LIMIT_BURST: int = 30

    # Gas prediction
    GAS_PREDICTION_CACHE_TTL_SECONDS: float = 12.0  # one block
    GAS_HISTORY_BLOCKS: int = 20
    GAS_WEIGHT_DECAY: float = 0.95
    GAS_PRIORITY_FEE_GWEI: float = 2.0
    GAS_MAX_FEE_MULTIPLIER: float = 1.2

    # Upstream RPC policy
    RPC_TIMEOUT_SECONDS: float = 3.0
    RPC_MAX_RETRIES: int = 3
    RPC_BACKOFF_SECONDS: float = 0.25

    @field_validator("ENVIRONMENT")
    @classmethod
    def normalize_environment(cls, value: str) -> str:
        normalized = ENVIRONMENT_ALIASES.get(value.strip().lower())
        if normalized is None:
            raise ValueError(f"Unknown environment: {value}")
        return normalized

    @field_validator("ETH_RPC_URL", "BASE_RPC_URL")
    @classmethod
    def require_http_url(cls, value: str) -> str:
        if not value.startswith("http"):
            raise ValueError("RPC URL must be an HTTP(S) URL")
        return value

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",  # Ignore extra fields from .env
    )

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
