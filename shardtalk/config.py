from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./shardtalk.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Ledger (smart contract) Configuration
    RPC_URL: str = "https://api-mezame.shardeum.org"
    CONTRACT_ADDRESS: str = "0x9b137bde888021ca8174ac2621a59b14afa4fee6"
    SYNC_BATCH_SIZE: int = 50

    # Messages API client Configuration
    API_BASE_URL: str = "http://localhost:8000"
    CLIENT_TIMEOUT: float = 10.0
    CIRCUIT_BREAKER_THRESHOLD: int = 3
    CIRCUIT_BREAKER_COOLDOWN: float = 60.0
    RETRY_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 1.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()
