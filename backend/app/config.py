from typing import Dict, List, Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    DATABASE_URL: str = "sqlite+aiosqlite:///./siwe_auth.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000"

    # Nonce store
    NONCE_BACKEND: Literal["redis", "database"] = "redis"
    NONCE_TTL_SECONDS: int = 300
    NONCE_RETENTION_SECONDS: int = 300
    NONCE_SWEEP_INTERVAL_SECONDS: int = 60

    # Challenge message (EIP-4361)
    SIWE_DOMAIN: str = "localhost:3000"
    SIWE_URI: str = "http://localhost:3000"
    SIWE_STATEMENT: str = "Sign in with Ethereum."
    SIWE_ALLOWED_DOMAINS: List[str] = []

    # Chain RPC for ERC-1271 / ERC-6492 verification
    DEFAULT_CHAIN_ID: int = 8453
    CHAIN_RPC_URLS: Dict[int, str] = {
        8453: "https://mainnet.base.org",
        84532: "https://sepolia.base.org",
    }
    VERIFY_TIMEOUT_SECONDS: float = 10.0
    RPC_REQUEST_TIMEOUT_SECONDS: float = 5.0
    VERIFY_RPC_RETRIES: int = 1

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v):
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()] or ["http://localhost:3000"]

settings = Settings()
