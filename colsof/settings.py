import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./colsof.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Connection Pool
    pool_max_size: int = Field(default=20, alias="DB_POOL_MAX")
    pool_min_size: int = Field(default=5, alias="DB_POOL_MIN")
    pool_acquire_timeout: float = Field(default=10.0, alias="DB_POOL_ACQUIRE_TIMEOUT")
    pool_idle_timeout: float = Field(default=30.0, alias="DB_POOL_IDLE_TIMEOUT")

    # Query execution
    query_timeout: float = Field(default=30.0, alias="DB_QUERY_TIMEOUT")
    query_max_retries: int = Field(default=2, alias="DB_MAX_RETRIES")
    query_retry_delay: float = Field(default=0.1, alias="DB_RETRY_DELAY")

    # Response cache
    cache_max_size: int = Field(default=500, alias="CACHE_MAX_SIZE")
    cache_default_ttl: float = Field(default=300.0, alias="CACHE_DEFAULT_TTL")

    # API client
    api_base_url: str = Field(default="http://localhost:3000/api", alias="API_BASE_URL")
    api_timeout: float = Field(default=30.0, alias="API_TIMEOUT")
    api_max_retries: int = Field(default=2, alias="API_MAX_RETRIES")
    api_retry_delay: float = Field(default=0.5, alias="API_RETRY_DELAY")

    # Background maintenance
    maintenance_interval_seconds: int = Field(default=60, alias="MAINTENANCE_INTERVAL")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="DEBUG")

    # HTTP middleware
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")

    # Serverless deployments get a much smaller pool
    serverless: bool = Field(default=False, alias="VERCEL")

    def effective_pool_bounds(self) -> tuple[int, int]:
        """Return (min_size, max_size) for the connection pool."""
        if self.serverless:
            return 1, 3
        return self.pool_min_size, self.pool_max_size

    def allowed_origins(self) -> list[str]:
        """Comma-separated CORS_ORIGINS as a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def load_settings() -> Settings:
    """Build settings from the process environment (and .env)."""
    return Settings(**os.environ)
