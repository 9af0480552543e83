import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Sankhya Credentials
    sankhya_token: str = Field(default="", alias="SANKHYA_TOKEN")
    sankhya_appkey: str = Field(default="", alias="SANKHYA_APPKEY")
    sankhya_username: str = Field(default="", alias="SANKHYA_USERNAME")
    sankhya_password: str = Field(default="", alias="SANKHYA_PASSWORD")

    # Sankhya Endpoints
    sankhya_base_url: str = Field(
        default="https://api.sandbox.sankhya.com.br", alias="SANKHYA_BASE_URL"
    )
    login_timeout: float = Field(default=10.0, alias="SANKHYA_LOGIN_TIMEOUT")
    request_timeout: float = Field(default=15.0, alias="SANKHYA_REQUEST_TIMEOUT")
    price_timeout: float = Field(default=5.0, alias="SANKHYA_PRICE_TIMEOUT")

    # Retry Configuration
    request_max_retries: int = Field(default=2, alias="REQUEST_MAX_RETRIES")
    request_retry_delay: float = Field(default=1.0, alias="REQUEST_RETRY_DELAY")
    session_retry_delay: float = Field(default=0.5, alias="SESSION_RETRY_DELAY")
    login_max_retries: int = Field(default=3, alias="LOGIN_MAX_RETRIES")
    login_retry_delay: float = Field(default=1.0, alias="LOGIN_RETRY_DELAY")

    # Token Lifecycle
    token_lifetime_seconds: int = Field(default=20 * 60, alias="TOKEN_LIFETIME")
    token_cache_margin_seconds: int = Field(default=30, alias="TOKEN_CACHE_MARGIN")
    lock_ttl_seconds: float = Field(default=30.0, alias="TOKEN_LOCK_TTL")
    lock_poll_interval: float = Field(default=0.5, alias="TOKEN_LOCK_POLL_INTERVAL")
    lock_wait_timeout: float = Field(default=25.0, alias="TOKEN_LOCK_WAIT_TIMEOUT")

    # Cache Configuration
    redis_url: str = Field(default="", alias="REDIS_URL")
    cache_prefix: str = Field(default="gateway:", alias="CACHE_PREFIX")
    memory_cache_max_size: int = Field(default=1000, alias="MEMORY_CACHE_MAX_SIZE")

    # Database Configuration (API request log)
    database_url: str = Field(default="", alias="DATABASE_URL")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")
    api_log_max_entries: int = Field(default=500, alias="API_LOG_MAX_ENTRIES")
    api_log_retention_days: int = Field(default=7, alias="API_LOG_RETENTION_DAYS")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    debug: bool = Field(default=False, alias="DEBUG")

    @property
    def login_url(self) -> str:
        return f"{self.sankhya_base_url}/login"

    @property
    def load_records_url(self) -> str:
        return (
            f"{self.sankhya_base_url}/gateway/v1/mge/service.sbr"
            "?serviceName=CRUDServiceProvider.loadRecords&outputType=json"
        )

    @property
    def save_url(self) -> str:
        return (
            f"{self.sankhya_base_url}/gateway/v1/mge/service.sbr"
            "?serviceName=DatasetSP.save&outputType=json"
        )

    def price_url(self, cod_prod: str, price_table: int) -> str:
        return (
            f"{self.sankhya_base_url}/v1/precos/produto/{cod_prod}"
            f"/tabela/{price_table}?pagina=1"
        )

    @property
    def login_headers(self) -> dict[str, str]:
        return {
            "token": self.sankhya_token,
            "appkey": self.sankhya_appkey,
            "username": self.sankhya_username,
            "password": self.sankhya_password,
        }


def load_settings() -> Settings:
    """Build settings from the process environment."""
    return Settings.model_validate(dict(os.environ))


global_settings = load_settings()
