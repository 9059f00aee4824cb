import os
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    MARKET_DB_USER: str        = os.getenv("MARKET_DB_USER", "")
    MARKET_DB_PASSWORD: str    = os.getenv("MARKET_DB_PASSWORD", "")
    MARKET_DB_NAME: str        = os.getenv("MARKET_DB_NAME", "")
    MARKET_DB_HOST: str        = os.getenv("MARKET_DB_HOST", "")
    MARKET_DB_PORT: int        = int(os.getenv("MARKET_DB_PORT", "5432"))
    # overrides the parts above when set
    DATABASE_URL: str          = os.getenv("DATABASE_URL", "")
    DB_ECHO: bool              = False

    FEED_BACKEND: str          = os.getenv("FEED_BACKEND", "rabbit")  # rabbit | local
    FEED_EXCHANGE: str         = "market_changes"
    RABBIT_USER: str           = os.getenv("RABBIT_USER", "")
    RABBIT_PASSWORD: str       = os.getenv("RABBIT_PASSWORD", "")
    RABBIT_HOST: str           = os.getenv("RABBIT_HOST", "")
    RABBIT_PORT: int           = int(os.getenv("RABBIT_PORT",  "5672"))

    GATEWAY_BASE_URL: str      = os.getenv("GATEWAY_BASE_URL", "https://api.eyo.com.br/v1")
    GATEWAY_API_KEY: str       = os.getenv("GATEWAY_API_KEY", "")
    GATEWAY_TIMEOUT: float     = 10.0

    # "ACTIVE" is accepted alongside "COMPLETED" to match the live behaviour;
    # set PAYMENT_SUCCESS_STATUSES='["COMPLETED"]' for strict confirmation.
    PAYMENT_SUCCESS_STATUSES: list[str] = ["COMPLETED", "ACTIVE"]
    PAYMENT_POLL_INITIAL_DELAY: float   = 1.0
    PAYMENT_POLL_MAX_DELAY: float       = 15.0

    PAYOUT_MAX_ATTEMPTS: int   = int(os.getenv("PAYOUT_MAX_ATTEMPTS", "5"))

    OUTBOX_POLL_INTERVAL: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "0.5"))
    OUTBOX_BATCH_SIZE: int      = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://"
            f"{self.MARKET_DB_USER}:"
            f"{self.MARKET_DB_PASSWORD}"
            f"@{self.MARKET_DB_HOST}:"
            f"{self.MARKET_DB_PORT}/"
            f"{self.MARKET_DB_NAME}"
        )

    @property
    def rabbit_url(self) -> str:
        return f"amqp://{self.RABBIT_USER}:{self.RABBIT_PASSWORD}@{self.RABBIT_HOST}:{self.RABBIT_PORT}/"

settings = Settings()
