from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from base_domains.events import ORDER_TOPIC


class ServiceSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="../.env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    SERVICE_NAME: str          = "service"
    LOG_LEVEL: str             = "INFO"
    HTTP_HOST: str             = "0.0.0.0"
    HTTP_PORT: int             = 8000

    DB_USER: str               = ""
    DB_PASSWORD: str           = ""
    DB_NAME: str               = ""
    DB_HOST: str               = "localhost"
    DB_PORT: int               = 5432
    DB_URL: Optional[str]      = None
    DB_ECHO: bool              = False

    BROKER_BACKEND: Literal["rabbitmq", "memory"] = "rabbitmq"
    RABBIT_USER: str           = "guest"
    RABBIT_PASSWORD: str       = "guest"
    RABBIT_HOST: str           = "localhost"
    RABBIT_PORT: int           = 5672
    RABBIT_EXCHANGE: str       = "order_exchange"
    RABBIT_CONNECT_ATTEMPTS: int = 5
    RABBIT_CONNECT_DELAY: float  = 2.0
    PREFETCH_COUNT: int        = 100

    TOPIC: str                 = ORDER_TOPIC
    TOPIC_PARTITIONS: int      = 3

    RUN_WORKERS: bool          = True

    @property
    def database_url(self) -> str:
        if self.DB_URL:
            return self.DB_URL
        return (
            f"postgresql+asyncpg://"
            f"{self.DB_USER}:"
            f"{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:"
            f"{self.DB_PORT}/"
            f"{self.DB_NAME}"
        )

    @property
    def rabbit_url(self) -> str:
        return f"amqp://{self.RABBIT_USER}:{self.RABBIT_PASSWORD}@{self.RABBIT_HOST}:{self.RABBIT_PORT}/"


class ConsumerSettings(ServiceSettings):
    CONSUMER_GROUP: str        = ""

    MAX_ATTEMPTS: int          = 5
    RETRY_BASE_DELAY: float    = 0.5
    RETRY_MAX_DELAY: float     = 30.0
    RESTART_DELAY: float       = 1.0

    POLL_TIMEOUT: float        = 1.0
    FETCH_MAX_RECORDS: int     = 100

    PROCESSED_RETENTION_HOURS: int = 24 * 7
    HOUSEKEEPING_INTERVAL: float   = 3600.0
