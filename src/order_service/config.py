from base_domains.config import ServiceSettings


class OrderSettings(ServiceSettings):
    SERVICE_NAME: str            = "order-service"
    DB_NAME: str                 = "orders"

    OUTBOX_POLL_INTERVAL: float  = 1.0
    OUTBOX_BATCH_SIZE: int       = 100
    PUBLISH_BASE_DELAY: float    = 0.5
    PUBLISH_MAX_DELAY: float     = 30.0
    OUTBOX_RETENTION_HOURS: int  = 72
