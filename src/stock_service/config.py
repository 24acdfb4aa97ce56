from base_domains.config import ConsumerSettings
from base_domains.events import STOCK_GROUP


class StockSettings(ConsumerSettings):
    SERVICE_NAME: str       = "stock-service"
    CONSUMER_GROUP: str     = STOCK_GROUP
    DB_NAME: str            = "stock"
