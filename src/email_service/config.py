from base_domains.config import ConsumerSettings
from base_domains.events import EMAIL_GROUP


class EmailSettings(ConsumerSettings):
    SERVICE_NAME: str       = "email-service"
    CONSUMER_GROUP: str     = EMAIL_GROUP
    DB_NAME: str            = "email"

    MAILGUN_BASE_URL: str   = "https://api.mailgun.net"
    MAILGUN_DOMAIN: str     = ""
    MAILGUN_API_KEY: str    = ""
    MAIL_FROM: str          = "Orders <orders@example.com>"
    MAIL_TIMEOUT: float     = 10.0
