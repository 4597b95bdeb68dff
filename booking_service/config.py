from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    # This service only VERIFIES tokens, issuance lives in the auth service
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    REDIS_URL: str = "redis://redis:6379/0"

    # --- Kafka (outbox relay + meeting link consumer) ---
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_BOOKING_TOPIC: str = "booking_events"
    KAFKA_CONSUMER_GROUP: str = "meeting_link_provisioner"

    # --- Cashfree payment gateway ---
    CASHFREE_CLIENT_ID: str = ""
    CASHFREE_CLIENT_SECRET: str = ""
    CASHFREE_ENVIRONMENT: str = "SANDBOX"  # SANDBOX or PRODUCTION
    CASHFREE_API_VERSION: str = "2023-08-01"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Price of one consultation, fixed per order at creation time
    CONSULTATION_FEE: Decimal = Decimal("500.00")
    CONSULTATION_CURRENCY: str = "INR"

    # Used to build gateway return / notify URLs
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:5173"

    # --- Zoho Meeting ---
    ZOHO_CLIENT_ID: str = ""
    ZOHO_CLIENT_SECRET: str = ""
    ZOHO_REFRESH_TOKEN: str = ""
    MEETING_DURATION_MINUTES: int = 30
    MEETING_TIMEZONE: str = "Asia/Kolkata"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
