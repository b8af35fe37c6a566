from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator, model_validator


def _parse_bool(v):
    if isinstance(v, str):
        return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
    return bool(v)


class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'invoicepay_user'
    POSTGRES_PASSWORD: str = 'invoicepay_pass'
    POSTGRES_DB: str = 'invoicepay_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # JWT settings (operator endpoints)
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Email settings
    EMAIL_SMTP_SERVER: str = 'smtp.gmail.com'
    EMAIL_SMTP_PORT: int = 587
    EMAIL_USE_TLS: bool = True
    EMAIL_USERNAME: str = ''
    EMAIL_PASSWORD: str = ''
    EMAIL_FROM: str = ''
    EMAIL_FROM_NAME: str = 'InvoicePay'
    FRONTEND_URL: str = 'http://localhost:3000'

    # Card rail
    CARD_GATEWAY_URL: str = 'https://secure.nmi.com/api/transact.php'
    CARD_WEBHOOK_SIGNING_KEY: str = ''

    # Crypto rail
    CRYPTO_API_URL: str = 'https://api.test.devs.beadpay.io/Merchants/api'
    CRYPTO_AUTH_URL: str = 'https://identity.beadpay.io/realms/nonprod/protocol/openid-connect/token'
    CRYPTO_CLIENT_ID: str = 'bead-terminal'
    CRYPTO_API_VERSION: str = '0.2'
    CRYPTO_REDIRECT_URL: str = 'http://localhost:3000/payment-success'

    # Outbound gateway calls
    GATEWAY_TIMEOUT_SECONDS: float = 20.0
    GATEWAY_INSECURE_SKIP_TLS_VERIFY: bool = False

    # Fernet key used for merchant secrets at rest
    CREDENTIALS_ENCRYPTION_KEY: str = ''

    # Webhook audit log
    WEBHOOK_AUDIT_BACKEND: str = 'redis'
    WEBHOOK_AUDIT_CAPACITY: int = 50
    WEBHOOK_AUDIT_TTL_SECONDS: int = 7 * 24 * 3600
    WEBHOOK_AUDIT_KEY: str = 'invoicepay:webhooks'

    # Live events
    LIVE_EVENTS_CHANNEL: str = 'payment-notifications'

    # Reconciliation
    RECONCILIATION_MAX_ATTEMPTS: int = 3
    CRYPTO_POLL_INTERVAL_SECONDS: float = 300.0
    CRYPTO_POLL_BATCH_SIZE: int = 100

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def gateway_tls_verify(self) -> bool:
        return not self.GATEWAY_INSECURE_SKIP_TLS_VERIFY

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", "EMAIL_USE_TLS", "GATEWAY_INSECURE_SKIP_TLS_VERIFY", mode="before")
    @classmethod
    def parse_bool_flags(cls, v):
        return _parse_bool(v)

    @field_validator("GATEWAY_TIMEOUT_SECONDS")
    @classmethod
    def validate_gateway_timeout(cls, v):
        if v <= 0 or v > 30:
            raise ValueError("GATEWAY_TIMEOUT_SECONDS must be in (0, 30]")
        return v

    @field_validator("WEBHOOK_AUDIT_BACKEND")
    @classmethod
    def validate_audit_backend(cls, v):
        if v not in ("redis", "memory"):
            raise ValueError("WEBHOOK_AUDIT_BACKEND must be 'redis' or 'memory'")
        return v

    @model_validator(mode="after")
    def reject_insecure_tls_in_production(self):
        if self.ENVIRONMENT == "production" and self.GATEWAY_INSECURE_SKIP_TLS_VERIFY:
            raise ValueError("GATEWAY_INSECURE_SKIP_TLS_VERIFY cannot be enabled in production")
        return self


settings = Settings()
