# app/core/config.py

from decimal import Decimal
import urllib.parse

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Read env from .env; ignore unknown keys so extra lines don't crash startup
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Postgres ---
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "teld"
    POSTGRES_USER: str = "teld"
    POSTGRES_PASSWORD: str = ""
    # Full async URL override (e.g. sqlite+aiosqlite:///./data/teld.db)
    DATABASE_URL: str | None = None

    # --- Redis Session Storage ---
    REDIS_URL: str | None = None

    # --- Twilio ---
    TWILIO_AUTH_TOKEN: str | None = None
    TWILIO_PHONE_NUMBER: str | None = None
    PUBLIC_BASE_URL: str = ""  # prefix for webhook targets; relative paths when empty

    # --- Security ---
    ADMIN_KEY: str | None = None

    # --- Email (SendGrid) ---
    SENDGRID_API_KEY: str | None = None
    EMAIL_FROM: str | None = None
    EMAIL_TIMEOUT: float = 3.0

    # --- Billing ---
    RATE_PER_MINUTE: Decimal = Decimal("0")
    WALLET_CAP: Decimal = Decimal("10000")
    SETTLEMENT_RETENTION_DAYS: int = 30
    SETTLEMENT_MAX_RETRIES: int = 2

    # --- Call flow ---
    PIN_LENGTH: int = 6
    OTP_LENGTH: int = 6
    MAX_PIN_ATTEMPTS: int = 3
    PIN_ENTRY_TTL: int = 60        # seconds
    OTP_TTL: int = 300             # code validity
    OTP_ENTRY_TTL: int = 300       # session window while waiting for the code
    DESTINATION_TTL: int = 60
    DESTINATION_MAX_DIGITS: int = 15
    GATHER_TIMEOUT: int = 10
    INCALL_GRACE_SECONDS: int = 120
    MAX_CALL_SECONDS: int = 14400  # Twilio <Dial timeLimit> ceiling
    INTERNATIONAL_PREFIX: str = "+"
    DEFAULT_REGION: str = "US"      # for parsing caller IDs without a country code

    # --- Monitoring & Logging ---
    APP_ENV: str = "production"
    LOG_LEVEL: str = "INFO"
    LOG_REQUESTS: bool = False
    MAX_LOG_LENGTH: int = 200

    # Sync URI (Alembic)
    @property
    def sync_db_uri(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace("+aiosqlite", "").replace("+asyncpg", "")
        pwd = urllib.parse.quote_plus(self.POSTGRES_PASSWORD)
        return f"postgresql://{self.POSTGRES_USER}:{pwd}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # Async URI (SQLAlchemy engine)
    @property
    def async_db_uri(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        pwd = urllib.parse.quote_plus(self.POSTGRES_PASSWORD)
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{pwd}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def is_development(self) -> bool:
        return self.APP_ENV.lower() in ("development", "dev", "local")

    @property
    def is_test(self) -> bool:
        return self.APP_ENV.lower() in ("test", "testing")

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() in ("production", "prod")

    def webhook_url(self, path: str) -> str:
        return f"{self.PUBLIC_BASE_URL.rstrip('/')}{path}"

# Singleton
settings = Settings()
