from decimal import Decimal
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]

# eSewa's published sandbox key; anyone can sign callbacks with it
ESEWA_TEST_SECRET_KEY = "8gBm/:&EnhH.1/q"


class Settings(BaseSettings):
    """
    App configuration.

    This project uses `config.env` (non-dot env file) because some environments
    block creating `.env*` files. If you do have a `.env`, it will also be read.
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Full SQLAlchemy URL; when set it wins over the DB_* parts (handy for sqlite)
    db_url: str | None = Field(default=None, validation_alias="DB_URL")
    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="foodorder", validation_alias="DB_USER")
    db_password: str = Field(default="foodorder", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="foodorder", validation_alias="DB_NAME")

    secret_key: str = Field(default="CHANGE_THIS_IN_PRODUCTION", validation_alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", validation_alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")

    # Public URL of the storefront, used to build gateway return URLs
    base_url: str = Field(default="http://localhost:8000", validation_alias="BASE_URL")

    # Shop defaults, used until an operator saves shop settings
    default_tax_rate: Decimal = Field(default=Decimal("0.08"), validation_alias="DEFAULT_TAX_RATE")
    default_delivery_enabled: bool = Field(default=True, validation_alias="DEFAULT_DELIVERY_ENABLED")
    default_delivery_charge: Decimal = Field(default=Decimal("3.99"), validation_alias="DEFAULT_DELIVERY_CHARGE")

    # eSewa (redirect + shared secret)
    esewa_secret_key: str = Field(default=ESEWA_TEST_SECRET_KEY, validation_alias="ESEWA_SECRET_KEY")
    esewa_product_code: str = Field(default="EPAYTEST", validation_alias="ESEWA_PRODUCT_CODE")
    esewa_form_url: str = Field(
        default="https://rc-epay.esewa.com.np/api/epay/main/v2/form",
        validation_alias="ESEWA_FORM_URL",
    )
    esewa_status_url: str = Field(
        default="https://rc.esewa.com.np/api/epay/transaction/status/",
        validation_alias="ESEWA_STATUS_URL",
    )
    esewa_verify_with_status_api: bool = Field(default=False, validation_alias="ESEWA_VERIFY_WITH_STATUS_API")

    # Khalti (server-initiated + lookup)
    khalti_secret_key: str = Field(default="", validation_alias="KHALTI_SECRET_KEY")
    khalti_base_url: str = Field(default="https://a.khalti.com/api/v2", validation_alias="KHALTI_BASE_URL")

    gateway_timeout_seconds: float = Field(default=10.0, validation_alias="GATEWAY_TIMEOUT_SECONDS")

    # Order update fan-out; empty disables publishing
    redis_url: str | None = Field(default=None, validation_alias="REDIS_URL")

    # Order confirmation email
    smtp_host: str = Field(default="smtp.gmail.com", validation_alias="SMTP_HOST")
    smtp_port: int = Field(default=587, validation_alias="SMTP_PORT")
    smtp_user: str = Field(default="", validation_alias="SMTP_USER")
    smtp_password: str = Field(default="", validation_alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, validation_alias="SMTP_USE_TLS")
    email_from: str = Field(default="orders@localhost", validation_alias="EMAIL_FROM")
    email_from_name: str = Field(default="Food Order", validation_alias="EMAIL_FROM_NAME")

    # CORS configuration
    cors_origins: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS"
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def esewa_enabled(self) -> bool:
        """Production refuses eSewa until a real merchant key is configured."""
        return not (self.is_production and self.esewa_secret_key == ESEWA_TEST_SECRET_KEY)

    @property
    def allowed_origins(self) -> list[str]:
        """CORS_ORIGINS is comma-separated; blanks are dropped."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def database_url(self) -> str:
        if self.db_url:
            return self.db_url
        # SQLModel uses SQLAlchemy under the hood; this uses the psycopg driver (v3).
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
