from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    """
    App configuration.

    Values come from the environment, then `config.env` / `.env` at the
    repository root (or the current directory).
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

    environment: str = Field(default="development", validation_alias="ENVIRONMENT")

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="tableside", validation_alias="DB_USER")
    db_password: str = Field(default="tableside", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="tableside", validation_alias="DB_NAME")
    # Full SQLAlchemy URL; wins over the DB_* parts when set (e.g. sqlite for local runs)
    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")

    secret_key: str = Field(default="CHANGE_THIS_IN_PRODUCTION", validation_alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", validation_alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=480, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    session_cookie_name: str = Field(default="table_session", validation_alias="SESSION_COOKIE_NAME")
    customer_cancel_window_minutes: int = Field(default=5, validation_alias="CUSTOMER_CANCEL_WINDOW_MINUTES")
    public_order_access_hours: int = Field(default=24, validation_alias="PUBLIC_ORDER_ACCESS_HOURS")

    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    realtime_channel_prefix: str = Field(default="tableside:room", validation_alias="REALTIME_CHANNEL_PREFIX")

    stripe_secret_key: str = Field(default="", validation_alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", validation_alias="STRIPE_WEBHOOK_SECRET")
    stripe_currency: str = Field(default="inr", validation_alias="STRIPE_CURRENCY")
    payment_provider_timeout_seconds: float = Field(default=10.0, validation_alias="PAYMENT_PROVIDER_TIMEOUT_SECONDS")

    # Customer-facing frontend; payment redirects land here
    client_url: str = Field(default="http://localhost:5173", validation_alias="CLIENT_URL")
    # Public base URL of this API; the provider sends customers back to its callback
    api_url: str = Field(default="http://localhost:8000", validation_alias="API_URL")

    cors_origins: str = Field(
        default="http://localhost:5173",
        validation_alias="CORS_ORIGINS"
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # SQLModel uses SQLAlchemy under the hood; this uses the psycopg driver (v3).
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
