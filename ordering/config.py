from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "Restaurant Ordering"
    DATABASE_URL: str = "sqlite:///./ordering.db"
    LOG_LEVEL: str = "INFO"

    # --- Identity ---
    SECRET_KEY: str = "dev-secret-key-change"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    ADMIN_EMAIL: str | None = None
    ADMIN_PASSWORD: str | None = None

    # --- Payments ---
    APP_URL: str = "http://localhost:8000"
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_CURRENCY: str = "gbp"
    PAYMENT_TIMEOUT_SECONDS: float = 20.0
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # --- Email (Resend) ---
    RESEND_API_KEY: str | None = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
