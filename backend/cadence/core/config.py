from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "cadence-billing"
    version: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    APP_DATABASE_DSN: str = "sqlite:////tmp/cadence.db"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Payment gateway: "memory" or "stripe"
    PAYMENT_GATEWAY: str = "memory"
    stripe_api_key: str = ""
    stripe_currency: str = "usd"

    # Billing rules
    PLAN_CREDIT_COUPON_ID: str = "plan-credit"
    DAYS_PER_BILLING_MONTH: int = 30
    TRIAL_DAYS_THRESHOLD: int = 30


settings = Settings()
