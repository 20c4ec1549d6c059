from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    DATABASE_URL: str
    AUTO_CREATE_TABLES: bool = True

    ENV: str = "dev"
    JWT_SECRET: str
    JWT_ISSUER: str = "vibecoder"

    ACCESS_TTL_MIN: int = 60

    COOKIE_DOMAIN: str | None = None
    COOKIE_SECURE: bool = False
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    RAZORPAY_KEY_ID: str | None = None
    RAZORPAY_KEY_SECRET: str | None = None
    RAZORPAY_WEBHOOK_SECRET: str | None = None
    RAZORPAY_API_BASE: str = "https://api.razorpay.com/v1"
    GATEWAY_TIMEOUT_SEC: float = 10.0

    DEFAULT_CURRENCY: str = "INR"
    PLATFORM_FEE_PERCENT: int = 10
    RECONCILE_AFTER_MIN: int = 30
    RECONCILE_LOOKBACK_HOURS: int = 24

    UPLOAD_DIR: str = "uploads"
    DOWNLOAD_TTL_HOURS: int = 24
    DOWNLOAD_MAX_COUNT: int | None = None
    DOWNLOAD_CHUNK_SIZE: int = 64 * 1024


settings = Settings()
