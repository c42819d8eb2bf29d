from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DB_URL: str = "sqlite+aiosqlite:///./fuelwatch.db"

    # shared secrets for the admin and cron triggers; empty means "reject everything"
    ADMIN_SECRET: str = ""
    CRON_SECRET: str = ""

    FEED_API_URL: str = ""
    FEED_API_TOKEN: str = ""
    FEED_TIMEOUT_SECONDS: float = 10.0

    GEOCODER_BASE_URL: str = "https://api.postcodes.io"
    GEOCODER_TIMEOUT_SECONDS: float = 10.0
    GEOCODER_MAX_ATTEMPTS: int = 3
    GEOCODE_CACHE_MAX_ENTRIES: int = 0  # 0 = unbounded

    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"
    PUSH_TIMEOUT_SECONDS: float = 15.0

    INGEST_CONCURRENCY: int = 1
    ALERT_CONCURRENCY: int = 1
    ALERT_MAX_PER_WINDOW: int = 2
    ALERT_MAX_PER_USER: int = 2  # across all of a user's rules, 0 = no cap
    ALERT_WINDOW_HOURS: int = 24

    RUN_SCHEDULERS: bool = False
    SYNC_PRICES_SECONDS: int = 900
    ALERT_POLL_SECONDS: int = 900

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


settings = Settings()
