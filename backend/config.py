from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Year Compass Check-ins"
    LOG_LEVEL: str = "INFO"
    DATA_DIR: Path = Path("data")
    DATABASE_URL: str = "sqlite:///data/yearcompass.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "https://localhost:3000",
    ]
    SECURITY_HEADERS_ENABLED: bool = True

    # Shared (application-owned) Gemini credential. Callers may bring their own.
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-1.5-pro"
    ANALYSIS_TIMEOUT_SECONDS: float = 25.0
    ANALYSIS_MAX_RETRIES: int = 2
    ANALYSIS_RETRY_BACKOFF_SECONDS: float = 1.0

    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS_PER_MINUTE: int = 15
    RATE_LIMIT_REQUESTS_PER_DAY: int = 1500

    CHECKIN_ENCRYPTION_KEY: str = ""  # base64 of 32 raw bytes
    CHECKIN_KEY_VERSION: str = "v1"
    CHECKIN_SCAN_BATCH_SIZE: int = 50
    CHECKIN_LEASE_SECONDS: int = 300
    CHECKIN_ALLOW_DAILY: bool = False
    CHECKIN_WORKER_URL: str | None = None

    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "Year In Review <checkins@yearcompass.app>"
    CRON_SECRET: str = ""
    BASE_URL: str = "http://localhost:3000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    @property
    def is_development(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"development", "dev"}

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if not self.CHECKIN_ENCRYPTION_KEY.strip():
            errors.append("CHECKIN_ENCRYPTION_KEY must be set")
        else:
            from utils.encryption import load_encryption_key

            try:
                load_encryption_key(self.CHECKIN_ENCRYPTION_KEY)
            except ValueError as exc:
                errors.append(f"CHECKIN_ENCRYPTION_KEY is invalid: {exc}")
        if len((self.CRON_SECRET or "").strip()) < 16:
            errors.append("CRON_SECRET must be at least 16 characters")
        if not self.GEMINI_API_KEY.strip():
            errors.append("GEMINI_API_KEY must be set")
        if not self.RESEND_API_KEY.strip():
            errors.append("RESEND_API_KEY must be set")
        if self.CHECKIN_ALLOW_DAILY:
            errors.append("CHECKIN_ALLOW_DAILY is a testing cadence and must be off")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
