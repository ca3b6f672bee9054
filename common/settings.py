import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    run_address: str = os.getenv("RUN_ADDRESS", "localhost:8080")
    database_uri: str = os.getenv("DATABASE_URI", "sqlite:///./loyalty.db")
    accrual_system_address: str = os.getenv("ACCRUAL_SYSTEM_ADDRESS", "http://localhost:8081")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "loyalty-ledger")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "86400"))

    accrual_poll_interval: float = float(os.getenv("ACCRUAL_POLL_INTERVAL", "3.0"))
    accrual_default_retry_after: int = int(os.getenv("ACCRUAL_DEFAULT_RETRY_AFTER", "60"))
    accrual_timeout: float = float(os.getenv("ACCRUAL_TIMEOUT", "5.0"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

settings = Settings()
