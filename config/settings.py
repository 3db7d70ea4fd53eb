from pydantic_settings import BaseSettings
from typing import ClassVar, Literal, Optional


class Settings(BaseSettings):
    # Runtime
    APP_ENV: str = "production"
    LOG_LEVEL: str = "INFO"

    # ClamAV daemon (clamd)
    CLAMAV_HOST: str = "localhost"
    CLAMAV_PORT: int = 3310
    CLAMAV_SOCKET_PATH: Optional[str] = None
    CLAMAV_TIMEOUT: float = 30.0
    CLAMAV_CONNECT_RETRIES: int = 0
    CLAMAV_RETRY_BACKOFF: float = 1.0

    # Scan failure policy. VIRUS_SCAN_MODE wins when set; otherwise
    # development or VIRUS_SCAN_FAIL_OPEN=true means fail-open.
    VIRUS_SCAN_MODE: Optional[Literal["fail-open", "fail-closed"]] = None
    VIRUS_SCAN_FAIL_OPEN: bool = False

    # Test suites only
    SKIP_VIRUS_SCAN: bool = False

    model_config: ClassVar = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore"
    }


settings = Settings()
