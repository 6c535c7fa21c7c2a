import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Store settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "campus_library.db")
    seed_file: Optional[str] = os.getenv("LIBRARY_SEED_FILE")
    store_busy_timeout: float = float(os.getenv("STORE_BUSY_TIMEOUT", "5"))

    # Circulation settings
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    require_verified_profile: bool = _flag("REQUIRE_VERIFIED_PROFILE", "False")

    # Identity / role-check service
    identity_service_url: Optional[str] = os.getenv("IDENTITY_SERVICE_URL")
    identity_service_key: Optional[str] = os.getenv("IDENTITY_SERVICE_KEY")
    identity_timeout: float = float(os.getenv("IDENTITY_TIMEOUT", "10"))
    circulation_role: str = os.getenv("CIRCULATION_ROLE", "admin")
    # Used only when no identity service is configured
    circulation_admins: List[str] = field(
        default_factory=lambda: [
            a.strip() for a in os.getenv("CIRCULATION_ADMINS", "admin").split(",") if a.strip()
        ]
    )

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Campus Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Pagination
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "200"))


settings = Settings()
