import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DEFAULT_GATEWAY_BASE_URL = "https://api.razorpay.com/v1"


@dataclass(frozen=True)
class Settings:
    database_url: str
    gateway_key_id: str = ""
    gateway_key_secret: str = ""
    gateway_webhook_secret: str = ""
    gateway_base_url: str = DEFAULT_GATEWAY_BASE_URL
    gateway_timeout_seconds: float = 5.0
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    log_level: str = "INFO"


def load_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

    return Settings(
        database_url=database_url,
        gateway_key_id=os.getenv("GATEWAY_KEY_ID", ""),
        gateway_key_secret=os.getenv("GATEWAY_KEY_SECRET", ""),
        gateway_webhook_secret=os.getenv("GATEWAY_WEBHOOK_SECRET", ""),
        gateway_base_url=os.getenv("GATEWAY_BASE_URL", DEFAULT_GATEWAY_BASE_URL),
        gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "5.0")),
        jwt_secret=os.getenv("JWT_SECRET"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
