import os
from dataclasses import dataclass
from typing import List


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    database_url: str
    database_name: str
    log_level: str
    cors_origins: List[str]
    default_page_size: int


def get_settings() -> Settings:
    origins = os.getenv("CORS_ORIGINS", "*")
    return Settings(
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "meditrack"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        default_page_size=max(1, _int_env("DEFAULT_PAGE_SIZE", 10)),
    )
