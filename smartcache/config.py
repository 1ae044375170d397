from dataclasses import dataclass
import os

@dataclass
class Settings:
    # Location
    APP_NAME: str = os.getenv("SMART_CACHE_APP_NAME", "smart-cache")
    CACHE_DIR: str = os.getenv("SMART_CACHE_DIR", "")  # empty = platform cache dir
    FILENAME: str = os.getenv("SMART_CACHE_FILENAME", "cache.sqlite3")

    # Store
    TIMEOUT: float = float(os.getenv("SMART_CACHE_TIMEOUT", 30.0))  # sqlite busy wait, seconds

    # Diagnostics
    LOG_KEYS: bool = bool(os.getenv("SMART_CACHE_LOG_KEYS", "0") == "1")

SETTINGS = Settings()
