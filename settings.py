import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

# --------------------------------------------------------------------
# Environment
# --------------------------------------------------------------------

env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None: return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw: return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {name}: {raw!r}")
        return default


GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
ADMIN_KEY = os.getenv("ADMIN_KEY")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
RATE_LIMIT_STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")
CACHE_TTL_SECONDS = _env_int("CACHE_TTL_SECONDS", 3600 * 24)

GOOGLE_BOOKS_API_URL = os.getenv("GOOGLE_BOOKS_API_URL", "https://www.googleapis.com/books/v1")
OPEN_LIBRARY_API_URL = os.getenv("OPEN_LIBRARY_API_URL", "https://openlibrary.org")
OPEN_LIBRARY_COVERS_URL = os.getenv("OPEN_LIBRARY_COVERS_URL", "https://covers.openlibrary.org/b")

HTTP_TIMEOUT_MS = _env_int("HTTP_TIMEOUT_MS", 10000)
HTTP_RETRY_ATTEMPTS = _env_int("HTTP_RETRY_ATTEMPTS", 3)
HTTP_RETRY_DELAY_MS = _env_int("HTTP_RETRY_DELAY_MS", 1000)

SEARCH_PRIMARY_SERVICE = os.getenv("SEARCH_PRIMARY_SERVICE", "google-books")
SEARCH_ENABLE_FALLBACK = _env_bool("SEARCH_ENABLE_FALLBACK", True)
SEARCH_ENABLE_MERGING = _env_bool("SEARCH_ENABLE_MERGING", False)
SEARCH_MAX_RESULTS = _env_int("SEARCH_MAX_RESULTS", 40)
SEARCH_TIMEOUT_MS = _env_int("SEARCH_TIMEOUT_MS", 10000)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str = LOG_LEVEL) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        serialize=True,
        enqueue=True,
        level=level,
        format="{time} {level} {message}",
    )
