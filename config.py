from __future__ import annotations

import os
from pathlib import Path
from typing import List


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    # Example: SHELFBOARD_HOME=/srv/shelfboard SHELFBOARD_DB=/srv/shelfboard/board.db
    APP_DIR = Path(os.getenv("SHELFBOARD_HOME", str(Path.home() / ".shelfboard")))
    DATABASE_PATH = Path(os.getenv("SHELFBOARD_DB", str(APP_DIR / "library.db")))

    LOG_LEVEL = os.getenv("SHELFBOARD_LOG_LEVEL", "INFO").upper()
    CORS_ORIGINS = _split(
        os.getenv(
            "SHELFBOARD_CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        )
    )

    # Open Library search
    CATALOG_URL = os.getenv("SHELFBOARD_CATALOG_URL", "https://openlibrary.org/search.json")
    CATALOG_TIMEOUT = float(os.getenv("SHELFBOARD_CATALOG_TIMEOUT", "15"))

    # Used by the terminal client
    API_URL = os.getenv("SHELFBOARD_API_URL", "http://127.0.0.1:8000")
    API_TOKEN = os.getenv("SHELFBOARD_TOKEN", "")
    CLIENT_TIMEOUT = float(os.getenv("SHELFBOARD_CLIENT_TIMEOUT", "10"))
