"""Configuration constants for the KidSpend web frontend."""
from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

SQLITE_FILE_NAME = os.environ.get("KIDSPEND_SQLITE", "kidspend.db")
EXPIRY_DAYS = int(os.environ.get("KIDSPEND_EXPIRY_DAYS", "7"))
REQUEST_EXPIRY = timedelta(days=EXPIRY_DAYS)
_log_file = os.environ.get("KIDSPEND_LOG_FILE", "").strip()
LOG_FILE: Optional[Path] = Path(_log_file) if _log_file else None
SESSION_SECRET = os.environ.get("SESSION_SECRET", "change-this-session-secret")

__all__ = [
    "EXPIRY_DAYS",
    "LOG_FILE",
    "REQUEST_EXPIRY",
    "SQLITE_FILE_NAME",
    "SESSION_SECRET",
]
