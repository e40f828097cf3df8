"""Configuration constants for goalbank, read from the environment."""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()

SQLITE_FILE_NAME = os.environ.get("GOALBANK_SQLITE", "goalbank.db")
DATABASE_URL = os.environ.get("GOALBANK_DATABASE_URL", f"sqlite:///{SQLITE_FILE_NAME}")
TRANSACTION_RETRY_ATTEMPTS = int(os.environ.get("GOALBANK_TX_RETRY_ATTEMPTS", "3"))
# 0 disables the in-process sweep (an external scheduler drives it instead).
CHALLENGE_SWEEP_SECONDS = int(os.environ.get("GOALBANK_CHALLENGE_SWEEP_SECONDS", "3600"))
LOG_PATH = os.environ.get("GOALBANK_LOG_PATH") or None
LOG_LEVEL = os.environ.get("GOALBANK_LOG_LEVEL", "INFO").upper()

__all__ = [
    "CHALLENGE_SWEEP_SECONDS",
    "DATABASE_URL",
    "LOG_LEVEL",
    "LOG_PATH",
    "SQLITE_FILE_NAME",
    "TRANSACTION_RETRY_ATTEMPTS",
]
