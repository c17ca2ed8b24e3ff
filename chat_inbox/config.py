"""
Global settings and constants for the chat inbox.

This module provides configuration constants and helpers. It is
framework-agnostic and designed to be easily unit-testable.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Application paths
APP_NAME: str = "ChatInbox"
DATA_DIR: Path = Path.home() / ".chat_inbox"
SQLITE_DB_PATH: Path = DATA_DIR / "chat_inbox.db"
SECRET_KEY_FILE: Path = DATA_DIR / "secret.key"
LOG_DIR: Path = DATA_DIR / "logs"
ATTACHMENTS_DIR: Path = DATA_DIR / "attachments"

# The local user's mailbox address (used to tell sent from received mail)
ACCOUNT_EMAIL: Optional[str] = None

# Sync configuration
DEFAULT_SYNC_INTERVAL_SECONDS: int = 300  # 5 minutes

# Message display
TRUNCATION_THRESHOLD: int = 500  # characters

# Groups
DEFAULT_AVATAR_COLOR: str = "#4caf50"
DEFAULT_FOLDER: str = "INBOX"


def load_env(env_file: Optional[Path] = None) -> None:
    """
    Load environment variables and apply sensible defaults.

    Reads a `.env` file (if present) and then applies overrides from the
    process environment. It should be called at application startup.

    Args:
        env_file: Optional explicit path to a .env file.
    """
    global SQLITE_DB_PATH, ACCOUNT_EMAIL, DEFAULT_SYNC_INTERVAL_SECONDS

    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    db_path_env = os.environ.get("CHAT_INBOX_DB_PATH")
    if db_path_env:
        SQLITE_DB_PATH = Path(db_path_env)

    account_env = os.environ.get("CHAT_INBOX_ACCOUNT_EMAIL")
    if account_env:
        ACCOUNT_EMAIL = account_env.strip().lower()

    interval_env = os.environ.get("CHAT_INBOX_SYNC_INTERVAL")
    if interval_env:
        try:
            DEFAULT_SYNC_INTERVAL_SECONDS = int(interval_env)
        except ValueError:
            # Keep the default rather than refusing to start
            pass

    # Ensure the database directory exists
    SQLITE_DB_PATH.parent.mkdir(parents=True, exist_ok=True)

