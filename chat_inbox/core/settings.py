"""
Application settings management.

This module provides user settings management with persistence
through the cache repository.
"""
import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

from chat_inbox import config
from chat_inbox.storage import cache_repo
from chat_inbox.storage.db import Database

logger = logging.getLogger(__name__)

SETTINGS_KEY = "user_settings"


def _default_sync_minutes() -> int:
    # Looked up per instance, after load_env may have changed it
    seconds = config.DEFAULT_SYNC_INTERVAL_SECONDS
    if seconds <= 0:
        return 0
    return max(1, seconds // 60)


@dataclass
class UserSettings:
    """User application settings."""
    notifications_enabled: bool = True
    sound_enabled: bool = True
    sync_interval_minutes: int = field(default_factory=_default_sync_minutes)
    launch_at_login: bool = False
    minimize_to_tray: bool = True
    download_path: str = "downloads"
    download_custom_path: Optional[str] = None
    auto_mark_as_read: bool = True

    @property
    def sync_interval_seconds(self) -> int:
        """Interval for the periodic sync; 0 or less disables it."""
        return self.sync_interval_minutes * 60

    def download_dir(self) -> Path:
        """Directory attachments are saved to."""
        if self.download_custom_path:
            return Path(self.download_custom_path).expanduser()
        if self.download_path == "downloads":
            return Path.home() / "Downloads"
        return config.ATTACHMENTS_DIR


def load_settings(database: Database) -> UserSettings:
    """
    Load user settings from storage.

    Args:
        database: The local cache database.

    Returns:
        UserSettings object. Returns default settings if none are stored or
        the stored value cannot be parsed.
    """
    all_settings = cache_repo.get_settings(database)
    if SETTINGS_KEY not in all_settings:
        return UserSettings()

    try:
        settings_data = all_settings[SETTINGS_KEY]
        if isinstance(settings_data, str):
            settings_dict = json.loads(settings_data)
        else:
            settings_dict = settings_data

        known = {f.name for f in fields(UserSettings)}
        return UserSettings(**{k: v for k, v in settings_dict.items() if k in known})
    except (json.JSONDecodeError, TypeError, AttributeError):
        logger.warning("Stored settings are unreadable, using defaults")
        return UserSettings()


def save_settings(database: Database, settings: UserSettings) -> None:
    """
    Save user settings to storage.

    Args:
        database: The local cache database.
        settings: The UserSettings object to save.
    """
    cache_repo.save_settings(database, SETTINGS_KEY, asdict(settings))
