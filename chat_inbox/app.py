"""
Application bootstrap.

Loads configuration, sets up logging, prepares the local cache and builds an
Inbox around the given backend. A UI entry point calls build_inbox() and
then awaits Inbox.load() on its event loop.
"""
import logging
from typing import Optional

from chat_inbox import config
from chat_inbox.backend.base import MailBackend, Notifier
from chat_inbox.core.inbox import Inbox
from chat_inbox.core.settings import load_settings
from chat_inbox.storage.db import Database
from chat_inbox.storage.encryption import BodyCipher
from chat_inbox.utils.logging_cfg import setup_logging

logger = logging.getLogger(__name__)


def build_inbox(
    backend: MailBackend,
    notifier: Optional[Notifier] = None,
    debug: bool = False,
    use_cache: bool = True
) -> Inbox:
    """
    Create a fully wired Inbox.

    Args:
        backend: Remote mailbox and persistence collaborator.
        notifier: Optional desktop notification collaborator.
        debug: Enable debug logging.
        use_cache: Keep a local SQLite cache of groups and messages.

    Returns:
        The Inbox. Nothing has been loaded or synced yet.
    """
    # Load environment variables and ensure directories exist
    config.load_env()
    setup_logging(debug=debug)

    database = None
    cipher = None
    settings = None
    if use_cache:
        database = Database(config.SQLITE_DB_PATH)
        database.init_db()
        cipher = BodyCipher(config.SECRET_KEY_FILE)
        settings = load_settings(database)

    inbox = Inbox(
        backend,
        notifier=notifier,
        settings=settings,
        account_email=config.ACCOUNT_EMAIL,
        database=database,
        cipher=cipher,
    )
    logger.info(f"Inbox ready (account: {config.ACCOUNT_EMAIL or 'not configured'})")
    return inbox
