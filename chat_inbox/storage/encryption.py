"""
Symmetric encryption of message bodies at rest.

Uses Fernet (AES-128 in CBC mode with HMAC) with a key kept in a local
key file, so cached mail bodies are never written to SQLite in clear text.
"""
import base64
import logging
import os
from pathlib import Path
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from chat_inbox.utils.errors import DecryptionError

logger = logging.getLogger(__name__)


def _get_or_create_key(key_file: Path) -> bytes:
    """
    Read the encryption key from file, or generate a new one if missing.

    Returns:
        The encryption key as bytes.
    """
    key_file.parent.mkdir(parents=True, exist_ok=True)

    if key_file.exists():
        key = key_file.read_bytes()
        try:
            Fernet(key)  # Raises ValueError if the key is malformed
            return key
        except (ValueError, TypeError):
            logger.warning(f"Encryption key at {key_file} is corrupted, generating a new one")

    key = Fernet.generate_key()
    key_file.write_bytes(key)

    # Restrictive permissions where the platform supports them
    try:
        os.chmod(key_file, 0o600)
    except OSError:
        pass

    return key


class BodyCipher:
    """Encrypts and decrypts text for storage in SQLite TEXT columns."""

    def __init__(self, key_file: Union[str, Path]):
        self.key_file = Path(key_file)
        self._fernet = Fernet(_get_or_create_key(self.key_file))

    def encrypt_text(self, text: Optional[str]) -> Optional[str]:
        """
        Encrypt a text string.

        Args:
            text: The text to encrypt. Empty or None is stored as None.

        Returns:
            Base64 text of the Fernet token, or None.
        """
        if not text:
            return None
        token = self._fernet.encrypt(text.encode("utf-8"))
        return base64.b64encode(token).decode("utf-8")

    def decrypt_text(self, data: Optional[str]) -> Optional[str]:
        """
        Decrypt text produced by encrypt_text.

        Raises:
            DecryptionError: If the data is corrupted or the key changed.
        """
        if not data:
            return None
        try:
            token = base64.b64decode(data.encode("utf-8"))
            return self._fernet.decrypt(token).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError("Decryption failed: invalid or corrupted data") from e
        except (ValueError, UnicodeDecodeError) as e:
            raise DecryptionError(f"Decryption failed: {str(e)}") from e
