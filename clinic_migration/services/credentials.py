"""Encryption of source-system credentials at rest.

Credentials for the source platform (API keys, OAuth tokens) are sealed
with Fernet before they are stored on a run and opened only inside the
ingest phase.
"""

import json
import logging
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from ..errors import CredentialError

logger = logging.getLogger(__name__)


class CredentialVault:
    """Seals and opens credential dictionaries with a Fernet key."""

    def __init__(self, key: Optional[str] = None):
        """
        Initialize the vault.

        Args:
            key: urlsafe base64 Fernet key. When omitted an ephemeral key is
                generated, so sealed values do not survive a restart.
        """
        if key is None:
            logger.warning(
                "No credentials key configured; using an ephemeral key. "
                "Set CLINIC_MIGRATION_CREDENTIALS_KEY to keep sealed credentials usable."
            )
            key = Fernet.generate_key().decode("utf-8")

        try:
            self.cipher = Fernet(key.encode("utf-8") if isinstance(key, str) else key)
        except ValueError as e:
            logger.error(f"Invalid credentials key: {str(e)}")
            raise CredentialError("Invalid credentials key. Key must be a urlsafe base64-encoded 32-byte key.") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def seal(self, credentials: Dict[str, Any]) -> str:
        """
        Encrypt a credentials dictionary.

        Args:
            credentials: Plain credentials, e.g. {"api_key": "...", "business_id": "..."}

        Returns:
            Fernet token as text, safe to persist
        """
        payload = json.dumps(credentials, sort_keys=True, default=str)
        return self.cipher.encrypt(payload.encode("utf-8")).decode("utf-8")

    def open(self, token: Optional[str]) -> Dict[str, Any]:
        """
        Decrypt a sealed credentials token.

        Args:
            token: Token produced by seal(); None or empty yields {}

        Returns:
            Plain credentials dictionary

        Raises:
            CredentialError: If the token was sealed with another key or is corrupt
        """
        if not token:
            return {}
        try:
            return json.loads(self.cipher.decrypt(token.encode("utf-8")).decode("utf-8"))
        except InvalidToken as e:
            logger.error("Failed to open sealed credentials: invalid token or wrong key")
            raise CredentialError("Stored credentials cannot be decrypted with the configured key") from e
