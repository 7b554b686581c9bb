"""
Credential store for the gateway API key.

The key is encrypted using Fernet (AES-128-CBC) and stored under
~/.routerchat/credentials/. An OPENROUTER_API_KEY environment variable
overrides whatever is stored.
"""

import json
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from routerchat.core.errors import CredentialError
from routerchat.utils.paths import get_credentials_dir

logger = logging.getLogger(__name__)

API_KEY_NAME = "OPENROUTER_API_KEY"


class CredentialStore:
    """
    Encrypted storage for secrets.

    Directory structure:
        ~/.routerchat/credentials/.key     # Encryption key (600 permissions)
        ~/.routerchat/credentials/keys.enc # Encrypted secrets
    """

    def __init__(self, base_dir: Path | None = None):
        """
        Initialize the credential store.

        Args:
            base_dir: Base directory for credential storage
        """
        if base_dir is None:
            base_dir = get_credentials_dir()
        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._fernet = self._get_fernet()
        self._cache: dict[str, str] | None = None

    def _get_fernet(self) -> Fernet:
        """Get or create the encryption key."""
        key_file = self.base_dir / ".key"

        if key_file.exists():
            key = key_file.read_bytes()
        else:
            key = Fernet.generate_key()
            key_file.write_bytes(key)
            # Owner read/write only
            try:
                key_file.chmod(0o600)
            except OSError:
                pass  # Windows doesn't support chmod the same way

        return Fernet(key)

    def _keys_path(self) -> Path:
        return self.base_dir / "keys.enc"

    def _load(self) -> dict[str, str]:
        """Load and decrypt stored secrets."""
        if self._cache is not None:
            return self._cache

        path = self._keys_path()
        if not path.exists():
            self._cache = {}
            return self._cache

        try:
            decrypted = self._fernet.decrypt(path.read_bytes())
            self._cache = json.loads(decrypted)
        except (InvalidToken, json.JSONDecodeError):
            logger.warning("Stored credentials at %s are unreadable; ignoring them", path)
            self._cache = {}
        return self._cache

    def _save(self, secrets: dict[str, str]) -> None:
        """Encrypt and save secrets."""
        path = self._keys_path()
        path.write_bytes(self._fernet.encrypt(json.dumps(secrets).encode()))
        try:
            path.chmod(0o600)
        except OSError:
            pass
        self._cache = secrets

    def get(self, name: str) -> str | None:
        """
        Get a secret value.

        Checks the environment first, then stored secrets.
        """
        if os.environ.get(name):
            return os.environ[name]
        return self._load().get(name)

    def set(self, name: str, value: str) -> None:
        """Store a secret."""
        secrets = dict(self._load())
        secrets[name] = value
        self._save(secrets)

    def delete(self, name: str) -> bool:
        """
        Delete a stored secret.

        Returns:
            True if deleted, False if not found
        """
        secrets = dict(self._load())
        if name in secrets:
            del secrets[name]
            self._save(secrets)
            return True
        return False

    # ── API key ───────────────────────────────────────────────────────

    def get_api_key(self) -> str | None:
        """Get the gateway bearer token, or None if none is configured."""
        return self.get(API_KEY_NAME)

    def set_api_key(self, key: str) -> None:
        """
        Store the gateway bearer token.

        Raises:
            CredentialError: if the key is empty
        """
        key = (key or "").strip()
        if not key:
            raise CredentialError("API key must not be empty")
        self.set(API_KEY_NAME, key)

    def delete_api_key(self) -> bool:
        return self.delete(API_KEY_NAME)

    def has_api_key(self) -> bool:
        return self.get_api_key() is not None


# Global credential store instance
_credential_store: CredentialStore | None = None


def get_credential_store() -> CredentialStore:
    """Get the global credential store instance."""
    global _credential_store
    if _credential_store is None:
        _credential_store = CredentialStore()
    return _credential_store
