"""
Encryption utilities for backend credentials (S3 secret keys, SSH passwords).
Uses Fernet symmetric encryption keyed by the CREDENTIALS_KEY setting.
"""

from typing import Iterable

from cryptography.fernet import Fernet, InvalidToken

from backvault.models import SECRET_PARAM_FIELDS


class CredentialCipher:
    """Handles encryption and decryption of secret backend parameters."""

    def __init__(self):
        self._fernet = None

    def initialize(self, key: str = None) -> str:
        """
        Initialize the cipher with a Fernet key.

        Args:
            key: URL-safe base64 Fernet key (if None, generates a new one)

        Returns:
            The key in use (persist it as CREDENTIALS_KEY)
        """
        if key is None:
            key = Fernet.generate_key().decode()

        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        return key

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Raises:
            RuntimeError: If cipher not initialized
        """
        if not self._fernet:
            raise RuntimeError("CredentialCipher not initialized. Set CREDENTIALS_KEY.")

        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a string.

        Raises:
            RuntimeError: If cipher not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        if not self._fernet:
            raise RuntimeError("CredentialCipher not initialized. Set CREDENTIALS_KEY.")

        return self._fernet.decrypt(encrypted.encode()).decode()

    def encrypt_params(self, params: dict, fields: Iterable[str] = SECRET_PARAM_FIELDS) -> dict:
        """Copy of params with secret fields encrypted."""
        result = dict(params)
        for name in fields:
            if result.get(name):
                result[name] = self.encrypt(str(result[name]))
        return result

    def decrypt_params(self, params: dict, fields: Iterable[str] = SECRET_PARAM_FIELDS) -> dict:
        """
        Copy of params with secret fields decrypted.

        Raises:
            ValueError: If a secret field cannot be decrypted with the current key
        """
        result = dict(params)
        for name in fields:
            if result.get(name):
                try:
                    result[name] = self.decrypt(result[name])
                except InvalidToken:
                    raise ValueError(f"Cannot decrypt backend parameter '{name}'; CREDENTIALS_KEY changed?")
        return result

    @property
    def is_initialized(self) -> bool:
        """Check if the cipher has been initialized."""
        return self._fernet is not None


# Global instance, initialized by the application factory
credential_cipher = CredentialCipher()
