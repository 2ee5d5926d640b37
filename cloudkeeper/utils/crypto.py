"""
Credential decoding for the settings file.

Credentials are stored either base64 encoded (plain obfuscation, the legacy
format) or as Fernet tokens prefixed with ``fernet:``. Fernet tokens are
decrypted with a key derived from the master key (CLOUDKEEPER_MASTER_KEY).
"""

import base64
import binascii
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


FERNET_PREFIX = 'fernet:'


class CredentialError(Exception):
    """Raised when a stored credential cannot be decoded."""
    pass


class CredentialCipher:
    """Encrypts and decrypts settings-file credentials with a master key."""

    def __init__(self, master_key: str):
        """
        Derive a Fernet key from the master key.

        Args:
            master_key: Secret passphrase (from config or environment)
        """
        # Fixed salt since the master key itself is the secret
        fixed_salt = b'cloudkeeper_credential_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=fixed_salt,
            iterations=100000,
        )

        key = base64.urlsafe_b64encode(kdf.derive(master_key.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """Return a ``fernet:`` prefixed token for plaintext."""
        token = self._fernet.encrypt(plaintext.encode()).decode()
        return f"{FERNET_PREFIX}{token}"

    def decrypt(self, value: str) -> str:
        """
        Decrypt a ``fernet:`` prefixed token.

        Raises:
            CredentialError: If the token is invalid or the key is wrong
        """
        token = value[len(FERNET_PREFIX):] if value.startswith(FERNET_PREFIX) else value

        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            raise CredentialError("Invalid token or wrong master key")


def encode_credential(plaintext: str, master_key: Optional[str] = None) -> str:
    """
    Encode a credential for the settings file.

    Args:
        plaintext: Credential in plaintext
        master_key: If given, encrypt with Fernet instead of base64 encoding

    Returns:
        Value to store in the settings file
    """
    if master_key:
        return CredentialCipher(master_key).encrypt(plaintext)

    return base64.standard_b64encode(plaintext.encode()).decode()


def decode_credential(value: str, master_key: Optional[str] = None) -> str:
    """
    Decode a credential from the settings file.

    Args:
        value: Stored value (base64 or ``fernet:`` token)
        master_key: Master key for Fernet tokens

    Returns:
        Plaintext credential

    Raises:
        CredentialError: If the value cannot be decoded
    """
    if not isinstance(value, str):
        raise CredentialError(f"Credential must be a string, got {type(value).__name__}")

    if value.startswith(FERNET_PREFIX):
        if not master_key:
            raise CredentialError("Encrypted credential found but no master key configured")
        return CredentialCipher(master_key).decrypt(value)

    try:
        return base64.b64decode(value, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError) as e:
        raise CredentialError(f"Credential is not valid base64 UTF-8: {e}")
