"""
Artifact encryption.

Files are encrypted with Fernet using a key derived from a passphrase with
PBKDF2. Every file gets its own salt, stored in a small header:

    b"BKOENC1" + 16-byte salt + Fernet token
"""

import base64
import os
from typing import Optional, Mapping

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import EncryptionError


MAGIC = b'BKOENC1'
SALT_SIZE = 16
KDF_ITERATIONS = 480000
ENCRYPTION_KEY_ENV = 'BACKUP_ENCRYPTION_KEY'
ENCRYPTED_EXTENSION = '.enc'


class ArtifactCipher:
    """Encrypts and decrypts artifact files with a passphrase."""

    def __init__(self, passphrase: str):
        if not passphrase:
            raise EncryptionError("Encryption passphrase must not be empty")
        self._passphrase = passphrase.encode()

    def _fernet(self, salt: bytes) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(self._passphrase)))

    def encrypt_bytes(self, data: bytes) -> bytes:
        salt = os.urandom(SALT_SIZE)
        return MAGIC + salt + self._fernet(salt).encrypt(data)

    def decrypt_bytes(self, data: bytes) -> bytes:
        """
        Raises:
            EncryptionError: If the header is missing or the passphrase is wrong
        """
        if not data.startswith(MAGIC) or len(data) <= len(MAGIC) + SALT_SIZE:
            raise EncryptionError("Not an encrypted backup artifact")
        salt = data[len(MAGIC):len(MAGIC) + SALT_SIZE]
        token = data[len(MAGIC) + SALT_SIZE:]
        try:
            return self._fernet(salt).decrypt(token)
        except InvalidToken:
            raise EncryptionError("Failed to decrypt artifact: invalid key or corrupted data")

    def encrypt_file(self, source_path: str, output_path: Optional[str] = None) -> str:
        """
        Encrypt a file.

        Args:
            source_path: File to encrypt
            output_path: Destination (default: source path + '.enc')

        Returns:
            Path of the encrypted file
        """
        output_path = output_path or source_path + ENCRYPTED_EXTENSION
        try:
            with open(source_path, 'rb') as f:
                data = f.read()
            with open(output_path, 'wb') as f:
                f.write(self.encrypt_bytes(data))
        except OSError as e:
            raise EncryptionError(f"Failed to encrypt {os.path.basename(source_path)}: {e}")
        return output_path

    def decrypt_file(self, source_path: str, output_path: str) -> str:
        try:
            with open(source_path, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise EncryptionError(f"Failed to read {os.path.basename(source_path)}: {e}")

        plaintext = self.decrypt_bytes(data)
        try:
            with open(output_path, 'wb') as f:
                f.write(plaintext)
        except OSError as e:
            raise EncryptionError(f"Failed to write {os.path.basename(output_path)}: {e}")
        return output_path


def is_encrypted_file(path: str) -> bool:
    with open(path, 'rb') as f:
        return f.read(len(MAGIC)) == MAGIC


def resolve_encryption_key(destinations, environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Pick the passphrase for a run.

    The first encrypting destination with an ``encryption_key`` wins, then the
    BACKUP_ENCRYPTION_KEY environment variable.

    Raises:
        EncryptionError: If no key is available
    """
    for destination in destinations:
        if destination.encryption and destination.encryption_key:
            return destination.encryption_key

    env = os.environ if environ is None else environ
    key = env.get(ENCRYPTION_KEY_ENV)
    if key:
        return key

    raise EncryptionError(
        f"Encryption is enabled but no key is configured. "
        f"Set encryptionKey on the destination or {ENCRYPTION_KEY_ENV}."
    )
