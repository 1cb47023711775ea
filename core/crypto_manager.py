"""
Cryptography Manager for the PopThread core

Handles password credential hashing and verification using the Scrypt key
derivation function.
"""

import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt


@dataclass
class PasswordCredential:
    """
    Stored form of a password.

    Attributes:
        password_hash: Scrypt output (32 bytes)
        salt: Random per-credential salt (16 bytes)
    """
    password_hash: bytes
    salt: bytes


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class CryptoManager:
    """
    Manages password hashing for user accounts.
    """

    def __init__(self, scrypt_n: int = 2**14, scrypt_r: int = 8, scrypt_p: int = 1):
        """
        Args:
            scrypt_n: CPU/memory cost parameter (power of two)
            scrypt_r: Block size
            scrypt_p: Parallelization parameter
        """
        if scrypt_n < 2 or scrypt_n & (scrypt_n - 1):
            raise ValueError("scrypt_n must be a power of two greater than 1")
        self.scrypt_n = scrypt_n
        self.scrypt_r = scrypt_r
        self.scrypt_p = scrypt_p

    def _kdf(self, salt: bytes) -> Scrypt:
        # A Scrypt instance can only be used once
        return Scrypt(
            salt=salt,
            length=32,
            n=self.scrypt_n,
            r=self.scrypt_r,
            p=self.scrypt_p,
        )

    def hash_password(self, password: str) -> PasswordCredential:
        """
        Derive a credential from a plaintext password.

        Args:
            password: Plaintext password

        Returns:
            PasswordCredential with a fresh random salt

        Raises:
            CryptoError: If derivation fails
        """
        salt = os.urandom(16)
        try:
            password_hash = self._kdf(salt).derive(password.encode('utf-8'))
        except Exception as e:
            raise CryptoError(f"Failed to hash password: {e}")
        return PasswordCredential(password_hash=password_hash, salt=salt)

    def verify_password(self, password: str, credential: PasswordCredential) -> bool:
        """
        Check a plaintext password against a stored credential.

        Comparison is constant time (done by ``Scrypt.verify``).

        Returns:
            True if the password matches, False otherwise
        """
        try:
            self._kdf(credential.salt).verify(password.encode('utf-8'), credential.password_hash)
            return True
        except InvalidKey:
            return False
