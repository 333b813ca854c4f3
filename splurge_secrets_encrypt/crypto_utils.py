"""Cryptographic utilities for the Splurge Secrets Encrypt system."""

import hmac
import secrets
from datetime import datetime, timezone
from typing import Iterable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.exceptions import EncryptionError
from splurge_secrets_encrypt.exceptions import ValidationError
from splurge_secrets_encrypt.models import Key, KeyMode


class CryptoUtils:
    """Cryptographic utilities for key generation and record framing.

    Encrypted records are framed as ``k8s:enc:<mode>:v1:<key-name>:`` followed
    by the cipher output. Records written under the identity key are stored
    as-is, without a prefix.
    """

    _BLOCK_SIZE_BITS = 128

    @staticmethod
    def constant_time_compare(a: bytes, b: bytes) -> bool:
        """Perform constant-time comparison of two byte strings.

        Args:
            a: First byte string
            b: Second byte string

        Returns:
            True if strings are equal, False otherwise
        """
        return hmac.compare_digest(a, b)

    @staticmethod
    def generate_random_key() -> bytes:
        """Generate a random 256-bit key.

        Returns:
            Random 256-bit key as bytes
        """
        return secrets.token_bytes(Constants.KEY_SIZE_BYTES())

    @classmethod
    def generate_key(
        cls,
        mode: KeyMode,
        *,
        existing_names: Iterable[str] = ()
    ) -> Key:
        """Generate a new named key for the given cipher mode.

        The name is ``<mode>key-<UTC timestamp>``; a numeric suffix is added
        if that name is already taken.

        Args:
            mode: Cipher mode for the new key
            existing_names: Key names already present in the config

        Returns:
            Newly generated Key

        Raises:
            ValidationError: If mode is the identity mode
        """
        if mode == KeyMode.IDENTITY:
            raise ValidationError("Cannot generate key material for the identity provider")

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H%M%SZ")
        base_name = f"{mode.value}key-{timestamp}"
        taken = set(existing_names)
        name = base_name
        suffix = 1
        while name in taken:
            suffix += 1
            name = f"{base_name}-{suffix}"

        return Key(name=name, secret=cls.generate_random_key(), mode=mode)

    @staticmethod
    def envelope_prefix(key: Key) -> bytes:
        """Return the record prefix identifying data written under key."""
        if key.is_identity:
            return b""
        prefix = (
            f"{Constants.ENVELOPE_PREFIX()}{key.mode.value}:"
            f"{Constants.ENVELOPE_VERSION()}:{key.name}:"
        )
        return prefix.encode("utf-8")

    @classmethod
    def is_encrypted_with(cls, key: Key, stored: bytes) -> bool:
        """Check whether a stored record is framed for the given key."""
        if key.is_identity:
            return not stored.startswith(Constants.ENVELOPE_PREFIX().encode("utf-8"))
        return stored.startswith(cls.envelope_prefix(key))

    @classmethod
    def encrypt_record(
        cls,
        key: Key,
        plaintext: bytes,
        *,
        context: bytes = b""
    ) -> bytes:
        """Encrypt a record under key.

        Args:
            key: Key to encrypt with (identity stores plaintext)
            plaintext: Record payload
            context: Authenticated data bound to the record (AES-GCM only)

        Returns:
            Framed record bytes

        Raises:
            EncryptionError: If encryption fails
        """
        if key.is_identity:
            return plaintext

        try:
            if key.mode == KeyMode.AESGCM:
                nonce = secrets.token_bytes(Constants.GCM_NONCE_SIZE())
                body = nonce + AESGCM(key.secret).encrypt(nonce, plaintext, context or None)
            else:
                iv = secrets.token_bytes(Constants.CBC_IV_SIZE())
                padder = padding.PKCS7(cls._BLOCK_SIZE_BITS).padder()
                padded = padder.update(plaintext) + padder.finalize()
                encryptor = Cipher(algorithms.AES(key.secret), modes.CBC(iv)).encryptor()
                body = iv + encryptor.update(padded) + encryptor.finalize()
        except Exception as e:
            raise EncryptionError(f"Encryption with key {key.name} failed: {e}") from e

        return cls.envelope_prefix(key) + body

    @classmethod
    def _decrypt_body(
        cls,
        key: Key,
        body: bytes,
        context: bytes
    ) -> bytes:
        if key.mode == KeyMode.AESGCM:
            nonce_size = Constants.GCM_NONCE_SIZE()
            if len(body) <= nonce_size:
                raise EncryptionError("ciphertext too short")
            return AESGCM(key.secret).decrypt(body[:nonce_size], body[nonce_size:], context or None)

        iv_size = Constants.CBC_IV_SIZE()
        if len(body) < iv_size * 2 or len(body) % iv_size:
            raise EncryptionError("ciphertext is not a whole number of blocks")
        decryptor = Cipher(algorithms.AES(key.secret), modes.CBC(body[:iv_size])).decryptor()
        padded = decryptor.update(body[iv_size:]) + decryptor.finalize()
        unpadder = padding.PKCS7(cls._BLOCK_SIZE_BITS).unpadder()
        return unpadder.update(padded) + unpadder.finalize()

    @classmethod
    def decrypt_record(
        cls,
        keys: list[Key],
        stored: bytes,
        *,
        context: bytes = b""
    ) -> tuple[bytes, Key]:
        """Decrypt a stored record with the first key that validates.

        Keys are tried in order, primary first, then legacy keys. A key is
        only tried when the record carries its prefix.

        Args:
            keys: Ordered keys from the encryption config
            stored: Framed record bytes
            context: Authenticated data bound to the record (AES-GCM only)

        Returns:
            Tuple of (plaintext, key that decrypted it)

        Raises:
            EncryptionError: If no key can decrypt the record
        """
        failures = []
        for key in keys:
            if not cls.is_encrypted_with(key, stored):
                continue
            if key.is_identity:
                return stored, key

            body = stored[len(cls.envelope_prefix(key)):]
            try:
                return cls._decrypt_body(key, body, context), key
            except (EncryptionError, InvalidTag, ValueError) as e:
                failures.append(f"{key.name}: {str(e) or type(e).__name__}")

        if failures:
            raise EncryptionError(f"No key could decrypt record ({'; '.join(failures)})")
        raise EncryptionError("No key in the encryption config matches record")
