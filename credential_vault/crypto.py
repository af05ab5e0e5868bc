"""
Vault Crypto Core — Key derivation and authenticated encryption of secrets.

Every secret is sealed with AES-256-GCM under a key owned by a ``KeyProvider``.
The at-rest form (EncodedBlob) is:

    base64( hex(iv 16B) ":" hex(auth_tag 16B) ":" hex(ciphertext) )

Security Note:
    Never log plaintext, blobs or key bytes.
    IVs are random 128-bit values, generated on every call.
"""
import os
import re
import base64
import string
import secrets
import logging
import warnings
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import KEY_LENGTH, VaultConfig
from .exceptions import (
    EmptyInputError,
    MalformedBlobError,
    AuthenticationFailedError,
)

logger = logging.getLogger("credential_vault.crypto")

IV_SIZE = 16  # 128-bit IV
TAG_SIZE = 16  # 128-bit GCM tag
DELIMITER = ":"

# scrypt parameters; fixed so that every process derives the same key.
SCRYPT_SALT = b"salt"
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

# Well-known and therefore insecure: only acceptable for local development.
DEVELOPMENT_PASSPHRASE = "default-dev-key"

KEY_SOURCE_RAW = "key"
KEY_SOURCE_PASSPHRASE = "passphrase"
KEY_SOURCE_FALLBACK = "development-fallback"

_HEX_SEGMENT = re.compile(r"[0-9a-f]*")


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(passphrase: str, salt: bytes = SCRYPT_SALT) -> bytes:
    """Derive a 32-byte encryption key from a passphrase using scrypt.

    Args:
        passphrase: Secret material to stretch.
        salt: Fixed salt; derivation is deterministic for a given passphrase.

    Returns:
        32-byte derived key.
    """
    kdf = Scrypt(
        salt=salt,
        length=KEY_LENGTH,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
    )
    return kdf.derive(passphrase.encode("utf-8"))


class KeyProvider:
    """Holds the encryption key derived once at process start.

    The key is read-only after construction and safe to share between
    concurrent requests.
    """

    __slots__ = ("_key", "_source")

    def __init__(self, key: bytes, source: str = KEY_SOURCE_RAW):
        if len(key) != KEY_LENGTH:
            raise ValueError(
                f"Encryption key must be exactly {KEY_LENGTH} bytes, "
                f"got {len(key)}"
            )
        self._key = bytes(key)
        self._source = source

    def __repr__(self) -> str:
        return f"<KeyProvider source={self._source}>"

    @property
    def key(self) -> bytes:
        return self._key

    @property
    def source(self) -> str:
        return self._source

    @property
    def insecure(self) -> bool:
        """True when the well-known development key is in use."""
        return self._source == KEY_SOURCE_FALLBACK

    @classmethod
    def from_passphrase(cls, passphrase: str) -> "KeyProvider":
        return cls(derive_key(passphrase), source=KEY_SOURCE_PASSPHRASE)

    @classmethod
    def from_config(cls, config: VaultConfig) -> "KeyProvider":
        """Build the provider from validated configuration.

        Precedence: raw hex key, then passphrase, then the development
        fallback. The fallback is reported loudly outside development.
        """
        if config.encryption_key is not None:
            logger.info("Vault key loaded from configured key material")
            return cls(config.encryption_key, source=KEY_SOURCE_RAW)
        if config.passphrase:
            logger.info("Vault key derived from configured passphrase")
            return cls.from_passphrase(config.passphrase)

        provider = cls(
            derive_key(DEVELOPMENT_PASSPHRASE), source=KEY_SOURCE_FALLBACK,
        )
        if config.is_development:
            logger.warning(
                "No encryption key configured; using the development "
                "fallback key"
            )
        else:
            logger.error(
                "No encryption key configured in the %s environment; "
                "secrets are protected by the INSECURE development key. "
                "Set VAULT_ENCRYPTION_KEY.",
                config.environment,
            )
            warnings.warn(
                "credential_vault is using the insecure development "
                f"encryption key in the {config.environment} environment",
                RuntimeWarning,
                stacklevel=2,
            )
        return provider

    @classmethod
    def from_env(cls) -> "KeyProvider":
        return cls.from_config(VaultConfig.from_env())


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------

def split_blob(blob: str) -> tuple[bytes, bytes, bytes]:
    """Decode an EncodedBlob into (iv, tag, ciphertext).

    Raises:
        MalformedBlobError: If the blob is not base64 of exactly three
            lowercase hex segments with a 16-byte IV and tag.
    """
    if not blob or not blob.strip():
        raise MalformedBlobError("Cannot decrypt empty data")
    try:
        combined = base64.b64decode(blob, validate=True).decode("utf-8")
    except ValueError as err:
        raise MalformedBlobError("Encrypted data is not valid base64") from err

    parts = combined.split(DELIMITER)
    if len(parts) != 3:
        raise MalformedBlobError()
    if not all(_HEX_SEGMENT.fullmatch(part) for part in parts):
        raise MalformedBlobError("Encrypted data segments must be hex")
    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as err:
        raise MalformedBlobError("Encrypted data segments must be hex") from err
    if len(iv) != IV_SIZE or len(tag) != TAG_SIZE:
        raise MalformedBlobError(
            f"Expected a {IV_SIZE}-byte IV and a {TAG_SIZE}-byte tag"
        )
    return iv, tag, ciphertext


class Cipher:
    """AES-256-GCM sealing of single secrets into EncodedBlobs.

    Pure transformation: no storage access and no logging of values.
    """

    def __init__(self, keys: KeyProvider):
        self._keys = keys
        self._aead = AESGCM(keys.key)

    @property
    def keys(self) -> KeyProvider:
        return self._keys

    def encrypt(self, secret: str) -> str:
        """Encrypt a secret.

        Args:
            secret: Plaintext to protect.

        Returns:
            EncodedBlob string.

        Raises:
            EmptyInputError: If secret is empty or whitespace only.
        """
        if not secret or not secret.strip():
            raise EmptyInputError()
        iv = os.urandom(IV_SIZE)
        sealed = self._aead.encrypt(iv, secret.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        combined = DELIMITER.join((iv.hex(), tag.hex(), ciphertext.hex()))
        return base64.b64encode(combined.encode("ascii")).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Decrypt an EncodedBlob.

        Raises:
            MalformedBlobError: If the blob does not have the expected shape.
            AuthenticationFailedError: If the tag does not verify
                (tampered data or a different key).
        """
        iv, tag, ciphertext = split_blob(blob)
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as err:
            raise AuthenticationFailedError() from err
        return plaintext.decode("utf-8")

    def can_decrypt(self, blob: str) -> bool:
        """Return True if this cipher's key opens the blob."""
        try:
            self.decrypt(blob)
        except (MalformedBlobError, AuthenticationFailedError):
            return False
        return True


# ---------------------------------------------------------------------------
# Password helpers
# ---------------------------------------------------------------------------

PASSWORD_CHARSET = (
    string.ascii_uppercase + string.ascii_lowercase + string.digits + "!@#$%^&*"
)
DEFAULT_PASSWORD_LENGTH = 16


class PasswordStrength(NamedTuple):
    is_valid: bool
    score: int
    feedback: list[str]


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """Generate a random password from a CSPRNG."""
    if length < 1:
        raise ValueError("Password length must be positive")
    return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))


def password_strength(password: str) -> PasswordStrength:
    """Score a password against five criteria; four or more is valid."""
    checks = (
        (len(password) >= 8, "Password should be at least 8 characters long"),
        (
            any(c.islower() for c in password),
            "Password should contain lowercase letters",
        ),
        (
            any(c.isupper() for c in password),
            "Password should contain uppercase letters",
        ),
        (
            any(c.isdigit() for c in password),
            "Password should contain numbers",
        ),
        (
            any(not c.isalnum() for c in password),
            "Password should contain special characters",
        ),
    )
    score = sum(1 for passed, _ in checks if passed)
    feedback = [message for passed, message in checks if not passed]
    return PasswordStrength(is_valid=score >= 4, score=score, feedback=feedback)
