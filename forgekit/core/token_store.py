"""Encrypted credential storage.

The bearer token lives in ``<home>/config.json``, encrypted with a per-machine
AES-256-GCM master key kept in ``<home>/.key``. Both files are owner-only.
Reads are self-healing: a record that cannot be validated is deleted.
"""
import base64
import binascii
import getpass
import hashlib
import json
import os
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Literal, Optional

import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from forgekit.core.config import ForgeConfig
from forgekit.core.errors import TokenFormatError
from forgekit.core.logger import get_logger

logger = get_logger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16

SUBJECT_CLAIMS = ("sub", "user_id", "id")


@dataclass(frozen=True)
class StoredCredential:
    """Credential record as found on disk, resolved once at load time."""

    kind: Literal["encrypted", "plaintext"]
    payload: str


@dataclass(frozen=True)
class TokenInfo:
    """Display claims of the current token (signature not verified)."""

    user_id: str
    email: Optional[str] = None
    expires_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None


def decode_claims(token: str) -> Optional[dict]:
    """Decode the payload segment of a JWT without verifying it.

    Returns:
        Claims dict, or None if the token is not JWT-shaped
    """
    if not token or not isinstance(token, str) or token.count(".") != 2:
        return None
    try:
        claims = jwt.decode(
            token,
            options={
                "verify_signature": False,
                "verify_exp": False,
                "verify_nbf": False,
                "verify_iat": False,
                "verify_aud": False,
                "verify_iss": False,
                "verify_sub": False,
                "verify_jti": False,
            },
        )
    except jwt.PyJWTError:
        return None
    return claims if isinstance(claims, dict) else None


def is_valid_jwt(token: str, now: Optional[float] = None) -> bool:
    """Check token shape, subject claim and expiry.

    A token is valid when it has three segments, its payload decodes to JSON,
    it names a subject, and it either has no ``exp`` or ``exp`` is in the future.
    """
    claims = decode_claims(token)
    if claims is None:
        return False

    exp = claims.get("exp")
    if exp is not None:
        current = time.time() if now is None else now
        try:
            if float(exp) <= current:
                return False
        except (TypeError, ValueError):
            return False

    return any(claims.get(name) for name in SUBJECT_CLAIMS)


def _timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class TokenStore:
    """Persist and retrieve the bearer token."""

    def __init__(self, config: ForgeConfig, clock: Callable[[], float] = time.time):
        """Initialize the store.

        Args:
            config: Runtime configuration (home dir, token override)
            clock: Returns the current UNIX time; injected in tests
        """
        self.config = config
        self.clock = clock
        self.credential_file: Path = config.credential_file
        self.key_file: Path = config.key_file
        self._ensure_home()
        self.master_key = self._load_master_key()

    def _ensure_home(self) -> None:
        try:
            self.config.home_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.config.home_dir, 0o700)
        except OSError as e:
            logger.warning(f"Could not set secure permissions on {self.config.home_dir}: {e}")

    def _load_master_key(self) -> bytes:
        """Read the master key, generating it on first use."""
        try:
            if self.key_file.exists():
                key = self.key_file.read_bytes()
                if len(key) == KEY_LENGTH:
                    return key
                logger.warning("Master key has unexpected length, generating a new one")

            key = AESGCM.generate_key(bit_length=KEY_LENGTH * 8)
            _write_private(self.key_file, key)
            return key
        except OSError as e:
            logger.warning(f"Could not manage master key ({e}); using host-derived key")
            seed = f"{getpass.getuser()}{socket.gethostname()}".encode()
            return hashlib.sha256(seed).digest()

    # Encryption

    def encrypt(self, token: str) -> str:
        """Encrypt a token as base64(IV || tag || ciphertext)."""
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self.master_key).encrypt(iv, token.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, payload: str) -> str:
        """Reverse :meth:`encrypt`.

        Raises:
            ValueError: If the payload is not valid ciphertext for this key
        """
        try:
            combined = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Credential payload is not base64: {e}") from e

        if len(combined) <= IV_LENGTH + TAG_LENGTH:
            raise ValueError("Credential payload too short")

        iv = combined[:IV_LENGTH]
        tag = combined[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = combined[IV_LENGTH + TAG_LENGTH:]
        try:
            plain = AESGCM(self.master_key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise ValueError("Credential authentication tag mismatch") from e
        return plain.decode("utf-8")

    # Persistence

    def _load_record(self) -> Optional[StoredCredential]:
        """Read the credential file and resolve its variant.

        Returns:
            StoredCredential, or None when nothing usable is stored

        Raises:
            ValueError: If the file exists but is not a credential record
        """
        if not self.credential_file.exists():
            return None

        try:
            data = json.loads(self.credential_file.read_text())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"Credential file is corrupt: {e}") from e

        if not isinstance(data, dict):
            raise ValueError("Credential file is not a JSON object")

        token = data.get("token")
        if not token:
            return None

        kind = "encrypted" if data.get("encrypted") else "plaintext"
        return StoredCredential(kind=kind, payload=token)

    def _resolve(self, record: StoredCredential) -> str:
        """Turn a stored variant into a raw token."""
        if record.kind == "plaintext":
            logger.debug("Found legacy plaintext token, re-saving encrypted")
            if is_valid_jwt(record.payload, now=self.clock()):
                self.save_token(record.payload)
            return record.payload

        try:
            return self.decrypt(record.payload)
        except ValueError:
            logger.warning("Token decryption failed, assuming plaintext format")
            return record.payload

    def save_token(self, token: str) -> None:
        """Validate, encrypt and persist a token.

        Raises:
            TokenFormatError: If the token is not a valid, unexpired JWT
        """
        if not is_valid_jwt(token, now=self.clock()):
            raise TokenFormatError("Invalid JWT token format")

        try:
            stored = self.encrypt(token)
            encrypted = True
        except Exception as e:
            logger.warning(f"Token encryption failed ({e}), storing in plaintext")
            stored = token
            encrypted = False

        record = {
            "token": stored,
            "encrypted": encrypted,
            "timestamp": int(self.clock() * 1000),
        }
        _write_private(self.credential_file, json.dumps(record, indent=2).encode("utf-8"))
        logger.debug(f"Token saved to {self.credential_file}")

    def get_token(self) -> Optional[str]:
        """Return a valid token or None.

        The FORGEKIT_TOKEN override wins when it is a valid JWT. Otherwise the
        stored record is decrypted and validated; invalid records are removed.
        """
        now = self.clock()
        override = self.config.token_override
        if override:
            if is_valid_jwt(override, now=now):
                return override
            logger.warning("FORGEKIT_TOKEN is not a valid JWT, ignoring it")

        try:
            record = self._load_record()
        except ValueError as e:
            logger.warning(f"{e}; discarding stored credential")
            self.clear_token()
            return None

        if record is None:
            return None

        token = self._resolve(record)
        if is_valid_jwt(token, now=now):
            return token

        logger.debug("Stored token is invalid or expired; removing it")
        self.clear_token()
        return None

    def clear_token(self) -> bool:
        """Delete the stored credential.

        Returns:
            True if a credential file was removed
        """
        try:
            self.credential_file.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Token cleared")
        return True

    def get_token_info(self) -> Optional[TokenInfo]:
        """Return display claims of the current token, or None."""
        token = self.get_token()
        if not token:
            return None

        claims = decode_claims(token)
        if claims is None:
            return None

        user_id = next((claims[name] for name in SUBJECT_CLAIMS if claims.get(name)), None)
        return TokenInfo(
            user_id=str(user_id),
            email=claims.get("email"),
            expires_at=_timestamp(claims.get("exp")),
            issued_at=_timestamp(claims.get("iat")),
        )


def _write_private(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, 0o600)
