"""
Credential Vault

Stores the Fatture in Cloud API key and company id encrypted at rest.

The encryption key is derived with PBKDF2 from the installation identifier
and a static salt: stable across restarts, unique per installation. Values are
encrypted with Fernet (AES-CBC + HMAC), so tampered ciphertexts are rejected
instead of decrypting to garbage.
"""

import base64
import json
import os
import re
import threading
from pathlib import Path
from typing import Any, Protocol

import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, SecretStr

from fic_sync.errors import MissingCredentialsError, ValidationError, VaultError

logger = structlog.get_logger(__name__)


API_KEY_NAME = "FIC_API_KEY"
COMPANY_ID_NAME = "FIC_COMPANY_ID"

STATIC_SALT = b"FIC-SYNC-2025"
API_KEY_MIN_LENGTH = 30
API_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_\-.]+$")
UNSAFE_CHARS = re.compile(r"[<>'\";]")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def validate_api_key(api_key: Any) -> str:
    """Return the key unchanged, or raise ValidationError if its shape is wrong."""
    if not api_key or not isinstance(api_key, str):
        raise ValidationError("API key is missing or not a string")
    if len(api_key) < API_KEY_MIN_LENGTH:
        raise ValidationError(
            f"API key too short (minimum {API_KEY_MIN_LENGTH} characters)"
        )
    if not API_KEY_PATTERN.match(api_key):
        raise ValidationError("API key contains invalid characters")
    return api_key


def validate_company_id(company_id: Any) -> int:
    """Return the company id as a positive int, or raise ValidationError."""
    try:
        value = int(str(company_id).strip())
    except (TypeError, ValueError):
        raise ValidationError("Company ID must be a positive number") from None
    if value <= 0:
        raise ValidationError("Company ID must be a positive number")
    return value


def sanitize_input(value: Any) -> Any:
    """Strip angle brackets, quotes and semicolons from strings."""
    if not isinstance(value, str):
        return value
    return UNSAFE_CHARS.sub("", value).strip()


def mask_api_key(api_key: str | None) -> str:
    """Display-safe form of a key: first 4 + '...' + last 4."""
    if not api_key or len(api_key) < 8:
        return "***"
    return f"{api_key[:4]}...{api_key[-4:]}"


# ---------------------------------------------------------------------------
# Secret stores
# ---------------------------------------------------------------------------

class SecretStore(Protocol):
    """Key/value persistence for already-encrypted values."""

    def read(self, key: str) -> str | None: ...

    def write(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemorySecretStore:
    """Process-local store, used by tests and dry runs."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def read(self, key: str) -> str | None:
        return self._data.get(key)

    def write(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileSecretStore:
    """
    JSON file store with atomic writes and owner-only permissions.

    Usage:
        store = JsonFileSecretStore(Path.home() / ".fic-sync" / "secrets.json")
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, "r") as f:
            return json.load(f)

    def _dump(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2)
        os.chmod(temp_file, 0o600)
        temp_file.replace(self.path)

    def read(self, key: str) -> str | None:
        with self._lock:
            return self._load().get(key)

    def write(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._dump(data)


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

class CredentialVault:
    """
    Encrypts values before they reach the store and decrypts them on read.

    Example:
        vault = CredentialVault(JsonFileSecretStore(path), installation_id)
        vault.save("FIC_API_KEY", api_key)
        api_key = vault.get("FIC_API_KEY")
    """

    ITERATIONS = 100_000
    KEY_LENGTH = 32

    def __init__(
        self,
        store: SecretStore,
        installation_id: str,
        salt: bytes = STATIC_SALT,
    ):
        if not installation_id:
            raise ValueError("installation_id is required")

        self.store = store
        self._fernet = Fernet(self._derive_key(installation_id, salt))

    def _derive_key(self, installation_id: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_LENGTH,
            salt=salt,
            iterations=self.ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(installation_id.encode()))

    def encrypt(self, plain_text: str) -> str:
        if not plain_text:
            return ""
        return self._fernet.encrypt(plain_text.encode("utf-8")).decode("ascii")

    def decrypt(self, cipher_text: str) -> str:
        if not cipher_text:
            return ""
        try:
            return self._fernet.decrypt(cipher_text.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            logger.error("Decryption failed", error=type(e).__name__)
            raise VaultError("Unable to decrypt stored credential") from e

    def save(self, key: str, value: str) -> None:
        self.store.write(key, self.encrypt(value))
        logger.info("Credential saved", key=key)

    def get(self, key: str) -> str | None:
        encrypted = self.store.read(key)
        if encrypted is None:
            return None
        return self.decrypt(encrypted)

    def delete(self, key: str) -> None:
        self.store.remove(key)
        logger.info("Credential deleted", key=key)


# ---------------------------------------------------------------------------
# Credential workflow
# ---------------------------------------------------------------------------

class Credentials(BaseModel):
    """Decrypted credentials for one installation."""

    api_key: SecretStr
    company_id: int

    @property
    def masked_key(self) -> str:
        return mask_api_key(self.api_key.get_secret_value())


def save_credentials(vault: CredentialVault, api_key: str, company_id: Any) -> Credentials:
    """Validate, sanitize and store both secrets."""
    validate_api_key(api_key)
    company = validate_company_id(company_id)
    api_key = sanitize_input(api_key)

    vault.save(API_KEY_NAME, api_key)
    vault.save(COMPANY_ID_NAME, str(company))

    logger.info("Credentials saved", api_key=mask_api_key(api_key), company_id=company)
    return Credentials(api_key=SecretStr(api_key), company_id=company)


def load_credentials(vault: CredentialVault) -> Credentials:
    """
    Read and validate stored credentials.

    Raises:
        MissingCredentialsError: If either secret is absent
        ValidationError: If a stored secret has the wrong shape
    """
    api_key = vault.get(API_KEY_NAME)
    company_id = vault.get(COMPANY_ID_NAME)

    if not api_key or not company_id:
        raise MissingCredentialsError(
            "Missing credentials. Configure the API key and company ID first."
        )

    validate_api_key(api_key)
    return Credentials(
        api_key=SecretStr(api_key),
        company_id=validate_company_id(company_id),
    )


def delete_credentials(vault: CredentialVault) -> None:
    vault.delete(API_KEY_NAME)
    vault.delete(COMPANY_ID_NAME)
    logger.info("Credentials deleted")


def validate_config(vault: CredentialVault) -> list[str]:
    """List human-readable problems with the stored credentials."""
    errors: list[str] = []

    api_key = vault.get(API_KEY_NAME)
    if not api_key:
        errors.append("API key missing")
    else:
        try:
            validate_api_key(api_key)
        except ValidationError as e:
            errors.append(f"API key: {e}")

    company_id = vault.get(COMPANY_ID_NAME)
    if not company_id:
        errors.append("Company ID missing")
    else:
        try:
            validate_company_id(company_id)
        except ValidationError as e:
            errors.append(f"Company ID: {e}")

    return errors
