"""Field-level encryption for sensitive audit details.

This module provides:
- EncryptionProvider: Protocol for the encryption collaborator
- EncryptedEnvelope / HashResult: Values exchanged with the provider
- FieldCipher: Encrypts allow-listed detail keys before write and
  decrypts them on read, degrading per field instead of failing the record

Stored format: each protected key holds the JSON text of an envelope; the
envelope's plaintext is the JSON text of the original value, so any JSON
value round-trips.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from typing import Any, Protocol, runtime_checkable

from compliance_monitor.audit.config import DECRYPTION_FAILED_PLACEHOLDER, REDACTED_VALUE
from compliance_monitor.errors import FieldEncryptionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Ciphertext plus the parameters needed to decrypt it."""

    ciphertext: str
    iv: str
    salt: str
    algorithm: str
    timestamp: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> EncryptedEnvelope | None:
        """Parse stored text, returning None when it is not an envelope."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict) or "ciphertext" not in data:
            return None
        try:
            return cls(**data)
        except TypeError:
            return None


@dataclass(frozen=True)
class HashResult:
    hash: str
    salt: str


@runtime_checkable
class EncryptionProvider(Protocol):
    """Encryption collaborator. Must be safe to call concurrently."""

    def encrypt(self, plaintext: str) -> EncryptedEnvelope: ...

    def decrypt(self, envelope: EncryptedEnvelope) -> str: ...

    def hash(self, value: str, salt: str | None = None) -> HashResult: ...


def mask_value(value: Any) -> str:
    """Mask a sensitive value, keeping first 2 and last 2 chars of strings.

    Args:
        value: The value to mask.

    Returns:
        Masked string, or "****" for short strings and non-string values.
    """
    if not isinstance(value, str) or len(value) < 4:
        return REDACTED_VALUE
    return f"{value[:2]}****{value[-2:]}"


class FieldCipher:
    """Applies the encryption provider to an allow-list of detail keys.

    Args:
        provider: Encryption collaborator
        sensitive_fields: Keys of the details mapping to protect
    """

    def __init__(self, provider: EncryptionProvider, sensitive_fields: Iterable[str]) -> None:
        self._provider = provider
        self.sensitive_fields: frozenset[str] = frozenset(sensitive_fields)

    def encrypt_field(self, field: str, value: Any) -> str:
        """Encrypt one value.

        Raises:
            FieldEncryptionError: If serialization or the provider fails
        """
        try:
            plaintext = json.dumps(value)
            envelope = self._provider.encrypt(plaintext)
            return envelope.to_json()
        except Exception as e:
            raise FieldEncryptionError(field, str(e)) from e

    def decrypt_field(self, field: str, stored: str) -> Any:
        """Decrypt one stored envelope.

        Raises:
            FieldEncryptionError: If the provider fails or the plaintext is not JSON
        """
        envelope = EncryptedEnvelope.from_json(stored)
        if envelope is None:
            raise FieldEncryptionError(field, "stored value is not an envelope")
        try:
            return json.loads(self._provider.decrypt(envelope))
        except Exception as e:
            raise FieldEncryptionError(field, str(e)) from e

    def protect(self, details: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
        """Encrypt every allow-listed key present in details.

        A field that fails is replaced by a masked redaction and reported
        back; the remaining fields are still processed.

        Args:
            details: Caller-supplied details mapping (not mutated)

        Returns:
            Tuple of (stored details, names of fields that failed)
        """
        protected = dict(details)
        failed: list[str] = []
        for key in sorted(self.sensitive_fields & protected.keys()):
            value = protected[key]
            if value is None:
                continue
            try:
                protected[key] = self.encrypt_field(key, value)
            except FieldEncryptionError as e:
                logger.error("Audit field encryption failed (field=%s): %s", key, e.reason)
                protected[key] = mask_value(value)
                failed.append(key)
        return protected, failed

    def reveal(self, stored: dict[str, Any]) -> dict[str, Any]:
        """Decrypt every allow-listed key holding an envelope.

        Values that are not envelopes (redactions written after an
        encryption failure) are returned as stored. An envelope that cannot
        be decrypted yields the placeholder.
        """
        revealed = dict(stored)
        for key in self.sensitive_fields & revealed.keys():
            value = revealed[key]
            if not isinstance(value, str) or EncryptedEnvelope.from_json(value) is None:
                continue
            try:
                revealed[key] = self.decrypt_field(key, value)
            except FieldEncryptionError as e:
                logger.warning("Audit field decryption failed (field=%s): %s", key, e.reason)
                revealed[key] = DECRYPTION_FAILED_PLACEHOLDER
        return revealed
