"""
Payload codec for the `enc_*` byte fields.

Roles exchange structured payloads (address lists, target profiles, local
queries, jobs, rows) as bytes. In plaintext mode the bytes are UTF-8 JSON; in
encrypted mode the same JSON bytes go through a Cipher. Key management and the
cipher itself belong to the enclave platform, so only the interface lives here.
"""
import json
from abc import ABC, abstractmethod
from typing import Any, Optional

from dispers.shared.errors import EncryptionUnavailableError, PayloadDecodeError


class Cipher(ABC):
    """Symmetric encryption provided by the enclave platform."""

    @abstractmethod
    def encrypt(self, plaintext: bytes) -> bytes:
        pass

    @abstractmethod
    def decrypt(self, ciphertext: bytes) -> bytes:
        pass


class PayloadCodec:
    """
    Seals and opens structured payloads.

    The codec never looks inside ciphertext: it only hands bytes to the
    configured cipher when a message is flagged encrypted.
    """

    def __init__(self, cipher: Optional[Cipher] = None):
        """
        Initialize codec.

        Args:
            cipher: Cipher used for encrypted messages; None for plaintext only
        """
        self.cipher = cipher

    def _require_cipher(self) -> Cipher:
        if self.cipher is None:
            raise EncryptionUnavailableError(
                "Message is flagged encrypted but no cipher is configured"
            )
        return self.cipher

    def open_bytes(self, blob: bytes, is_encrypted: bool) -> bytes:
        """Return the plaintext bytes of a payload."""
        if is_encrypted:
            return self._require_cipher().decrypt(blob)
        return blob

    def seal_bytes(self, data: bytes, is_encrypted: bool) -> bytes:
        """Return the wire bytes of a plaintext payload."""
        if is_encrypted:
            return self._require_cipher().encrypt(data)
        return data

    def open(self, blob: Optional[bytes], is_encrypted: bool, what: str = "payload") -> Any:
        """
        Decode a payload into its JSON structure.

        Args:
            blob: Wire bytes
            is_encrypted: Whether `blob` is ciphertext
            what: Field name used in error messages

        Returns:
            The decoded JSON value

        Raises:
            PayloadDecodeError: Missing payload or invalid JSON
            EncryptionUnavailableError: Encrypted payload without a cipher
        """
        if blob is None:
            raise PayloadDecodeError(f"Missing {what}")
        data = self.open_bytes(blob, is_encrypted)
        try:
            return json.loads(data)
        except RecursionError as e:
            raise PayloadDecodeError(f"Cannot decode {what}: nested too deeply") from e
        except ValueError as e:
            raise PayloadDecodeError(f"Cannot decode {what}: {e}") from e

    def seal(self, obj: Any, is_encrypted: bool) -> bytes:
        """Encode a JSON-compatible value into wire bytes."""
        return self.seal_bytes(json.dumps(obj).encode("utf-8"), is_encrypted)
