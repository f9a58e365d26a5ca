"""
Hybrid encryption for direct messages.

Every message gets its own AES-256-GCM key and IV. The key is wrapped
with the recipient's RSA public key and stored next to the ciphertext;
the raw key is never kept.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Generic, TypeVar, Union

from .primitives import (
    DecryptionError,
    EncodingError,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    b64decode,
    b64encode,
    check_iv,
    decode_field,
    decode_utf8,
    generate_iv,
    generate_symmetric_key,
    unwrap_key,
    wrap_key,
)

T = TypeVar("T")

# Separator used by the legacy single-column content format
COMBINED_SEPARATOR = "|"


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful decryption"""
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed decryption; never carries partial plaintext"""
    error: DecryptionError

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise self.error


DecryptResult = Union[Ok[str], Err]


@dataclass(frozen=True)
class EncryptedPayload:
    """
    Unit persisted for one direct message.

    Attributes:
        ciphertext: AES-GCM ciphertext + tag
        iv: 12-byte nonce
        wrapped_key: Message key encrypted to the recipient's public key
    """
    ciphertext: bytes
    iv: bytes
    wrapped_key: bytes

    def to_dict(self) -> Dict:
        """Convert to base64 fields for storage/transport"""
        return {
            'ciphertext': b64encode(self.ciphertext),
            'iv': b64encode(self.iv),
            'wrapped_key': b64encode(self.wrapped_key)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EncryptedPayload':
        """
        Create from base64 fields.

        Raises:
            EncodingError: On missing fields, bad base64 or a wrong-size IV
        """
        return cls(
            ciphertext=decode_field(data, 'ciphertext'),
            iv=check_iv(decode_field(data, 'iv')),
            wrapped_key=decode_field(data, 'wrapped_key')
        )

    def to_combined(self) -> str:
        """Legacy single-column form: '<ciphertext>|<wrapped_key>'"""
        return f"{b64encode(self.ciphertext)}{COMBINED_SEPARATOR}{b64encode(self.wrapped_key)}"

    @classmethod
    def from_combined(cls, content: str, iv: str) -> 'EncryptedPayload':
        """
        Parse the legacy '<ciphertext>|<wrapped_key>' column plus its IV.

        Raises:
            EncodingError: If either half is missing or not base64
        """
        ciphertext, sep, wrapped_key = content.partition(COMBINED_SEPARATOR)
        if not sep or not ciphertext or not wrapped_key:
            raise EncodingError("Combined content must be '<ciphertext>|<wrapped_key>'")
        return cls(
            ciphertext=b64decode(ciphertext),
            iv=check_iv(b64decode(iv)),
            wrapped_key=b64decode(wrapped_key)
        )


def encrypt_payload(plaintext: bytes, recipient_public_key: bytes) -> EncryptedPayload:
    """
    Hybrid-encrypt bytes for one recipient.

    Args:
        plaintext: Content to protect
        recipient_public_key: Recipient's SPKI DER public key

    Returns:
        EncryptedPayload with a fresh key and IV
    """
    message_key = generate_symmetric_key()
    iv = generate_iv()
    ciphertext = aes_gcm_encrypt(message_key, iv, plaintext)
    wrapped_key = wrap_key(recipient_public_key, message_key)
    return EncryptedPayload(ciphertext=ciphertext, iv=iv, wrapped_key=wrapped_key)


def decrypt_payload(payload: EncryptedPayload, own_private_key: bytes) -> bytes:
    """
    Reverse encrypt_payload.

    Raises:
        DecryptionError: On a wrong key, tag mismatch or malformed field
    """
    message_key = unwrap_key(own_private_key, payload.wrapped_key)
    return aes_gcm_decrypt(message_key, payload.iv, payload.ciphertext)


class MessageCipher:
    """
    Direct-message encryption.

    Stateless: every call is self-contained, so calls may run
    concurrently.
    """

    async def encrypt(self, plaintext: str, recipient_public_key: bytes) -> EncryptedPayload:
        """Encrypt text for the holder of recipient_public_key"""
        return await asyncio.to_thread(
            encrypt_payload, plaintext.encode("utf-8"), recipient_public_key
        )

    async def decrypt(self, payload: EncryptedPayload, own_private_key: bytes) -> str:
        """
        Decrypt a message addressed to us.

        Returns the exact original text or raises.

        Raises:
            DecryptionError: If the payload cannot be authenticated
        """
        data = await asyncio.to_thread(decrypt_payload, payload, own_private_key)
        return decode_utf8(data)

    async def decrypt_result(self, payload: EncryptedPayload, own_private_key: bytes) -> DecryptResult:
        """Like decrypt, but returns Ok(text) or Err(DecryptionError)"""
        try:
            return Ok(await self.decrypt(payload, own_private_key))
        except DecryptionError as e:
            return Err(e)

    async def encrypt_bytes(self, data: bytes, recipient_public_key: bytes) -> EncryptedPayload:
        """Encrypt binary content such as a file attachment"""
        return await asyncio.to_thread(encrypt_payload, data, recipient_public_key)

    async def decrypt_bytes(self, payload: EncryptedPayload, own_private_key: bytes) -> bytes:
        """
        Raises:
            DecryptionError: If the payload cannot be authenticated
        """
        return await asyncio.to_thread(decrypt_payload, payload, own_private_key)
