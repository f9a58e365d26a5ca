"""
Shared-key encryption for group chats.

A group has exactly one AES-256-GCM key. It is wrapped once per member
with that member's RSA public key; messages are then encrypted with the
shared key directly, so sending costs no asymmetric operation.

The key is never rotated. A member who is removed but kept the
unwrapped key can still read later messages.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List

from .messages import DecryptResult, Err, Ok
from .primitives import (
    SYMMETRIC_KEY_SIZE,
    DecryptionError,
    EncodingError,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    b64encode,
    check_iv,
    decode_field,
    decode_utf8,
    generate_iv,
    generate_symmetric_key,
    unwrap_key,
    wrap_key,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupKeyRecord:
    """One member's wrapped copy of the group key"""
    group_id: str
    member_id: str
    encrypted_group_key: bytes

    def to_dict(self) -> Dict:
        return {
            'group_id': self.group_id,
            'member_id': self.member_id,
            'encrypted_group_key': b64encode(self.encrypted_group_key)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'GroupKeyRecord':
        for name in ('group_id', 'member_id'):
            if not data.get(name):
                raise EncodingError(f"Missing field: {name}")
        return cls(
            group_id=data['group_id'],
            member_id=data['member_id'],
            encrypted_group_key=decode_field(data, 'encrypted_group_key')
        )


@dataclass(frozen=True)
class EncryptedGroupPayload:
    """Group message: no per-message key, only ciphertext and IV"""
    ciphertext: bytes
    iv: bytes

    def to_dict(self) -> Dict:
        return {
            'ciphertext': b64encode(self.ciphertext),
            'iv': b64encode(self.iv)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EncryptedGroupPayload':
        """
        Raises:
            EncodingError: On missing fields, bad base64 or a wrong-size IV
        """
        return cls(
            ciphertext=decode_field(data, 'ciphertext'),
            iv=check_iv(decode_field(data, 'iv'))
        )


def encrypt_group_payload(plaintext: bytes, group_key: bytes) -> EncryptedGroupPayload:
    iv = generate_iv()
    return EncryptedGroupPayload(ciphertext=aes_gcm_encrypt(group_key, iv, plaintext), iv=iv)


def decrypt_group_payload(payload: EncryptedGroupPayload, group_key: bytes) -> bytes:
    return aes_gcm_decrypt(group_key, payload.iv, payload.ciphertext)


class GroupKeyManager:
    """
    Creates, distributes and uses group keys.
    """

    def create_group_key(self) -> bytes:
        """Generate the single 256-bit key for a new group"""
        return generate_symmetric_key()

    async def wrap_for_member(self, group_key: bytes, member_public_key: bytes) -> bytes:
        """
        Wrap the group key for one member.

        Called for every member at creation and again for each member
        added later. Existing members' copies are left alone.
        """
        if len(group_key) != SYMMETRIC_KEY_SIZE:
            raise EncodingError("Group key must be 32 bytes")
        return await asyncio.to_thread(wrap_key, member_public_key, group_key)

    async def unwrap_group_key(self, wrapped: bytes, own_private_key: bytes) -> bytes:
        """
        Recover the raw group key from our own wrapped copy.

        Raises:
            DecryptionError: If the copy was not wrapped for our key
        """
        return await asyncio.to_thread(unwrap_key, own_private_key, wrapped)

    async def distribute(
        self, group_id: str, group_key: bytes, members: Dict[str, bytes]
    ) -> List[GroupKeyRecord]:
        """
        Wrap the group key for each member.

        Args:
            group_id: Group identifier
            group_key: Raw shared key
            members: member_id -> public key

        Returns:
            One GroupKeyRecord per member
        """
        wrapped = await asyncio.gather(
            *(self.wrap_for_member(group_key, public_key) for public_key in members.values())
        )
        records = [
            GroupKeyRecord(group_id=group_id, member_id=member_id, encrypted_group_key=key)
            for member_id, key in zip(members.keys(), wrapped)
        ]
        logger.info("Distributed key for group %s to %d members", group_id, len(records))
        return records

    async def encrypt_group_message(self, plaintext: str, group_key: bytes) -> EncryptedGroupPayload:
        """
        Encrypt text with the shared key and a fresh IV.

        Raises:
            EncodingError: If the group key is not 32 bytes
        """
        return await asyncio.to_thread(encrypt_group_payload, plaintext.encode("utf-8"), group_key)

    async def decrypt_group_message(self, payload: EncryptedGroupPayload, group_key: bytes) -> str:
        """
        Raises:
            DecryptionError: If the payload cannot be authenticated
        """
        data = await asyncio.to_thread(decrypt_group_payload, payload, group_key)
        return decode_utf8(data)

    async def decrypt_group_result(self, payload: EncryptedGroupPayload, group_key: bytes) -> DecryptResult:
        """Like decrypt_group_message, but returns Ok(text) or Err(DecryptionError)"""
        try:
            return Ok(await self.decrypt_group_message(payload, group_key))
        except DecryptionError as e:
            return Err(e)
