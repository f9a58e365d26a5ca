"""
Chat session for one signed-in user.

Ties the encryption core to the directory: bootstraps the identity on
sign-in, encrypts outgoing direct and group messages, and decrypts
history into explicit per-message results.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from seal.groups import EncryptedGroupPayload, GroupKeyManager, GroupKeyRecord
from seal.interfaces import GroupDirectory, MessageStore
from seal.keys import KeyManager, KeyPair
from seal.messages import DecryptResult, EncryptedPayload, Err, MessageCipher
from seal.primitives import DecryptionError, EncodingError, KeyNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceivedMessage:
    """A stored message and the outcome of decrypting it"""
    id: Optional[int]
    sender_id: str
    created_at: Optional[str]
    content: DecryptResult


def _malformed(e: EncodingError) -> Err:
    return Err(DecryptionError(f"Malformed message row: {e}"))


class ChatSession:
    """
    Encrypted messaging for one user on this device.

    Args:
        user_id: Signed-in user
        key_manager: Identity keys (local key store + public directory)
        messages: Ciphertext persistence
        groups: Group membership and wrapped group keys
        on_close: Coroutine function releasing the transport behind
            messages and groups
    """

    def __init__(
        self,
        user_id: str,
        key_manager: KeyManager,
        messages: MessageStore,
        groups: GroupDirectory,
        cipher: Optional[MessageCipher] = None,
        group_keys: Optional[GroupKeyManager] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.user_id = user_id
        self.key_manager = key_manager
        self.messages = messages
        self.groups = groups
        self.cipher = cipher or MessageCipher()
        self.group_keys = group_keys or GroupKeyManager()
        # Unwrapped group keys for this session only
        self._group_key_cache: Dict[str, bytes] = {}
        self._on_close = on_close

    async def close(self):
        """Drop cached group keys and release the transport"""
        self._group_key_cache.clear()
        if self._on_close is not None:
            await self._on_close()

    async def sign_in(self) -> KeyPair:
        """
        Bootstrap the identity after authentication.

        Raises:
            KeyNotFoundError: If a key is published but this device lost it
        """
        return await self.key_manager.initialize_identity(self.user_id)

    async def send_direct(self, recipient_id: str, text: str) -> Dict:
        """
        Encrypt a message to recipient_id and store it.

        Returns:
            The stored row
        """
        public_key = await self.key_manager.get_public_key(recipient_id)
        payload = await self.cipher.encrypt(text, public_key)
        row = {'sender_id': self.user_id, 'recipient_id': recipient_id, **payload.to_dict()}
        return await self.messages.save_direct_message(row)

    async def read_direct(self, peer_id: str, limit: int = 50, mark_read: bool = False) -> List[ReceivedMessage]:
        """
        Decrypt the conversation with peer_id, oldest first.

        Messages we sent were encrypted to the peer's key, so they come
        back as Err like any other message we cannot open.
        """
        private_key = await self.key_manager.get_private_key(self.user_id)
        rows = await self.messages.list_direct_messages(self.user_id, peer_id=peer_id, limit=limit)

        received = []
        for row in reversed(rows):
            try:
                payload = EncryptedPayload.from_dict(row)
            except EncodingError as e:
                content = _malformed(e)
            else:
                content = await self.cipher.decrypt_result(payload, private_key)

            if mark_read and content.ok and row.get('recipient_id') == self.user_id and not row.get('read_at'):
                await self.messages.mark_read(row['id'])

            received.append(ReceivedMessage(
                id=row.get('id'),
                sender_id=row.get('sender_id', ''),
                created_at=row.get('created_at'),
                content=content
            ))
        return received

    async def create_group(self, name: str, member_ids: Iterable[str], group_id: Optional[str] = None) -> str:
        """
        Create a group, wrapping a fresh group key for the creator and
        every initial member.

        Returns:
            The group id
        """
        group_id = group_id or uuid.uuid4().hex
        member_ids = [self.user_id] + [m for m in dict.fromkeys(member_ids) if m != self.user_id]

        public_keys = {
            member_id: await self.key_manager.get_public_key(member_id)
            for member_id in member_ids
        }
        group_key = self.group_keys.create_group_key()
        records = await self.group_keys.distribute(group_id, group_key, public_keys)

        await self.groups.create_group(group_id, name, self.user_id, [r.to_dict() for r in records])
        self._group_key_cache[group_id] = group_key
        logger.info("Created group %s", group_id)
        return group_id

    async def group_key(self, group_id: str) -> bytes:
        """
        Unwrap our copy of a group's key.

        Raises:
            KeyNotFoundError: If we hold no copy for this group
            DecryptionError: If our copy does not open with our private key
        """
        if group_id in self._group_key_cache:
            return self._group_key_cache[group_id]

        row = await self.groups.get_group_key_record(group_id, self.user_id)
        if row is None:
            raise KeyNotFoundError(f"No group key for {self.user_id} in {group_id}")
        record = GroupKeyRecord.from_dict(row)

        private_key = await self.key_manager.get_private_key(self.user_id)
        group_key = await self.group_keys.unwrap_group_key(record.encrypted_group_key, private_key)
        self._group_key_cache[group_id] = group_key
        return group_key

    async def add_member(self, group_id: str, member_id: str):
        """Rewrap the existing group key for a new member"""
        group_key = await self.group_key(group_id)
        public_key = await self.key_manager.get_public_key(member_id)
        wrapped = await self.group_keys.wrap_for_member(group_key, public_key)
        record = GroupKeyRecord(group_id=group_id, member_id=member_id, encrypted_group_key=wrapped)
        await self.groups.add_group_member(record.to_dict())
        logger.info("Added %s to group %s", member_id, group_id)

    async def send_group(self, group_id: str, text: str) -> Dict:
        """Encrypt a message with the group key and store it"""
        group_key = await self.group_key(group_id)
        payload = await self.group_keys.encrypt_group_message(text, group_key)
        row = {'group_id': group_id, 'sender_id': self.user_id, **payload.to_dict()}
        return await self.messages.save_group_message(row)

    async def read_group(self, group_id: str, limit: int = 50) -> List[ReceivedMessage]:
        """Decrypt a group's history, oldest first"""
        group_key = await self.group_key(group_id)
        rows = await self.messages.list_group_messages(group_id, limit=limit)

        received = []
        for row in reversed(rows):
            try:
                payload = EncryptedGroupPayload.from_dict(row)
            except EncodingError as e:
                content = _malformed(e)
            else:
                content = await self.group_keys.decrypt_group_result(payload, group_key)
            received.append(ReceivedMessage(
                id=row.get('id'),
                sender_id=row.get('sender_id', ''),
                created_at=row.get('created_at'),
                content=content
            ))
        return received
