"""
Local full-text search over decrypted direct messages.

Plaintext only ever exists on the device: the recent history is fetched
as ciphertext, bulk-decrypted with the user's own key and searched in
memory.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from seal.bulk import BulkDecryptor
from seal.interfaces import MessageStore
from seal.keys import KeyManager
from seal.messages import EncryptedPayload
from seal.primitives import EncodingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchableMessage:
    id: Optional[int]
    sender_id: str
    recipient_id: str
    peer_id: str
    content: str
    created_at: Optional[str]
    is_sent: bool


class MessageSearch:
    """
    Search index for one user's direct messages.

    Args:
        user_id: Signed-in user
        key_manager: Source of the user's private key
        messages: Ciphertext persistence
        decryptor: Bulk decryptor; its window bounds how much history is indexed
    """

    def __init__(
        self,
        user_id: str,
        key_manager: KeyManager,
        messages: MessageStore,
        decryptor: Optional[BulkDecryptor] = None,
    ):
        self.user_id = user_id
        self.key_manager = key_manager
        self.messages = messages
        self.decryptor = decryptor or BulkDecryptor()
        self.entries: List[SearchableMessage] = []
        self.skipped = 0

    async def refresh(self) -> int:
        """
        Rebuild the index from the most recent messages.

        Rows that are malformed or cannot be decrypted are skipped.

        Returns:
            Number of indexed messages

        Raises:
            KeyNotFoundError: If this device holds no private key for the user
        """
        private_key = await self.key_manager.get_private_key(self.user_id)
        rows = await self.messages.list_direct_messages(self.user_id, limit=self.decryptor.window)

        parsed_rows = []
        payloads = []
        malformed = 0
        for row in rows:
            try:
                payloads.append(EncryptedPayload.from_dict(row))
            except EncodingError:
                malformed += 1
                continue
            parsed_rows.append(row)

        result = await self.decryptor.decrypt_batch(payloads, private_key)

        entries = []
        for index, content in zip(result.indices, result.plaintexts):
            row = parsed_rows[index]
            is_sent = row['sender_id'] == self.user_id
            entries.append(SearchableMessage(
                id=row.get('id'),
                sender_id=row['sender_id'],
                recipient_id=row['recipient_id'],
                peer_id=row['recipient_id'] if is_sent else row['sender_id'],
                content=content,
                created_at=row.get('created_at'),
                is_sent=is_sent
            ))

        self.entries = entries
        self.skipped = malformed + result.skipped
        logger.info("Indexed %d messages for search, skipped %d", len(entries), self.skipped)
        return len(entries)

    def search(self, query: str) -> List[SearchableMessage]:
        """Case-insensitive match on message text or conversation partner"""
        needle = query.strip().lower()
        if not needle:
            return []
        return [
            entry for entry in self.entries
            if needle in entry.content.lower() or needle in entry.peer_id.lower()
        ]
