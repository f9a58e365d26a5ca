"""
Collaborator interfaces consumed by the encryption core.

The core never talks to a network or a database itself. Key custody,
the public-key directory, message persistence and group membership are
injected as objects satisfying these protocols.
"""

from typing import Dict, List, Optional, Protocol


class PrivateKeyStore(Protocol):
    """Local, per-device custody of private keys"""

    async def store(self, user_id: str, private_key: bytes) -> None: ...

    async def get(self, user_id: str) -> Optional[bytes]: ...

    async def delete(self, user_id: str) -> None: ...


class IdentityDirectory(Protocol):
    """Public-key directory (user profile records)"""

    async def get_public_key(self, user_id: str) -> Optional[bytes]: ...

    async def publish_public_key(self, user_id: str, public_key: bytes) -> None: ...


class MessageStore(Protocol):
    """
    Ciphertext persistence.

    Direct rows: {sender_id, recipient_id, ciphertext, iv, wrapped_key,
    created_at, status, read_at}. Group rows: {group_id, sender_id,
    ciphertext, iv, created_at}. Byte fields are base64 text.
    """

    async def save_direct_message(self, row: Dict) -> Dict: ...

    async def list_direct_messages(
        self, user_id: str, peer_id: Optional[str] = None, limit: int = 500
    ) -> List[Dict]: ...

    async def mark_read(self, message_id: int) -> None: ...

    async def save_group_message(self, row: Dict) -> Dict: ...

    async def list_group_messages(self, group_id: str, limit: int = 500) -> List[Dict]: ...


class GroupDirectory(Protocol):
    """Group membership rows: {group_id, member_id, encrypted_group_key}"""

    async def create_group(
        self, group_id: str, name: str, created_by: str, records: List[Dict]
    ) -> None: ...

    async def add_group_member(self, record: Dict) -> None: ...

    async def get_group_key_record(self, group_id: str, member_id: str) -> Optional[Dict]: ...

    async def list_group_members(self, group_id: str) -> List[str]: ...
