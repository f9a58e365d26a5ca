"""Shared fixtures: identity key pairs and an in-memory directory."""

from typing import Dict, List, Optional

import pytest

from seal.keys import KeyManager, KeyPair, generate_key_pair
from sealclient.keystore import KeyStore
from sealclient.session import ChatSession


class MemoryDirectory:
    """Identity directory, message store and group directory kept in dicts"""

    def __init__(self):
        self.public_keys: Dict[str, bytes] = {}
        self.direct_rows: List[Dict] = []
        self.group_rows: List[Dict] = []
        self.groups: Dict[str, Dict] = {}
        self.members: Dict[tuple, Dict] = {}
        self._next_id = 1

    def _id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    async def get_public_key(self, user_id: str) -> Optional[bytes]:
        return self.public_keys.get(user_id)

    async def publish_public_key(self, user_id: str, public_key: bytes):
        self.public_keys[user_id] = public_key

    async def save_direct_message(self, row: Dict) -> Dict:
        stored = {'id': self._id(), 'status': 'sent', 'created_at': None, 'read_at': None, **row}
        self.direct_rows.append(stored)
        return stored

    async def list_direct_messages(self, user_id: str, peer_id: Optional[str] = None, limit: int = 500) -> List[Dict]:
        rows = []
        for row in reversed(self.direct_rows):
            parties = (row['sender_id'], row['recipient_id'])
            if user_id not in parties:
                continue
            if peer_id is not None and peer_id not in parties:
                continue
            rows.append(row)
        return rows[:limit]

    async def mark_read(self, message_id: int):
        for row in self.direct_rows:
            if row['id'] == message_id:
                row['status'] = 'read'
                row['read_at'] = 'now'

    async def save_group_message(self, row: Dict) -> Dict:
        stored = {'id': self._id(), 'created_at': None, **row}
        self.group_rows.append(stored)
        return stored

    async def list_group_messages(self, group_id: str, limit: int = 500) -> List[Dict]:
        return [r for r in reversed(self.group_rows) if r['group_id'] == group_id][:limit]

    async def create_group(self, group_id: str, name: str, created_by: str, records: List[Dict]):
        self.groups[group_id] = {'name': name, 'created_by': created_by}
        for record in records:
            self.members[(group_id, record['member_id'])] = dict(record)

    async def add_group_member(self, record: Dict):
        self.members[(record['group_id'], record['member_id'])] = dict(record)

    async def get_group_key_record(self, group_id: str, member_id: str) -> Optional[Dict]:
        return self.members.get((group_id, member_id))

    async def list_group_members(self, group_id: str) -> List[str]:
        return [member_id for (gid, member_id) in self.members if gid == group_id]


@pytest.fixture(scope="session")
def alice() -> KeyPair:
    return generate_key_pair()


@pytest.fixture(scope="session")
def bob() -> KeyPair:
    return generate_key_pair()


@pytest.fixture(scope="session")
def carol() -> KeyPair:
    return generate_key_pair()


@pytest.fixture
def directory() -> MemoryDirectory:
    return MemoryDirectory()


@pytest.fixture
def key_store(tmp_path) -> KeyStore:
    return KeyStore(str(tmp_path / "keys.db"))


@pytest.fixture
def make_session(tmp_path, directory):
    """Build a session for a user on their own device"""
    def factory(user_id: str) -> ChatSession:
        store = KeyStore(str(tmp_path / f"{user_id}.db"))
        return ChatSession(user_id, KeyManager(store, directory), directory, directory)
    return factory
