"""
Local private-key custody for the chat client.

Keys live in a per-device SQLite file and are never sent anywhere. When
a passphrase is configured, stored keys are additionally sealed at rest
with a key derived from it.
"""

import asyncio
import logging
import os
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from seal.primitives import DecryptionError

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100000
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16


class KeyStore:
    """
    Persistent key-value store of private keys, keyed by user id.

    Every operation runs in its own transaction on a fresh connection
    (open, act, commit or roll back, close). Operations on the same user
    id are serialized; different user ids proceed in parallel.
    """

    def __init__(self, db_path: str = "client_data/keys.db", passphrase: Optional[str] = None):
        """
        Initialize key storage.

        Args:
            db_path: SQLite file for this device profile
            passphrase: Optional passphrase sealing keys at rest
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._passphrase = passphrase
        self._sealing_key: Optional[bytes] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), timeout=30)

    def _init_database(self):
        """Create tables"""
        with closing(self._connect()) as db:
            with db:
                db.execute("""
                    CREATE TABLE IF NOT EXISTS private_keys (
                        user_id TEXT PRIMARY KEY,
                        key_data BLOB NOT NULL
                    )
                """)
                db.execute("""
                    CREATE TABLE IF NOT EXISTS metadata (
                        key TEXT PRIMARY KEY,
                        value BLOB NOT NULL
                    )
                """)

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def derive_key(self, passphrase: str, salt: bytes) -> bytes:
        """
        Derive the sealing key from a passphrase using PBKDF2.

        Returns:
            32-byte key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(passphrase.encode())

    def _get_sealing_key(self, db: sqlite3.Connection) -> Optional[bytes]:
        """
        Raises:
            DecryptionError: If the store is sealed and no passphrase was given
        """
        if self._passphrase is None:
            if db.execute("SELECT 1 FROM metadata WHERE key = 'salt'").fetchone():
                raise DecryptionError("Key store is sealed; a passphrase is required")
            return None
        if self._sealing_key is None:
            db.execute(
                "INSERT OR IGNORE INTO metadata (key, value) VALUES ('salt', ?)",
                (os.urandom(SALT_SIZE),)
            )
            salt = db.execute("SELECT value FROM metadata WHERE key = 'salt'").fetchone()[0]
            self._sealing_key = self.derive_key(self._passphrase, salt)
        return self._sealing_key

    def _seal(self, sealing_key: Optional[bytes], data: bytes) -> bytes:
        if sealing_key is None:
            return data
        nonce = os.urandom(NONCE_SIZE)
        return nonce + AESGCM(sealing_key).encrypt(nonce, data, None)

    def _open(self, sealing_key: Optional[bytes], data: bytes) -> bytes:
        if sealing_key is None:
            return data
        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Sealed key is truncated")
        try:
            return AESGCM(sealing_key).decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
        except InvalidTag as e:
            raise DecryptionError("Key store passphrase is incorrect") from e

    def _store(self, user_id: str, private_key: bytes):
        with closing(self._connect()) as db:
            with db:
                sealed = self._seal(self._get_sealing_key(db), private_key)
                db.execute(
                    "INSERT OR REPLACE INTO private_keys (user_id, key_data) VALUES (?, ?)",
                    (user_id, sealed)
                )

    def _get(self, user_id: str) -> Optional[bytes]:
        with closing(self._connect()) as db:
            with db:
                sealing_key = self._get_sealing_key(db)
                row = db.execute(
                    "SELECT key_data FROM private_keys WHERE user_id = ?", (user_id,)
                ).fetchone()
                if row is None:
                    return None
                return self._open(sealing_key, bytes(row[0]))

    def _delete(self, user_id: str):
        with closing(self._connect()) as db:
            with db:
                db.execute("DELETE FROM private_keys WHERE user_id = ?", (user_id,))

    async def store(self, user_id: str, private_key: bytes):
        """
        Save a user's private key, replacing any previous one.

        Args:
            user_id: Owner of the key
            private_key: PKCS#8 DER private key

        Raises:
            DecryptionError: If the store is sealed and no passphrase was given
        """
        async with self._lock(user_id):
            await asyncio.to_thread(self._store, user_id, bytes(private_key))
        logger.debug("Stored private key for %s", user_id)

    async def get(self, user_id: str) -> Optional[bytes]:
        """
        Load a user's private key.

        Returns:
            The exact bytes stored, or None

        Raises:
            DecryptionError: If the store is sealed and the passphrase is
                wrong or missing
        """
        async with self._lock(user_id):
            return await asyncio.to_thread(self._get, user_id)

    async def delete(self, user_id: str):
        """Remove a user's private key. Deleting a missing key is a no-op."""
        async with self._lock(user_id):
            await asyncio.to_thread(self._delete, user_id)
        logger.debug("Deleted private key for %s", user_id)
