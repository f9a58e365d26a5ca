"""
Identity key management.

Each account owns one RSA-OAEP key pair, created at its first sign-in.
The public half goes to the identity directory; the private half stays
in the device's key store and is never sent anywhere.
"""

import asyncio
import logging
from dataclasses import dataclass

from .interfaces import IdentityDirectory, PrivateKeyStore
from .primitives import (
    EncodingError,
    KeyNotFoundError,
    generate_rsa_keypair,
    load_private_key,
    load_public_key,
    serialize_public_key,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyPair:
    """
    Asymmetric identity key pair.

    Attributes:
        public_key: RSA public key, SubjectPublicKeyInfo DER
        private_key: RSA private key, PKCS#8 DER
    """
    public_key: bytes
    private_key: bytes

    def __repr__(self) -> str:
        return f"KeyPair(public_key=<{len(self.public_key)} bytes>, private_key=<redacted>)"


def generate_key_pair() -> KeyPair:
    """
    Generate an RSA-OAEP/SHA-256 2048-bit identity key pair.

    Raises:
        KeyGenerationError: If the crypto engine fails
    """
    public_key, private_key = generate_rsa_keypair()
    return KeyPair(public_key=public_key, private_key=private_key)


class KeyManager:
    """
    Issues, imports and looks up identity keys.

    The key store and directory are passed in; nothing is cached at
    module level.
    """

    def __init__(self, key_store: PrivateKeyStore, directory: IdentityDirectory):
        self.key_store = key_store
        self.directory = directory

    async def generate_key_pair(self) -> KeyPair:
        """Generate a key pair off the event loop"""
        return await asyncio.to_thread(generate_key_pair)

    async def initialize_identity(self, user_id: str) -> KeyPair:
        """
        Bootstrap the identity for a freshly authenticated user.

        If the directory has no public key on record, a new pair is
        generated, the private half is stored locally and the public half
        is published. Otherwise the previously stored private key is
        reused.

        Raises:
            KeyNotFoundError: A public key is on record but this device
                holds no private key for it. Call reset_identity to start
                over and give up access to earlier ciphertext.
        """
        published = await self.directory.get_public_key(user_id)

        if published is None:
            key_pair = await self.generate_key_pair()
            await self.key_store.store(user_id, key_pair.private_key)
            await self.directory.publish_public_key(user_id, key_pair.public_key)
            logger.info("Created identity key pair for %s", user_id)
            return key_pair

        private_key = await self.key_store.get(user_id)
        if private_key is None:
            raise KeyNotFoundError(
                f"No local private key for {user_id}; identity must be re-initialized"
            )
        return KeyPair(public_key=published, private_key=private_key)

    async def reset_identity(self, user_id: str) -> KeyPair:
        """
        Replace the identity key pair.

        Everything encrypted to the previous public key becomes
        unreadable.
        """
        key_pair = await self.generate_key_pair()
        await self.key_store.store(user_id, key_pair.private_key)
        await self.directory.publish_public_key(user_id, key_pair.public_key)
        logger.warning("Identity key pair for %s was reset; prior ciphertext is lost", user_id)
        return key_pair

    async def import_key_pair(self, user_id: str, public_key: bytes, private_key: bytes) -> KeyPair:
        """
        Take custody of an externally produced key pair.

        Raises:
            EncodingError: If either half does not parse or they do not match
        """
        loaded_private = load_private_key(private_key)
        load_public_key(public_key)
        if serialize_public_key(loaded_private.public_key()) != public_key:
            raise EncodingError("Public key does not belong to the private key")

        await self.key_store.store(user_id, private_key)
        return KeyPair(public_key=public_key, private_key=private_key)

    async def get_private_key(self, user_id: str) -> bytes:
        """
        Raises:
            KeyNotFoundError: If this device holds no key for the user
        """
        private_key = await self.key_store.get(user_id)
        if private_key is None:
            raise KeyNotFoundError(f"No local private key for {user_id}")
        return private_key

    async def get_public_key(self, user_id: str) -> bytes:
        """
        Raises:
            KeyNotFoundError: If the user never published a key
        """
        public_key = await self.directory.get_public_key(user_id)
        if public_key is None:
            raise KeyNotFoundError(f"{user_id} has no published public key")
        return public_key
