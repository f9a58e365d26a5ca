"""
Bulk decryption of message history for local search.

Unlike single-message decryption, a batch never fails as a whole
because some rows are undecryptable: those rows are skipped and
counted.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, NamedTuple, Optional, Sequence, TypeVar

from .groups import EncryptedGroupPayload, GroupKeyManager
from .messages import DecryptResult, EncryptedPayload, MessageCipher
from .primitives import KeyNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 500
DEFAULT_CONCURRENCY = 8

P = TypeVar("P")


class BatchResult(NamedTuple):
    """
    Plaintexts that decrypted, in input order, and how many were dropped.

    indices holds the input position of each plaintext.
    """
    plaintexts: List[str]
    skipped: int
    indices: List[int]


class BulkDecryptor:
    """
    Decrypts a bounded window of payloads with bounded concurrency.

    Args:
        cipher: Direct-message cipher
        group_keys: Group key manager, for group history
        window: Maximum number of payloads considered per batch. Callers
            pass history most recent first.
        concurrency: Maximum decryptions in flight
    """

    def __init__(
        self,
        cipher: Optional[MessageCipher] = None,
        group_keys: Optional[GroupKeyManager] = None,
        window: int = DEFAULT_WINDOW,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        if window < 1:
            raise ValueError("window must be positive")
        if concurrency < 1:
            raise ValueError("concurrency must be positive")
        self.cipher = cipher or MessageCipher()
        self.group_keys = group_keys or GroupKeyManager()
        self.window = window
        self.concurrency = concurrency

    async def decrypt_batch(
        self, payloads: Sequence[EncryptedPayload], own_private_key: Optional[bytes]
    ) -> BatchResult:
        """
        Decrypt direct-message history.

        Raises:
            KeyNotFoundError: If own_private_key is None
        """
        if own_private_key is None:
            raise KeyNotFoundError("No private key available for bulk decryption")
        return await self._run(
            payloads, lambda payload: self.cipher.decrypt_result(payload, own_private_key)
        )

    async def decrypt_group_batch(
        self, payloads: Sequence[EncryptedGroupPayload], group_key: bytes
    ) -> BatchResult:
        """Decrypt group history with an already unwrapped group key"""
        return await self._run(
            payloads, lambda payload: self.group_keys.decrypt_group_result(payload, group_key)
        )

    async def _run(
        self, payloads: Sequence[P], decrypt: Callable[[P], Awaitable[DecryptResult]]
    ) -> BatchResult:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def one(payload: P) -> DecryptResult:
            async with semaphore:
                return await decrypt(payload)

        results = await asyncio.gather(*(one(p) for p in payloads[:self.window]))

        indices = [i for i, result in enumerate(results) if result.ok]
        plaintexts = [results[i].value for i in indices]
        skipped = len(results) - len(indices)
        if skipped:
            logger.info("Skipped %d of %d undecryptable messages", skipped, len(results))
        return BatchResult(plaintexts=plaintexts, skipped=skipped, indices=indices)
