"""
End-to-end encryption core for seal-chat.

Implements hybrid encryption for messages:
- RSA-OAEP/SHA-256 identity keys wrapping per-message AES-256-GCM keys
- One shared AES-256-GCM key per group, wrapped once per member
- Fault-tolerant bulk decryption for local search
"""

from .bulk import BatchResult, BulkDecryptor
from .groups import EncryptedGroupPayload, GroupKeyManager, GroupKeyRecord
from .keys import KeyManager, KeyPair, generate_key_pair
from .messages import DecryptResult, EncryptedPayload, Err, MessageCipher, Ok
from .primitives import (
    CryptoError,
    DecryptionError,
    EncodingError,
    KeyGenerationError,
    KeyNotFoundError,
)

__all__ = [
    'BatchResult',
    'BulkDecryptor',
    'EncryptedGroupPayload',
    'GroupKeyManager',
    'GroupKeyRecord',
    'KeyManager',
    'KeyPair',
    'generate_key_pair',
    'DecryptResult',
    'EncryptedPayload',
    'Err',
    'MessageCipher',
    'Ok',
    'CryptoError',
    'DecryptionError',
    'EncodingError',
    'KeyGenerationError',
    'KeyNotFoundError'
]
