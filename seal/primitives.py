"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations used by the hybrid
encryption scheme: RSA-OAEP key wrapping, AES-256-GCM payload encryption
and base64 handling at the storage boundary.
"""

import base64
import binascii
import os
from typing import Dict, Tuple

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
SYMMETRIC_KEY_SIZE = 32  # AES-256
IV_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyGenerationError(CryptoError):
    """The crypto engine failed to produce a key pair"""
    pass


class KeyNotFoundError(CryptoError):
    """No private key is held locally for the user"""
    pass


class DecryptionError(CryptoError):
    """Authentication failed, the key was wrong, or a field was malformed"""
    pass


class EncodingError(CryptoError):
    """Malformed base64 or byte-length input at the storage boundary"""
    pass


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


def generate_rsa_keypair() -> Tuple[bytes, bytes]:
    """
    Generate an RSA-OAEP key pair.

    Returns:
        Tuple of (public_key SPKI DER, private_key PKCS#8 DER)

    Raises:
        KeyGenerationError: If the backend cannot produce the key
    """
    try:
        private_key = rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT,
            key_size=RSA_KEY_SIZE,
        )
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyGenerationError(f"Key generation failed: {e}") from e

    return serialize_public_key(private_key.public_key()), serialize_private_key(private_key)


def serialize_public_key(public_key: RSAPublicKey) -> bytes:
    """Serialize RSA public key to SubjectPublicKeyInfo DER"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )


def serialize_private_key(private_key: RSAPrivateKey) -> bytes:
    """Serialize RSA private key to unencrypted PKCS#8 DER"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def load_public_key(key_bytes: bytes) -> RSAPublicKey:
    """
    Deserialize an SPKI DER public key.

    Raises:
        EncodingError: If the bytes are not an RSA public key
    """
    try:
        key = serialization.load_der_public_key(key_bytes)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise EncodingError(f"Invalid public key: {e}") from e
    if not isinstance(key, RSAPublicKey):
        raise EncodingError("Public key is not an RSA key")
    return key


def load_private_key(key_bytes: bytes) -> RSAPrivateKey:
    """
    Deserialize a PKCS#8 DER private key.

    Raises:
        EncodingError: If the bytes are not an RSA private key
    """
    try:
        key = serialization.load_der_private_key(key_bytes, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise EncodingError(f"Invalid private key: {e}") from e
    if not isinstance(key, RSAPrivateKey):
        raise EncodingError("Private key is not an RSA key")
    return key


def generate_symmetric_key() -> bytes:
    """Generate a fresh 256-bit AES-GCM key"""
    return AESGCM.generate_key(bit_length=SYMMETRIC_KEY_SIZE * 8)


def generate_iv() -> bytes:
    """Generate a fresh 96-bit random IV"""
    return os.urandom(IV_SIZE)


def wrap_key(public_key_bytes: bytes, symmetric_key: bytes) -> bytes:
    """
    Encrypt a raw symmetric key with RSA-OAEP/SHA-256.

    Args:
        public_key_bytes: Recipient's SPKI DER public key
        symmetric_key: Raw key to protect

    Returns:
        Wrapped key bytes
    """
    public_key = load_public_key(public_key_bytes)
    return public_key.encrypt(symmetric_key, _oaep())


def unwrap_key(private_key_bytes: bytes, wrapped_key: bytes) -> bytes:
    """
    Recover a raw symmetric key with RSA-OAEP/SHA-256.

    Raises:
        DecryptionError: If the key is wrong or the wrapped bytes are malformed
    """
    try:
        private_key = load_private_key(private_key_bytes)
    except EncodingError as e:
        raise DecryptionError(str(e)) from e

    try:
        symmetric_key = private_key.decrypt(wrapped_key, _oaep())
    except ValueError as e:
        raise DecryptionError("Key unwrap failed") from e

    if len(symmetric_key) != SYMMETRIC_KEY_SIZE:
        raise DecryptionError("Unwrapped key has the wrong length")
    return symmetric_key


def aes_gcm_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt with AES-256-GCM and no associated data.

    Args:
        key: 32-byte encryption key
        iv: 12-byte nonce, never reused under the same key
        plaintext: Bytes to encrypt

    Returns:
        ciphertext + tag (16 bytes)

    Raises:
        EncodingError: If the key is not 32 bytes
    """
    if len(key) != SYMMETRIC_KEY_SIZE:
        raise EncodingError("Symmetric key must be 32 bytes")
    return AESGCM(key).encrypt(iv, plaintext, None)


def aes_gcm_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt with AES-256-GCM.

    Raises:
        DecryptionError: If the tag does not verify or a field is malformed
    """
    if len(key) != SYMMETRIC_KEY_SIZE:
        raise DecryptionError("Symmetric key must be 32 bytes")
    if len(iv) != IV_SIZE:
        raise DecryptionError("IV must be 12 bytes")
    if len(ciphertext) < TAG_SIZE:
        raise DecryptionError("Ciphertext too short")

    try:
        return AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e


def decode_utf8(data: bytes) -> str:
    """Decode decrypted bytes, treating invalid UTF-8 as a decryption failure"""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted content is not valid UTF-8") from e


def b64encode(data: bytes) -> str:
    """Encode bytes as standard padded base64 text"""
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """
    Strictly decode standard base64 text.

    Raises:
        EncodingError: If the input is not valid base64
    """
    if not isinstance(data, str):
        raise EncodingError(f"Expected base64 text, got {type(data).__name__}")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"Invalid base64 encoding: {e}") from e


def decode_field(data: Dict, name: str) -> bytes:
    """
    Decode one base64 field of a stored row.

    Raises:
        EncodingError: If the field is missing or not base64
    """
    if data.get(name) is None:
        raise EncodingError(f"Missing field: {name}")
    return b64decode(data[name])


def check_iv(iv: bytes) -> bytes:
    """
    Raises:
        EncodingError: If the IV is not 12 bytes
    """
    if len(iv) != IV_SIZE:
        raise EncodingError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
    return iv
