"""
Parley - Asymmetric message encryption and key handling.

This module implements the per-recipient encryption used for private
messages and the password-bound wrapping of each user's private key:

- RSA-2048 key pairs, exchanged as PEM text
- Hybrid envelope: a fresh AES-256-GCM content key encrypts the message,
  the content key itself is encrypted with RSA-OAEP (SHA-256) to the
  recipient's public key, so only the recipient's private key opens it
- Argon2id-derived AES-256-GCM key protects the private key at rest

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import base64
import binascii
import json
import os
import secrets
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Union

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    AES_KEY_SIZE,
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    ENVELOPE_VERSION,
    NONCE_SIZE,
    RSA_KEY_SIZE,
    RSA_PUBLIC_EXPONENT,
    SALT_SIZE,
    SESSION_TOKEN_BYTES,
)
from .errors import CryptoError, DecryptionFailure, ErrorCode

PrivateKeyLike = Union[str, rsa.RSAPrivateKey]

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


@dataclass(frozen=True)
class KdfParams:
    """Argon2id cost parameters used to wrap private keys."""

    time_cost: int = ARGON2_TIME_COST
    memory_cost: int = ARGON2_MEMORY_COST
    parallelism: int = ARGON2_PARALLELISM

    def to_dict(self) -> Dict[str, int]:
        return {
            "time_cost": self.time_cost,
            "memory_cost": self.memory_cost,
            "parallelism": self.parallelism,
        }

    @staticmethod
    def from_dict(data: Dict[str, int]) -> "KdfParams":
        return KdfParams(
            time_cost=data.get("time_cost", ARGON2_TIME_COST),
            memory_cost=data.get("memory_cost", ARGON2_MEMORY_COST),
            parallelism=data.get("parallelism", ARGON2_PARALLELISM),
        )


class KeyPair:
    """
    A user's RSA key pair.

    The public half is retained server-side so others can encrypt to the
    user; the private half is handed to the owning client.
    """

    def __init__(self, private_key: Optional[rsa.RSAPrivateKey] = None, key_size: int = RSA_KEY_SIZE):
        if private_key is None:
            try:
                private_key = rsa.generate_private_key(
                    public_exponent=RSA_PUBLIC_EXPONENT, key_size=key_size
                )
            except ValueError as e:
                raise CryptoError(
                    ErrorCode.E104_KEY_GENERATION_FAILED,
                    f"Key generation failed: {e}",
                    {"key_size": key_size},
                ) from e
        self.private_key = private_key
        self.public_key = private_key.public_key()

    def private_pem(self) -> str:
        """Private key as unencrypted PKCS#8 PEM text."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")

    def public_pem(self) -> str:
        """Public key as SubjectPublicKeyInfo PEM text."""
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    @staticmethod
    def from_private_pem(pem: str) -> "KeyPair":
        return KeyPair(load_private_key(pem))


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    """
    Parse a PEM private key.

    Raises:
        CryptoError: If the text is not an RSA private key
    """
    try:
        key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except (ValueError, TypeError, UnicodeEncodeError, AttributeError) as e:
        raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Invalid private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CryptoError(ErrorCode.E103_INVALID_KEY, "Private key is not an RSA key")
    return key


def load_public_key(pem: str) -> rsa.RSAPublicKey:
    """
    Parse a PEM public key.

    Raises:
        CryptoError: If the text is not an RSA public key
    """
    try:
        key = serialization.load_pem_public_key(pem.encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError, AttributeError) as e:
        raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Invalid public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise CryptoError(ErrorCode.E103_INVALID_KEY, "Public key is not an RSA key")
    return key


def encrypt_for_recipient(plaintext: str, public_key_pem: str) -> str:
    """
    Encrypt text so that only the holder of the matching private key can read it.

    Envelope flow:
    1. Random AES-256-GCM content key and 96-bit nonce
    2. Plaintext -> AES-256-GCM(content key) -> body
    3. Content key -> RSA-OAEP(recipient public key) -> wrapped key
    4. {v, key, nonce, body} -> JSON -> base64 text

    Returns:
        Opaque base64 ciphertext string

    Raises:
        CryptoError: If the public key is unusable
    """
    public_key = load_public_key(public_key_pem)

    content_key = AESGCM.generate_key(bit_length=AES_KEY_SIZE * 8)
    nonce = os.urandom(NONCE_SIZE)
    body = AESGCM(content_key).encrypt(nonce, plaintext.encode("utf-8"), None)

    try:
        wrapped_key = public_key.encrypt(content_key, _OAEP)
    except ValueError as e:
        raise CryptoError(ErrorCode.E101_ENCRYPTION_FAILED, f"Encryption failed: {e}") from e

    envelope = {
        "v": ENVELOPE_VERSION,
        "key": base64.b64encode(wrapped_key).decode("ascii"),
        "nonce": base64.b64encode(nonce).decode("ascii"),
        "body": base64.b64encode(body).decode("ascii"),
    }
    return base64.b64encode(json.dumps(envelope).encode("utf-8")).decode("ascii")


def decrypt_with_private_key(ciphertext: str, private_key: PrivateKeyLike) -> str:
    """
    Open a ciphertext produced by encrypt_for_recipient.

    Args:
        ciphertext: Base64 envelope text
        private_key: PEM text or a loaded RSA private key

    Raises:
        DecryptionFailure: On a malformed key, the wrong key, or a corrupt ciphertext
    """
    try:
        if isinstance(private_key, str):
            private_key = load_private_key(private_key)

        envelope = json.loads(base64.b64decode(ciphertext, validate=True).decode("utf-8"))
        if not isinstance(envelope, dict) or envelope.get("v") != ENVELOPE_VERSION:
            raise DecryptionFailure("Unsupported ciphertext format")

        wrapped_key = base64.b64decode(envelope["key"])
        nonce = base64.b64decode(envelope["nonce"])
        body = base64.b64decode(envelope["body"])

        content_key = private_key.decrypt(wrapped_key, _OAEP)
        plaintext = AESGCM(content_key).decrypt(nonce, body, None)
        return plaintext.decode("utf-8")
    except DecryptionFailure:
        raise
    except (
        CryptoError,
        InvalidTag,
        ValueError,
        TypeError,
        KeyError,
        AttributeError,
        binascii.Error,
        UnicodeDecodeError,
    ) as e:
        raise DecryptionFailure(f"Decryption failed: {type(e).__name__}") from e


def _derive_wrapping_key(password: str, salt: bytes, params: KdfParams) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=AES_KEY_SIZE,
        type=Type.ID,
    )


def wrap_private_key(private_pem: str, password: str, params: Optional[KdfParams] = None) -> Dict:
    """
    Encrypt a private key with a password using AES-256-GCM.

    Argon2id derives the wrapping key from the password and a unique salt,
    so the server never holds the private key in usable form.
    """
    params = params or KdfParams()
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    key = _derive_wrapping_key(password, salt, params)
    ciphertext = AESGCM(key).encrypt(nonce, private_pem.encode("ascii"), None)

    return {
        "salt": base64.b64encode(salt).decode("ascii"),
        "nonce": base64.b64encode(nonce).decode("ascii"),
        "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        "kdf": params.to_dict(),
        "version": "1.0",
    }


def unwrap_private_key(wrapped: Dict, password: str) -> str:
    """
    Recover a private key PEM wrapped by wrap_private_key.

    Raises:
        CryptoError: If the password is incorrect or the blob is corrupted
    """
    try:
        salt = base64.b64decode(wrapped["salt"])
        nonce = base64.b64decode(wrapped["nonce"])
        ciphertext = base64.b64decode(wrapped["ciphertext"])
        params = KdfParams.from_dict(wrapped.get("kdf", {}))
        key = _derive_wrapping_key(password, salt, params)
        return AESGCM(key).decrypt(nonce, ciphertext, None).decode("ascii")
    except (InvalidTag, KeyError, ValueError, binascii.Error, UnicodeDecodeError) as e:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            "Failed to unwrap private key. Incorrect password or corrupted record.",
        ) from e


def generate_fingerprint(public_key_pem: str) -> str:
    """
    SHA-256 fingerprint of a public key's DER encoding, as 64 hex characters.

    Lets users compare keys out of band.
    """
    der = load_public_key(public_key_pem).public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    digest = hashes.Hash(hashes.SHA256())
    digest.update(der)
    return digest.finalize().hex()


def generate_uid() -> str:
    """Random 128-bit identifier as 32 lowercase hex characters."""
    return secrets.token_hex(16)


def generate_group_uid() -> str:
    """Group identifier: 'g' followed by 31 hex characters."""
    return "g" + secrets.token_hex(15) + format(secrets.randbelow(16), "x")


def generate_secure_token(length: int = SESSION_TOKEN_BYTES) -> str:
    """Cryptographically secure random token, used for session tokens."""
    return secrets.token_urlsafe(length)


def generate_temp_id() -> str:
    """Client-side correlation token for an outgoing message."""
    return uuid.uuid4().hex
