"""
Key material and payload encryption.

Two key families per user:

- RSA-2048 keypair (PEM SPKI / PKCS#8). Peers encrypt delivered copies with
  the public key using RSA-OAEP(SHA-256), output base64.
- 256-bit symmetric key (hex). The sender archives its own copy with
  AES-256-CBC; stored as ``<iv hex>:<ciphertext base64>``.

Decryption never raises on bad input: corrupt ciphertext, a wrong key or a
legacy plaintext row is returned unchanged and the failure is logged, so a
single bad row cannot break a history load.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import re
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes, padding as sym_padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asy_padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from openchat.utils.logging_config import get_logger

logger = get_logger(__name__)

RSA_KEY_SIZE = 2048
SYMMETRIC_KEY_BYTES = 32
IV_BYTES = 16

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")

# scrypt parameters for password hashes
_SCRYPT_N = 2 ** 14
_SCRYPT_R = 8
_SCRYPT_P = 1
_SALT_BYTES = 16


@dataclass
class Identity:
    public_key: str
    private_key: str
    symmetric_key: str


def _oaep() -> asy_padding.OAEP:
    return asy_padding.OAEP(
        mgf=asy_padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


class IdentityKeyManager:
    """Generates identities and performs every encrypt/decrypt in the core."""

    def __init__(self, key_size: int = RSA_KEY_SIZE):
        self.key_size = key_size

    # Key generation

    def generate_keypair(self) -> tuple[str, str]:
        priv = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        private_pem = priv.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        public_pem = priv.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
        return public_pem, private_pem

    @staticmethod
    def generate_symmetric_key() -> str:
        return os.urandom(SYMMETRIC_KEY_BYTES).hex()

    def generate_identity(self) -> Identity:
        public_key, private_key = self.generate_keypair()
        return Identity(
            public_key=public_key,
            private_key=private_key,
            symmetric_key=self.generate_symmetric_key(),
        )

    # Peer delivery (RSA-OAEP)

    def encrypt_for_recipient(self, payload: Optional[str], recipient_public_key: Optional[str]) -> Optional[str]:
        """Encrypt ``payload`` for the holder of ``recipient_public_key``.

        Missing payload or key returns the payload unchanged, and so does a
        payload longer than one OAEP block (190 bytes for RSA-2048/SHA-256);
        the latter is logged.
        """
        if not payload or not recipient_public_key:
            return payload
        try:
            pub = serialization.load_pem_public_key(recipient_public_key.encode("ascii"))
            ciphertext = pub.encrypt(str(payload).encode("utf-8"), _oaep())
        except (ValueError, TypeError) as e:
            logger.error("RSA encryption error", error=str(e) or e.__class__.__name__)
            return payload
        return base64.b64encode(ciphertext).decode("ascii")

    def decrypt_own(self, payload: Optional[str], private_key: Optional[str]) -> Optional[str]:
        if not payload or not private_key:
            return payload
        if not _BASE64_RE.match(payload):
            return payload
        try:
            priv = serialization.load_pem_private_key(private_key.encode("ascii"), password=None)
            plaintext = priv.decrypt(base64.b64decode(payload), _oaep())
            return plaintext.decode("utf-8")
        except (ValueError, TypeError, binascii.Error) as e:
            logger.error("RSA decryption error", error=str(e) or e.__class__.__name__)
            return payload

    # Self-archival (AES-256-CBC)

    def encrypt_self(self, payload: Optional[str], symmetric_key: Optional[str]) -> Optional[str]:
        if not payload or not symmetric_key:
            return payload
        iv = os.urandom(IV_BYTES)
        padder = sym_padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(str(payload).encode("utf-8")) + padder.finalize()
        try:
            encryptor = Cipher(algorithms.AES(bytes.fromhex(symmetric_key)), modes.CBC(iv)).encryptor()
        except ValueError as e:
            logger.error("AES encryption error", error=str(e))
            return payload
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{base64.b64encode(ciphertext).decode('ascii')}"

    def decrypt_self(self, payload: Optional[str], symmetric_key: Optional[str]) -> Optional[str]:
        if not payload or not symmetric_key or ":" not in payload:
            return payload
        iv_hex, _, body = payload.partition(":")
        try:
            iv = bytes.fromhex(iv_hex)
            decryptor = Cipher(algorithms.AES(bytes.fromhex(symmetric_key)), modes.CBC(iv)).decryptor()
            padded = decryptor.update(base64.b64decode(body)) + decryptor.finalize()
            unpadder = sym_padding.PKCS7(algorithms.AES.block_size).unpadder()
            return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
        except (ValueError, TypeError, binascii.Error) as e:
            logger.error("AES decryption error", error=str(e) or e.__class__.__name__)
            return payload


# Password hashing

def hash_password(password: str) -> str:
    salt = os.urandom(_SALT_BYTES)
    kdf = Scrypt(salt=salt, length=32, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    digest = kdf.derive(password.encode("utf-8"))
    return f"scrypt${salt.hex()}${digest.hex()}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    """Check ``password`` against a scrypt hash or a legacy sha256 hex digest."""
    if not stored:
        return False
    if stored.startswith("scrypt$"):
        try:
            _, salt_hex, digest_hex = stored.split("$", 2)
            kdf = Scrypt(salt=bytes.fromhex(salt_hex), length=32, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
            kdf.verify(password.encode("utf-8"), bytes.fromhex(digest_hex))
            return True
        except (InvalidKey, ValueError):
            return False
    legacy = hashlib.sha256(password.encode("utf-8")).hexdigest()
    return hmac.compare_digest(legacy, stored)
