"""
Backup Encryption
Hybrid scheme: a fresh AES-256 key per backup, wrapped with the RSA public key
"""

import os
import logging
from typing import Iterable, Iterator, NamedTuple, Optional

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .envelope import IV_LENGTH
from .exceptions import KeyGenerationError

logger = logging.getLogger(__name__)

AES_KEY_SIZE = 32  # AES-256
RSA_KEY_SIZE = 4096


class BackupKey(NamedTuple):
    key: bytes
    encrypted_key: bytes


class KeyPair(NamedTuple):
    public_key_pem: str
    private_key_pem: str


def _oaep() -> asym_padding.OAEP:
    return asym_padding.OAEP(
        mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


def create_backup_key(public_key_pem: str) -> BackupKey:
    """
    Create the AES key of one backup

    Args:
        public_key_pem: RSA public key (PEM) of the backup owner

    Returns:
        The raw key and the key encrypted with RSA-OAEP

    Raises:
        KeyGenerationError: If the public key is invalid or encryption fails
    """
    try:
        public_key = serialization.load_pem_public_key(
            public_key_pem.encode('utf-8'),
            backend=default_backend()
        )
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise ValueError("public key is not an RSA key")

        key = os.urandom(AES_KEY_SIZE)
        encrypted_key = public_key.encrypt(key, _oaep())
    except Exception as e:
        logger.error(f"Backup key creation error: {e}")
        raise KeyGenerationError(f"Failed to create backup key: {str(e)}", code="EKEYGEN") from e

    return BackupKey(key=key, encrypted_key=encrypted_key)


def generate_key_pair(passphrase: str, key_size: int = RSA_KEY_SIZE) -> KeyPair:
    """
    Generate the RSA key pair used to encrypt backups

    The private key is encrypted with the passphrase, only the public key
    needs to be given to the agent.
    """
    if not passphrase:
        raise KeyGenerationError("A passphrase is required to protect the private key")

    try:
        private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=key_size,
            backend=default_backend()
        )
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(passphrase.encode('utf-8'))
        )
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
    except Exception as e:
        logger.error(f"Key pair generation error: {e}")
        raise KeyGenerationError(f"Failed to generate key pair: {str(e)}", code="EKEYGEN") from e

    return KeyPair(public_key_pem=public_pem.decode('utf-8'), private_key_pem=private_pem.decode('utf-8'))


class StreamCipher:
    """AES-256-CBC with PKCS7 padding over a stream of chunks"""

    def __init__(self, key: bytes, iv: Optional[bytes] = None):
        if len(key) != AES_KEY_SIZE:
            raise KeyGenerationError(f"AES key must be {AES_KEY_SIZE} bytes")
        self.iv = iv or os.urandom(IV_LENGTH)
        self._encryptor = Cipher(algorithms.AES(key), modes.CBC(self.iv), backend=default_backend()).encryptor()
        self._padder = padding.PKCS7(algorithms.AES.block_size).padder()

    def encrypt(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """Yield ciphertext as plaintext chunks arrive"""
        for chunk in chunks:
            data = self._encryptor.update(self._padder.update(chunk))
            if data:
                yield data
        yield self._encryptor.update(self._padder.finalize()) + self._encryptor.finalize()
