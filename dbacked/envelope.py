"""
Backup Envelope
Binary framing of an encrypted backup

Layout (offsets cumulative):
    7 bytes   magic "DBACKED"
    3 bytes   format version (major, minor, patch)
    4 bytes   wrapped key length, unsigned little-endian
    n bytes   wrapped key (AES key encrypted with the RSA public key)
    16 bytes  AES-256-CBC initialization vector
    ...       ciphertext, unframed, until the end of the file
"""

import struct
from typing import NamedTuple, Tuple

from .exceptions import UnexpectedError

MAGIC = b"DBACKED"
FORMAT_VERSION: Tuple[int, int, int] = (1, 0, 0)
IV_LENGTH = 16

_KEY_LENGTH = struct.Struct("<I")


class EnvelopeHeader(NamedTuple):
    version: Tuple[int, int, int]
    encrypted_key: bytes
    iv: bytes

    @property
    def size(self) -> int:
        return len(MAGIC) + len(self.version) + _KEY_LENGTH.size + len(self.encrypted_key) + len(self.iv)


def build_header(encrypted_key: bytes, iv: bytes, version: Tuple[int, int, int] = FORMAT_VERSION) -> bytes:
    """
    Build the envelope header written before any ciphertext byte

    Args:
        encrypted_key: AES key wrapped with the RSA public key
        iv: Initialization vector of the dump cipher
        version: Format version

    Returns:
        Header bytes
    """
    if len(iv) != IV_LENGTH:
        raise UnexpectedError(f"IV must be {IV_LENGTH} bytes, got {len(iv)}")
    if not encrypted_key:
        raise UnexpectedError("Encrypted key is empty")

    return b"".join([
        MAGIC,
        bytes(version),
        _KEY_LENGTH.pack(len(encrypted_key)),
        encrypted_key,
        iv,
    ])


def parse_header(data: bytes) -> EnvelopeHeader:
    """
    Read the header back from the start of an envelope

    Args:
        data: At least the header bytes of an envelope

    Returns:
        Parsed header, its size tells where the ciphertext starts

    Raises:
        UnexpectedError: If the data is not a DBacked envelope
    """
    if data[:len(MAGIC)] != MAGIC:
        raise UnexpectedError("Not a DBacked backup: bad magic bytes")

    offset = len(MAGIC)
    version = tuple(data[offset:offset + 3])
    offset += 3

    if len(data) < offset + _KEY_LENGTH.size:
        raise UnexpectedError("Truncated envelope header")
    (key_length,) = _KEY_LENGTH.unpack_from(data, offset)
    offset += _KEY_LENGTH.size

    if len(data) < offset + key_length + IV_LENGTH:
        raise UnexpectedError("Truncated envelope header")
    encrypted_key = bytes(data[offset:offset + key_length])
    offset += key_length
    iv = bytes(data[offset:offset + IV_LENGTH])

    return EnvelopeHeader(version=version, encrypted_key=encrypted_key, iv=iv)
