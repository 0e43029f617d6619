"""
Ciphertext Serialization Formats.

Ciphertexts cross the boundary between the client environment and the
deployment environment, so their encoding is a versioned contract rather
than a memory layout:
    1. Self-describing - carries the parameter-set tag
    2. Compact - binary body, optional zlib
    3. Versioned - magic number plus format version byte
    4. Authenticated - content hash in the metadata envelope

Binary layout (after the one-byte compression flag):
    MAGIC "HELW" | version u8 | params_id_len u16 | params_id utf-8 |
    dimension u32 | body (dimension + 1) x uint64 little-endian
"""

import base64
import hashlib
import json
import logging
import struct
import zlib
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from typing import Any, Dict, Optional

import numpy as np

from .core import Ciphertext

logger = logging.getLogger(__name__)


# Format magic number: "HELW" in ASCII
MAGIC_NUMBER = b"HELW"
FORMAT_VERSION = 1


class CiphertextFormat(Enum):
    """Supported ciphertext serialization formats."""

    BINARY = "binary"  # Compact binary format
    JSON = "json"  # Human-readable JSON
    BASE64 = "base64"  # Base64-encoded binary (for text transports)


@dataclass
class SerializedCiphertext:
    """Serialized ciphertext with integrity metadata."""

    data: bytes
    format: CiphertextFormat
    params_id: str = ""
    content_hash: str = ""

    def __post_init__(self):
        if not self.content_hash:
            self.content_hash = f"sha256:{hashlib.sha256(self.data).hexdigest()}"

    def verify(self) -> bool:
        return self.content_hash == f"sha256:{hashlib.sha256(self.data).hexdigest()}"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize metadata to dictionary."""
        return {
            "format": self.format.value,
            "params_id": self.params_id,
            "content_hash": self.content_hash,
            "size_bytes": len(self.data),
        }


class CiphertextSerializer:
    """
    Serializes and deserializes tagged LWE ciphertexts.
    """

    def __init__(
        self,
        default_format: CiphertextFormat = CiphertextFormat.BINARY,
        compress: bool = False,
        compression_level: int = 6,
    ):
        """
        Initialize serializer.

        Args:
            default_format: Default serialization format
            compress: Whether to zlib-compress binary data (masks are
                uniform, so this rarely pays off)
            compression_level: zlib compression level (1-9)
        """
        self.default_format = default_format
        self.compress = compress
        self.compression_level = compression_level

    def serialize(
        self,
        ciphertext: Ciphertext,
        format: Optional[CiphertextFormat] = None,
    ) -> SerializedCiphertext:
        format = format or self.default_format

        if format == CiphertextFormat.BINARY:
            data = self.to_binary(ciphertext)
        elif format == CiphertextFormat.JSON:
            data = self._serialize_json(ciphertext)
        elif format == CiphertextFormat.BASE64:
            data = base64.b64encode(self.to_binary(ciphertext))
        else:
            raise ValueError(f"Unsupported format: {format}")

        return SerializedCiphertext(data=data, format=format, params_id=ciphertext.params_id)

    def deserialize(self, serialized: SerializedCiphertext) -> Ciphertext:
        if not serialized.verify():
            raise ValueError("Ciphertext content hash mismatch")

        if serialized.format == CiphertextFormat.BINARY:
            ct = self.from_binary(serialized.data)
        elif serialized.format == CiphertextFormat.JSON:
            ct = self._deserialize_json(serialized.data)
        elif serialized.format == CiphertextFormat.BASE64:
            ct = self.from_binary(base64.b64decode(serialized.data))
        else:
            raise ValueError(f"Unsupported format: {serialized.format}")

        if serialized.params_id and serialized.params_id != ct.params_id:
            raise ValueError("Ciphertext tag does not match envelope params_id")
        return ct

    def to_binary(self, ciphertext: Ciphertext) -> bytes:
        """Serialize to compact binary format."""
        buf = BytesIO()
        buf.write(MAGIC_NUMBER)
        buf.write(struct.pack(">B", FORMAT_VERSION))

        tag = ciphertext.params_id.encode("utf-8")
        buf.write(struct.pack(">H", len(tag)))
        buf.write(tag)

        buf.write(struct.pack(">I", ciphertext.dimension))
        buf.write(ciphertext.body.astype("<u8").tobytes())

        data = buf.getvalue()
        if self.compress:
            compressed = zlib.compress(data, self.compression_level)
            if len(compressed) < len(data):
                return b"\x01" + compressed
        return b"\x00" + data

    def from_binary(self, data: bytes) -> Ciphertext:
        """Deserialize from binary format."""
        if not data:
            raise ValueError("Empty ciphertext payload")
        compressed = data[0] == 0x01
        data = data[1:]
        if compressed:
            data = zlib.decompress(data)

        buf = BytesIO(data)
        magic = buf.read(4)
        if magic != MAGIC_NUMBER:
            raise ValueError(f"Invalid magic number: {magic!r}")

        version = struct.unpack(">B", buf.read(1))[0]
        if version > FORMAT_VERSION:
            raise ValueError(f"Unsupported ciphertext format version: {version}")

        (tag_len,) = struct.unpack(">H", buf.read(2))
        params_id = buf.read(tag_len).decode("utf-8")
        (n,) = struct.unpack(">I", buf.read(4))

        raw = buf.read((n + 1) * 8)
        if len(raw) != (n + 1) * 8:
            raise ValueError("Truncated ciphertext body")
        body = np.frombuffer(raw, dtype="<u8").astype(np.uint64)
        return Ciphertext(params_id=params_id, body=body)

    def _serialize_json(self, ciphertext: Ciphertext) -> bytes:
        data = {
            "format": "helw-json-v1",
            "params_id": ciphertext.params_id,
            "dimension": ciphertext.dimension,
            "body": base64.b64encode(ciphertext.body.astype("<u8").tobytes()).decode("ascii"),
        }
        return json.dumps(data, indent=2).encode("utf-8")

    def _deserialize_json(self, data: bytes) -> Ciphertext:
        obj = json.loads(data.decode("utf-8"))
        if obj.get("format") != "helw-json-v1":
            raise ValueError(f"Unknown ciphertext JSON format: {obj.get('format')!r}")
        body = np.frombuffer(base64.b64decode(obj["body"]), dtype="<u8").astype(np.uint64)
        if body.size != obj["dimension"] + 1:
            raise ValueError("Ciphertext body length does not match declared dimension")
        return Ciphertext(params_id=obj["params_id"], body=body)


# Global serializer instance
_serializer = CiphertextSerializer()


def serialize_ciphertext(
    ciphertext: Ciphertext,
    format: CiphertextFormat = CiphertextFormat.BINARY,
) -> SerializedCiphertext:
    return _serializer.serialize(ciphertext, format)


def deserialize_ciphertext(serialized: SerializedCiphertext) -> Ciphertext:
    return _serializer.deserialize(serialized)


def ciphertext_to_bytes(ciphertext: Ciphertext) -> bytes:
    return _serializer.to_binary(ciphertext)


def ciphertext_from_bytes(data: bytes) -> Ciphertext:
    return _serializer.from_binary(data)
