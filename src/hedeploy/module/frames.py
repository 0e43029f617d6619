"""
Call frames and their wire encoding.

A CallFrame is the ordered sequence of ciphertexts and clear values
exchanged between a client stub and the matching server stub.

Binary layout:
    MAGIC "HEDF" | version u8 | name_len u16 | function utf-8 | count u16 |
    per value: kind u8 (0 = clear, 1 = ciphertext) followed by
               clear: int64 big-endian
               ciphertext: length u32 | ciphertext binary (see lwe.serialization)
"""

import struct
from dataclasses import dataclass
from io import BytesIO
from typing import Tuple, Union

from ..lwe.core import Ciphertext
from ..lwe.serialization import ciphertext_from_bytes, ciphertext_to_bytes

FRAME_MAGIC = b"HEDF"
FRAME_VERSION = 1

_KIND_CLEAR = 0
_KIND_CIPHERTEXT = 1

FrameValue = Union[Ciphertext, int]


@dataclass(frozen=True)
class CallFrame:
    """Values for one call of one function, in signature order."""

    function: str
    values: Tuple[FrameValue, ...]

    def __post_init__(self):
        object.__setattr__(self, "values", tuple(self.values))

    def __len__(self) -> int:
        return len(self.values)

    def to_bytes(self) -> bytes:
        buf = BytesIO()
        buf.write(FRAME_MAGIC)
        buf.write(struct.pack(">B", FRAME_VERSION))
        name = self.function.encode("utf-8")
        buf.write(struct.pack(">H", len(name)))
        buf.write(name)
        buf.write(struct.pack(">H", len(self.values)))
        for value in self.values:
            if isinstance(value, Ciphertext):
                data = ciphertext_to_bytes(value)
                buf.write(struct.pack(">BI", _KIND_CIPHERTEXT, len(data)))
                buf.write(data)
            else:
                buf.write(struct.pack(">Bq", _KIND_CLEAR, int(value)))
        return buf.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "CallFrame":
        buf = BytesIO(data)
        if buf.read(4) != FRAME_MAGIC:
            raise ValueError("Invalid call frame magic")
        (version,) = struct.unpack(">B", buf.read(1))
        if version > FRAME_VERSION:
            raise ValueError(f"Unsupported call frame version: {version}")
        (name_len,) = struct.unpack(">H", buf.read(2))
        function = buf.read(name_len).decode("utf-8")
        (count,) = struct.unpack(">H", buf.read(2))

        values = []
        for _ in range(count):
            (kind,) = struct.unpack(">B", buf.read(1))
            if kind == _KIND_CIPHERTEXT:
                (length,) = struct.unpack(">I", buf.read(4))
                values.append(ciphertext_from_bytes(buf.read(length)))
            elif kind == _KIND_CLEAR:
                (value,) = struct.unpack(">q", buf.read(8))
                values.append(value)
            else:
                raise ValueError(f"Unknown call frame value kind: {kind}")
        return cls(function=function, values=tuple(values))
