"""
Identifiers - CB58 encoded IDs used by the managed network.

CB58 is base58 (bitcoin alphabet) over the payload followed by the last four
bytes of its sha256 digest. Node IDs are 20-byte short IDs rendered with a
"NodeID-" prefix.

Usage:
    from core.ids import NodeId

    node_id = NodeId.parse("NodeID-6ZmBHXTqjknJoZtXbnJ6x7af863rXDTwx")
    print(node_id)          # NodeID-6ZmBHXTqjknJoZtXbnJ6x7af863rXDTwx
    node_id.raw.hex()       # 3d0ad12b8ee8928edf248ca91ca55600fb383f07
"""

import hashlib
from dataclasses import dataclass

ID_LEN = 32
SHORT_ID_LEN = 20
CHECKSUM_LEN = 4
NODE_ID_PREFIX = "NodeID-"

_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_INDEX = {c: i for i, c in enumerate(_ALPHABET)}


def b58encode(data: bytes) -> str:
    """Base58 encode (bitcoin alphabet)."""
    n = int.from_bytes(data, "big")
    out = []
    while n > 0:
        n, rem = divmod(n, 58)
        out.append(_ALPHABET[rem])
    pad = len(data) - len(data.lstrip(b"\0"))
    return "1" * pad + "".join(reversed(out))


def b58decode(text: str) -> bytes:
    """Base58 decode (bitcoin alphabet)."""
    n = 0
    for c in text:
        if c not in _INDEX:
            raise ValueError(f"invalid base58 character {c!r}")
        n = n * 58 + _INDEX[c]
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    pad = len(text) - len(text.lstrip("1"))
    return b"\0" * pad + body


def encode_cb58(payload: bytes) -> str:
    """Encode with the 4-byte sha256 checksum suffix."""
    checksum = hashlib.sha256(payload).digest()[-CHECKSUM_LEN:]
    return b58encode(payload + checksum)


def decode_cb58(text: str) -> bytes:
    """Decode and verify the 4-byte sha256 checksum suffix."""
    raw = b58decode(text)
    if len(raw) < CHECKSUM_LEN:
        raise ValueError(f"cb58 string too short: {text!r}")
    payload, checksum = raw[:-CHECKSUM_LEN], raw[-CHECKSUM_LEN:]
    if hashlib.sha256(payload).digest()[-CHECKSUM_LEN:] != checksum:
        raise ValueError(f"cb58 checksum mismatch: {text!r}")
    return payload


@dataclass(frozen=True, order=True)
class Id:
    """32-byte identifier (chains, transactions, assets)."""
    raw: bytes

    def __post_init__(self):
        if len(self.raw) > ID_LEN:
            raise ValueError(f"id longer than {ID_LEN} bytes")
        if len(self.raw) < ID_LEN:
            object.__setattr__(self, "raw", self.raw.ljust(ID_LEN, b"\0"))

    @classmethod
    def parse(cls, text: str) -> "Id":
        return cls(decode_cb58(text))

    @classmethod
    def empty(cls) -> "Id":
        return cls(b"\0" * ID_LEN)

    def is_empty(self) -> bool:
        return self.raw == b"\0" * ID_LEN

    def __str__(self) -> str:
        return encode_cb58(self.raw)


@dataclass(frozen=True, order=True)
class ShortId:
    """20-byte identifier (addresses)."""
    raw: bytes

    def __post_init__(self):
        if len(self.raw) != SHORT_ID_LEN:
            raise ValueError(f"short id must be {SHORT_ID_LEN} bytes, got {len(self.raw)}")

    @classmethod
    def parse(cls, text: str) -> "ShortId":
        return cls(decode_cb58(text))

    def __str__(self) -> str:
        return encode_cb58(self.raw)


@dataclass(frozen=True, order=True)
class NodeId:
    """20-byte node identifier, rendered as NodeID-<cb58>."""
    raw: bytes

    def __post_init__(self):
        if len(self.raw) != SHORT_ID_LEN:
            raise ValueError(f"node id must be {SHORT_ID_LEN} bytes, got {len(self.raw)}")

    @classmethod
    def parse(cls, text: str) -> "NodeId":
        """Parse with or without the NodeID- prefix."""
        return cls(decode_cb58(strip_node_id_prefix(text.strip())))

    def short_id(self) -> ShortId:
        return ShortId(self.raw)

    def __str__(self) -> str:
        return NODE_ID_PREFIX + encode_cb58(self.raw)


def strip_node_id_prefix(text: str) -> str:
    if text.startswith(NODE_ID_PREFIX):
        return text[len(NODE_ID_PREFIX):]
    return text


def is_valid_node_id(text: str) -> bool:
    try:
        NodeId.parse(text)
        return True
    except ValueError:
        return False
