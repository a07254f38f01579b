"""Tree nodes, their binary encoding and hashing."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Iterator, Optional, Protocol

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_UINT64_MAX = (1 << 64) - 1
_MAX_VARINT_LEN = 10


class IAVLError(Exception):
    """Base error for tree operations."""


class NodeEncodingError(IAVLError):
    """Raised when a node or a primitive cannot be encoded or decoded."""


class _NodeStore(Protocol):
    def get_node(self, hash: bytes) -> "Node": ...


class _Tree(Protocol):
    ndb: _NodeStore


# ---------------------------------------------------------------------------
# Primitive encoding
# ---------------------------------------------------------------------------


def encode_uvarint(value: int) -> bytes:
    """Encode an unsigned 64-bit integer as a base-128 varint."""
    if value < 0 or value > _UINT64_MAX:
        raise NodeEncodingError(f"uvarint out of range: {value}")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def decode_uvarint(buf: bytes) -> tuple[int, int]:
    """Decode an unsigned varint, returning the value and the bytes consumed."""
    value = 0
    shift = 0
    for i, byte in enumerate(buf):
        if i == _MAX_VARINT_LEN:
            raise NodeEncodingError("varint overflows a 64-bit integer")
        if byte < 0x80:
            if i == _MAX_VARINT_LEN - 1 and byte > 1:
                raise NodeEncodingError("varint overflows a 64-bit integer")
            return value | (byte << shift), i + 1
        value |= (byte & 0x7F) << shift
        shift += 7
    raise NodeEncodingError("buffer too small to decode varint")


def encode_varint(value: int) -> bytes:
    """Encode a signed 64-bit integer as a zig-zag varint."""
    if value < _INT64_MIN or value > _INT64_MAX:
        raise NodeEncodingError(f"varint out of range: {value}")
    return encode_uvarint(((value << 1) ^ (value >> 63)) & _UINT64_MAX)


def decode_varint(buf: bytes) -> tuple[int, int]:
    """Decode a signed zig-zag varint, returning the value and the bytes consumed."""
    unsigned, n = decode_uvarint(buf)
    value = unsigned >> 1
    if unsigned & 1:
        value = ~value
    return value, n


def encode_bytes(data: Optional[bytes]) -> bytes:
    """Encode a byte string prefixed with its uvarint length."""
    data = data or b""
    return encode_uvarint(len(data)) + bytes(data)


def decode_bytes(buf: bytes) -> tuple[bytes, int]:
    """Decode a length-prefixed byte string, returning it and the bytes consumed."""
    length, n = decode_uvarint(buf)
    end = n + length
    if len(buf) < end:
        raise NodeEncodingError(f"insufficient bytes decoding bytes of length {length}")
    return bytes(buf[n:end]), end


def varint_size(value: int) -> int:
    """Number of bytes the zig-zag varint encoding of value takes."""
    return len(encode_varint(value))


def bytes_size(data: Optional[bytes]) -> int:
    """Number of bytes the length-prefixed encoding of data takes."""
    length = len(data or b"")
    return len(encode_uvarint(length)) + length


def empty_hash() -> bytes:
    """Hash of an empty tree: SHA-256 of empty input."""
    return hashlib.sha256().digest()


# ---------------------------------------------------------------------------
# Node
# ---------------------------------------------------------------------------


@dataclass
class Node:
    """A node of the tree: a leaf holding a value, or an inner node with two children."""

    key: Optional[bytes] = None
    value: Optional[bytes] = None
    version: int = 0
    size: int = 0
    subtree_height: int = 0
    hash: Optional[bytes] = None
    left_hash: Optional[bytes] = None
    right_hash: Optional[bytes] = None
    left_node: Optional["Node"] = field(default=None, compare=False, repr=False)
    right_node: Optional["Node"] = field(default=None, compare=False, repr=False)
    persisted: bool = False

    def __str__(self) -> str:
        hashstr = self.hash.hex().upper() if self.hash else "<no hash>"
        return "Node{%s:%s@%d %s;%s}#%s" % (
            (self.key or b"").hex().upper(),
            (self.value or b"").hex().upper(),
            self.version,
            (self.left_hash or b"").hex().upper(),
            (self.right_hash or b"").hex().upper(),
            hashstr,
        )

    def is_leaf(self) -> bool:
        return self.subtree_height == 0

    def clone(self, version: int) -> "Node":
        """Shallow copy of an inner node with a new version and no hash."""
        if self.is_leaf():
            raise IAVLError("attempt to copy a leaf node")
        return Node(
            key=self.key,
            subtree_height=self.subtree_height,
            version=version,
            size=self.size,
            hash=None,
            left_hash=self.left_hash,
            left_node=self.left_node,
            right_hash=self.right_hash,
            right_node=self.right_node,
            persisted=False,
        )

    # -- encoding ----------------------------------------------------------

    def encoded_size(self) -> int:
        n = 1 + varint_size(self.size) + varint_size(self.version) + bytes_size(self.key)
        if self.is_leaf():
            n += bytes_size(self.value)
        else:
            n += bytes_size(self.left_hash) + bytes_size(self.right_hash)
        return n

    def to_bytes(self) -> bytes:
        """Serialise the node for storage."""
        parts = [
            encode_varint(self.subtree_height),
            encode_varint(self.size),
            encode_varint(self.version),
            encode_bytes(self.key),
        ]
        if self.is_leaf():
            parts.append(encode_bytes(self.value))
        else:
            if self.left_hash is None:
                raise IAVLError("node.leftHash was nil in writeBytes")
            parts.append(encode_bytes(self.left_hash))
            if self.right_hash is None:
                raise IAVLError("node.rightHash was nil in writeBytes")
            parts.append(encode_bytes(self.right_hash))
        return b"".join(parts)

    def hash_bytes(self) -> bytes:
        """Bytes that are hashed to form the node hash; child hashes must be set."""
        parts = [
            encode_varint(self.subtree_height),
            encode_varint(self.size),
            encode_varint(self.version),
        ]
        if self.is_leaf():
            parts.append(encode_bytes(self.key))
            parts.append(encode_bytes(hashlib.sha256(self.value or b"").digest()))
        else:
            if self.left_hash is None or self.right_hash is None:
                raise IAVLError("found an empty child hash")
            parts.append(encode_bytes(self.left_hash))
            parts.append(encode_bytes(self.right_hash))
        return b"".join(parts)

    # -- hashing -----------------------------------------------------------

    def compute_hash(self) -> bytes:
        """Hash this node alone; descendants must already be hashed."""
        if self.hash is None:
            self.hash = hashlib.sha256(self.hash_bytes()).digest()
        return self.hash

    def hash_with_count(self) -> tuple[bytes, int]:
        """Hash the node and its in-memory descendants; return the hash and nodes hashed."""
        if self.hash is not None:
            return self.hash, 0
        count = 0
        if self.left_node is not None:
            self.left_hash, left_count = self.left_node.hash_with_count()
            count += left_count
        if self.right_node is not None:
            self.right_hash, right_count = self.right_node.hash_with_count()
            count += right_count
        self.hash = hashlib.sha256(self.hash_bytes()).digest()
        return self.hash, count + 1

    def validate(self) -> None:
        """Raise IAVLError if the node contents are inconsistent."""
        if self.key is None:
            raise IAVLError("key cannot be nil")
        if self.version <= 0:
            raise IAVLError("version must be greater than 0")
        if self.subtree_height < 0:
            raise IAVLError("height cannot be less than 0")
        if self.size < 1:
            raise IAVLError("size must be at least 1")
        if self.subtree_height == 0:
            if self.value is None:
                raise IAVLError("value cannot be nil for leaf node")
            if (
                self.left_hash is not None
                or self.left_node is not None
                or self.right_hash is not None
                or self.right_node is not None
            ):
                raise IAVLError("leaf node cannot have children")
            if self.size != 1:
                raise IAVLError("leaf nodes must have size 1")
        else:
            if self.value is not None:
                raise IAVLError("value must be nil for non-leaf node")
            if self.left_hash is None and self.right_hash is None:
                raise IAVLError("inner node must have children")

    # -- navigation --------------------------------------------------------

    def get_left_node(self, tree: _Tree) -> "Node":
        if self.left_node is not None:
            return self.left_node
        return tree.ndb.get_node(self.left_hash)

    def get_right_node(self, tree: _Tree) -> "Node":
        if self.right_node is not None:
            return self.right_node
        return tree.ndb.get_node(self.right_hash)

    def calc_height_and_size(self, tree: _Tree) -> None:
        left = self.get_left_node(tree)
        right = self.get_right_node(tree)
        self.subtree_height = max(left.subtree_height, right.subtree_height) + 1
        self.size = left.size + right.size

    def calc_balance(self, tree: _Tree) -> int:
        left = self.get_left_node(tree)
        right = self.get_right_node(tree)
        return left.subtree_height - right.subtree_height

    def has(self, tree: _Tree, key: bytes) -> bool:
        """Whether the subtree holds the given key."""
        node = self
        while True:
            if node.key == key:
                return True
            if node.is_leaf():
                return False
            node = node.get_left_node(tree) if key < node.key else node.get_right_node(tree)

    def get(self, tree: _Tree, key: bytes) -> tuple[int, Optional[bytes]]:
        """Return the leaf index of key (or where it would be) and its value or None."""
        if self.is_leaf():
            if self.key < key:
                return 1, None
            if self.key > key:
                return 0, None
            return 0, self.value
        if key < self.key:
            return self.get_left_node(tree).get(tree, key)
        right = self.get_right_node(tree)
        index, value = right.get(tree, key)
        return index + self.size - right.size, value

    def get_by_index(self, tree: _Tree, index: int) -> tuple[Optional[bytes], Optional[bytes]]:
        """Return the key and value of the leaf at the given index, or (None, None)."""
        if self.is_leaf():
            if index == 0:
                return self.key, self.value
            return None, None
        left = self.get_left_node(tree)
        if index < left.size:
            return left.get_by_index(tree, index)
        return self.get_right_node(tree).get_by_index(tree, index - left.size)

    # -- traversal ---------------------------------------------------------

    def traverse(self, tree: _Tree, ascending: bool) -> Iterator["Node"]:
        """Yield every node of the subtree in pre-order."""
        return self.traverse_in_range(tree, None, None, ascending, False, False)

    def traverse_post(self, tree: _Tree, ascending: bool) -> Iterator["Node"]:
        """Yield every node of the subtree in post-order."""
        return self.traverse_in_range(tree, None, None, ascending, False, True)

    def traverse_in_range(
        self,
        tree: _Tree,
        start: Optional[bytes],
        end: Optional[bytes],
        ascending: bool,
        inclusive: bool,
        post: bool,
    ) -> Iterator["Node"]:
        """Yield inner nodes and the leaves within [start, end) (or [start, end])."""
        stack: list[tuple[Node, bool]] = [(self, True)]
        while stack:
            node, delayed = stack.pop()
            if not delayed:
                yield node
                continue
            after_start = start is None or start < node.key
            start_or_after = after_start or start == node.key
            before_end = end is None or node.key < end or (inclusive and node.key == end)
            emit = not node.is_leaf() or (start_or_after and before_end)

            if post and emit:
                stack.append((node, False))
            if not node.is_leaf():
                if ascending:
                    if before_end:
                        stack.append((node.get_right_node(tree), True))
                    if after_start:
                        stack.append((node.get_left_node(tree), True))
                else:
                    if after_start:
                        stack.append((node.get_left_node(tree), True))
                    if before_end:
                        stack.append((node.get_right_node(tree), True))
            if not post and emit:
                yield node


def new_node(key: bytes, value: bytes, version: int) -> Node:
    """Create a leaf node."""
    return Node(key=key, value=value, subtree_height=0, size=1, version=version)


def make_node(buf: bytes) -> Node:
    """Decode a node from its stored bytes. The hash is left unset."""
    try:
        height, n = decode_varint(buf)
    except NodeEncodingError as exc:
        raise NodeEncodingError(f"decoding node.height, {exc}") from exc
    buf = buf[n:]
    if height < -128 or height > 127:
        raise NodeEncodingError("invalid height, must be int8")

    try:
        size, n = decode_varint(buf)
    except NodeEncodingError as exc:
        raise NodeEncodingError(f"decoding node.size, {exc}") from exc
    buf = buf[n:]

    try:
        version, n = decode_varint(buf)
    except NodeEncodingError as exc:
        raise NodeEncodingError(f"decoding node.version, {exc}") from exc
    buf = buf[n:]

    try:
        key, n = decode_bytes(buf)
    except NodeEncodingError as exc:
        raise NodeEncodingError(f"decoding node.key, {exc}") from exc
    buf = buf[n:]

    node = Node(subtree_height=height, size=size, version=version, key=key)
    if node.is_leaf():
        try:
            node.value, _ = decode_bytes(buf)
        except NodeEncodingError as exc:
            raise NodeEncodingError(f"decoding node.value, {exc}") from exc
    else:
        try:
            left_hash, n = decode_bytes(buf)
        except NodeEncodingError as exc:
            raise NodeEncodingError(f"decoding node.leftHash, {exc}") from exc
        buf = buf[n:]
        try:
            right_hash, _ = decode_bytes(buf)
        except NodeEncodingError as exc:
            raise NodeEncodingError(f"decoding node.rightHash, {exc}") from exc
        node.left_hash = left_hash
        node.right_hash = right_hash
    return node