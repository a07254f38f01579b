"""In-memory key-value store, key formats, fast-index nodes, options and caches."""

from __future__ import annotations

import bisect
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union

from iavl.node import (
    IAVLError,
    NodeEncodingError,
    bytes_size,
    decode_bytes,
    decode_varint,
    encode_bytes,
    encode_varint,
    varint_size,
)

_UINT64_MASK = (1 << 64) - 1
_INT64_SIZE = 8


def _check_key(key: Optional[bytes]) -> bytes:
    if not key:
        raise ValueError("key cannot be empty")
    return bytes(key)


def _increment_prefix(prefix: bytes) -> Optional[bytes]:
    """Smallest byte string greater than every string starting with prefix, or None."""
    out = bytearray(prefix)
    for i in range(len(out) - 1, -1, -1):
        if out[i] < 0xFF:
            out[i] += 1
            return bytes(out)
        out[i] = 0
    return None


# ---------------------------------------------------------------------------
# Key-value store
# ---------------------------------------------------------------------------


class MemDB:
    """An ordered in-memory key-value store."""

    def __init__(self) -> None:
        self._data: dict[bytes, bytes] = {}
        self._keys: list[bytes] = []

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def get(self, key: bytes) -> Optional[bytes]:
        """Return the value stored at key, or None."""
        return self._data.get(_check_key(key))

    def set(self, key: bytes, value: bytes) -> None:
        key = _check_key(key)
        if value is None:
            raise ValueError("value cannot be nil")
        if key not in self._data:
            bisect.insort(self._keys, key)
        self._data[key] = bytes(value)

    def delete(self, key: bytes) -> None:
        key = _check_key(key)
        if key in self._data:
            del self._data[key]
            del self._keys[bisect.bisect_left(self._keys, key)]

    def has(self, key: bytes) -> bool:
        return _check_key(key) in self._data

    def _items(self, start: Optional[bytes], end: Optional[bytes]) -> list[tuple[bytes, bytes]]:
        if start is not None and len(start) == 0:
            raise ValueError("key cannot be empty")
        if end is not None and len(end) == 0:
            raise ValueError("key cannot be empty")
        lo = 0 if start is None else bisect.bisect_left(self._keys, start)
        hi = len(self._keys) if end is None else bisect.bisect_left(self._keys, end)
        return [(k, self._data[k]) for k in self._keys[lo:hi]]

    def iterator(self, start: Optional[bytes], end: Optional[bytes]) -> Iterator[tuple[bytes, bytes]]:
        """Iterate (key, value) pairs in [start, end) in ascending order.

        The pairs are taken when the iterator is created, so the store may be
        modified while iterating.
        """
        return iter(self._items(start, end))

    def reverse_iterator(
        self, start: Optional[bytes], end: Optional[bytes]
    ) -> Iterator[tuple[bytes, bytes]]:
        """Iterate (key, value) pairs in [start, end) in descending order."""
        return iter(reversed(self._items(start, end)))

    def iterate_prefix(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        """Iterate (key, value) pairs whose keys start with prefix, ascending."""
        if not prefix:
            return self.iterator(None, None)
        return self.iterator(bytes(prefix), _increment_prefix(bytes(prefix)))

    def new_batch(self) -> "Batch":
        return Batch(self)


class Batch:
    """A group of writes applied to a MemDB together.

    A batch can be written once; writing also closes it.
    """

    def __init__(self, db: MemDB) -> None:
        self._db = db
        self._ops: Optional[list[tuple[bytes, Optional[bytes]]]] = []

    def __enter__(self) -> "Batch":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _open_ops(self) -> list[tuple[bytes, Optional[bytes]]]:
        if self._ops is None:
            raise IAVLError("batch has been written or closed")
        return self._ops

    def set(self, key: bytes, value: bytes) -> None:
        key = _check_key(key)
        if value is None:
            raise ValueError("value cannot be nil")
        self._open_ops().append((key, bytes(value)))

    def delete(self, key: bytes) -> None:
        key = _check_key(key)
        self._open_ops().append((key, None))

    def write(self) -> None:
        for key, value in self._open_ops():
            if value is None:
                self._db.delete(key)
            else:
                self._db.set(key, value)
        self.close()

    def write_sync(self) -> None:
        self.write()

    def close(self) -> None:
        self._ops = None


# ---------------------------------------------------------------------------
# Key formats
# ---------------------------------------------------------------------------

Segment = Union[int, bytes]


class KeyFormat:
    """A key layout: a one-byte prefix followed by fixed-length segments.

    A trailing segment of length 0 takes the rest of the key. Integer
    arguments are written as 8-byte big-endian values; when scanning, 8-byte
    segments are read back as signed integers.
    """

    def __init__(self, prefix: Union[int, bytes], *layout: int) -> None:
        self._prefix = bytes([prefix]) if isinstance(prefix, int) else bytes(prefix)
        self.layout = tuple(layout)
        if any(length == 0 for length in self.layout[:-1]):
            raise ValueError("only the last segment may have unfixed length")

    def prefix(self) -> str:
        return self._prefix.decode("latin-1")

    def key_bytes(self, *segments: bytes) -> bytes:
        """Build a key from byte segments, left-padding fixed segments with zeros."""
        if len(segments) > len(self.layout):
            raise ValueError(
                f"too many segments passed to KeyFormat.key_bytes, max: {len(self.layout)}"
            )
        out = bytearray(self._prefix)
        for length, segment in zip(self.layout, segments):
            segment = bytes(segment)
            if length == 0:
                out += segment
                continue
            if len(segment) > length:
                raise ValueError(
                    f"key segment is too long: {len(segment)} bytes, max {length}"
                )
            out += bytes(length - len(segment)) + segment
        return bytes(out)

    def key(self, *args: Segment) -> bytes:
        """Build a key from integers and byte strings."""
        segments = [
            (arg & _UINT64_MASK).to_bytes(_INT64_SIZE, "big") if isinstance(arg, int) else bytes(arg)
            for arg in args
        ]
        return self.key_bytes(*segments)

    def scan_bytes(self, key: bytes) -> list[bytes]:
        """Split a key into its raw segments; a short key yields fewer segments."""
        segments: list[bytes] = []
        n = len(self._prefix)
        for length in self.layout:
            if length == 0 or n + length > len(key):
                segments.append(bytes(key[n:]))
                break
            segments.append(bytes(key[n : n + length]))
            n += length
        return segments

    def scan(self, key: bytes) -> tuple[Segment, ...]:
        """Split a key into segments, decoding 8-byte segments as signed integers."""
        return tuple(
            int.from_bytes(segment, "big", signed=True)
            if length == _INT64_SIZE and len(segment) == _INT64_SIZE
            else segment
            for length, segment in zip(self.layout, self.scan_bytes(key))
        )


# ---------------------------------------------------------------------------
# Fast index nodes
# ---------------------------------------------------------------------------


@dataclass
class FastNode:
    """A key-value pair of the latest state with the version it was last written at."""

    key: bytes
    value: bytes
    version_last_updated_at: int

    def encoded_size(self) -> int:
        return varint_size(self.version_last_updated_at) + bytes_size(self.value)

    def to_bytes(self) -> bytes:
        return encode_varint(self.version_last_updated_at) + encode_bytes(self.value)


def deserialize_fast_node(key: bytes, buf: bytes) -> FastNode:
    """Decode a fast node stored under key."""
    try:
        version, n = decode_varint(buf)
    except NodeEncodingError as exc:
        raise NodeEncodingError(f"decoding fastnode.version, {exc}") from exc
    try:
        value, _ = decode_bytes(buf[n:])
    except NodeEncodingError as exc:
        raise NodeEncodingError(f"decoding fastnode.value, {exc}") from exc
    return FastNode(key=bytes(key), value=value, version_last_updated_at=version)


# ---------------------------------------------------------------------------
# Options, statistics and caches
# ---------------------------------------------------------------------------


@dataclass
class Stats:
    """Cache hit and miss counters."""

    cache_hit_cnt: int = 0
    cache_miss_cnt: int = 0
    fast_cache_hit_cnt: int = 0
    fast_cache_miss_cnt: int = 0

    def inc_cache_hit(self) -> None:
        self.cache_hit_cnt += 1

    def inc_cache_miss(self) -> None:
        self.cache_miss_cnt += 1

    def inc_fast_cache_hit(self) -> None:
        self.fast_cache_hit_cnt += 1

    def inc_fast_cache_miss(self) -> None:
        self.fast_cache_miss_cnt += 1


@dataclass
class Options:
    """Tree storage options."""

    sync: bool = False
    initial_version: int = 0
    stat: Stats = field(default_factory=Stats)


class LRUCache:
    """A least-recently-used cache holding at most max_size items."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        self._items: OrderedDict[bytes, Any] = OrderedDict()

    def __len__(self) -> int:
        return len(self._items)

    def get(self, key: bytes) -> Any:
        """Return the cached item and mark it as recently used, or None."""
        key = bytes(key)
        if key not in self._items:
            return None
        self._items.move_to_end(key)
        return self._items[key]

    def add(self, key: bytes, item: Any) -> Any:
        """Insert or replace an item; return the replaced or evicted item, or None."""
        key = bytes(key)
        if key in self._items:
            old = self._items[key]
            self._items[key] = item
            self._items.move_to_end(key)
            return old
        self._items[key] = item
        if len(self._items) > self.max_size:
            _, evicted = self._items.popitem(last=False)
            return evicted
        return None

    def remove(self, key: bytes) -> Any:
        """Drop an item; return it, or None if it was not cached."""
        return self._items.pop(bytes(key), None)