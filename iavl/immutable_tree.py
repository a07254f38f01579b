"""A read-only view of the tree at one version."""

from __future__ import annotations

from typing import Callable, Iterator, Optional

from iavl.node import IAVLError, Node, empty_hash
from iavl.nodedb import FAST_KEY_FORMAT, NodeDB
from iavl.storage import deserialize_fast_node

_FAST_PREFIX_LEN = len(FAST_KEY_FORMAT.key())


class ImmutableTree:
    """A tree rooted at a fixed version, backed by a NodeDB.

    Reads go through the fast index when it is enabled and the tree is at the
    latest saved version; otherwise they walk the tree nodes.
    """

    def __init__(
        self,
        ndb: NodeDB,
        root: Optional[Node] = None,
        version: int = 0,
        skip_fast_storage_upgrade: bool = False,
    ) -> None:
        self.ndb = ndb
        self.root = root
        self.version = version
        self.skip_fast_storage_upgrade = skip_fast_storage_upgrade

    def __repr__(self) -> str:
        return f"ImmutableTree(version={self.version}, size={self.size()})"

    def size(self) -> int:
        """Number of leaves (key-value pairs) in the tree."""
        return 0 if self.root is None else self.root.size

    def height(self) -> int:
        """Height of the root node; 0 for an empty tree or a single leaf."""
        return 0 if self.root is None else self.root.subtree_height

    def hash(self) -> bytes:
        """Root hash, hashing any unhashed nodes; the empty-input hash for an empty tree."""
        if self.root is None:
            return empty_hash()
        root_hash, _ = self.root.hash_with_count()
        return root_hash

    def is_fast_cache_enabled(self) -> bool:
        """Whether the fast index is usable: storage is upgraded and this is the latest version."""
        return (
            self.version == self.ndb.get_latest_version()
            and self.ndb.has_upgraded_to_fast_storage()
        )

    def _fast_reads(self) -> bool:
        return not self.skip_fast_storage_upgrade and self.is_fast_cache_enabled()

    def get(self, key: bytes) -> Optional[bytes]:
        """Value stored at key, or None."""
        if self.root is None:
            return None
        if self._fast_reads():
            try:
                fast_node = self.ndb.get_fast_node(key)
            except IAVLError:
                fast_node = None
                _, value = self.root.get(self, key)
                return value
            if fast_node is None:
                # The fast index holds the live state, so at the latest
                # version a missing fast node means a missing key.
                if self.version == self.ndb.latest_version:
                    return None
            elif fast_node.version_last_updated_at <= self.version:
                return fast_node.value
        _, value = self.root.get(self, key)
        return value

    def get_with_index(self, key: bytes) -> tuple[int, Optional[bytes]]:
        """Leaf index of key (or where it would be inserted) and its value or None."""
        if self.root is None:
            return 0, None
        return self.root.get(self, key)

    def get_by_index(self, index: int) -> tuple[Optional[bytes], Optional[bytes]]:
        """Key and value of the leaf at index, or (None, None) if out of range."""
        if self.root is None:
            return None, None
        return self.root.get_by_index(self, index)

    def has(self, key: bytes) -> bool:
        """Whether key is stored in the tree."""
        if self.root is None:
            return False
        return self.root.has(self, key)

    def _tree_items(
        self, start: Optional[bytes], end: Optional[bytes], ascending: bool
    ) -> Iterator[tuple[bytes, bytes]]:
        if self.root is None:
            return
        for node in self.root.traverse_in_range(self, start, end, ascending, False, False):
            if node.is_leaf():
                yield node.key, node.value

    def _fast_items(
        self, start: Optional[bytes], end: Optional[bytes], ascending: bool
    ) -> Iterator[tuple[bytes, bytes]]:
        for raw_key, raw_value in self.ndb.fast_iterator(start, end, ascending):
            fast_node = deserialize_fast_node(raw_key[_FAST_PREFIX_LEN:], raw_value)
            yield fast_node.key, fast_node.value

    def iterator(
        self, start: Optional[bytes], end: Optional[bytes], ascending: bool
    ) -> Iterator[tuple[bytes, bytes]]:
        """Iterate (key, value) pairs with keys in [start, end)."""
        if self._fast_reads():
            return self._fast_items(start, end, ascending)
        return self._tree_items(start, end, ascending)

    def iterate(self, fn: Callable[[bytes, bytes], bool]) -> bool:
        """Call fn on every pair in key order; return True if fn stopped the walk."""
        if self.root is None:
            return False
        return any(fn(key, value) for key, value in self.iterator(None, None, True))

    def node_size(self) -> int:
        """Number of nodes, inner and leaf, in the tree."""
        if self.root is None:
            return 0
        return sum(1 for _ in self.root.traverse(self, True))

    def clone(self) -> "ImmutableTree":
        """Shallow copy sharing the root node and the node store."""
        return ImmutableTree(
            self.ndb, self.root, self.version, self.skip_fast_storage_upgrade
        )