"""Persistent storage of tree nodes, roots, orphans and the fast index."""

from __future__ import annotations

import dataclasses
import hashlib
import threading
from typing import Iterator, Optional

from iavl.node import IAVLError, Node, NodeEncodingError, make_node
from iavl.storage import (
    FastNode,
    KeyFormat,
    LRUCache,
    MemDB,
    Options,
    deserialize_fast_node,
)

INT64_SIZE = 8
HASH_SIZE = hashlib.sha256().digest_size
GENESIS_VERSION = 1
STORAGE_VERSION_KEY = "storage_version"
# The latest saved version is stored next to the storage version, separated by
# this delimiter, once fast storage is enabled. It lets a downgrade followed by
# a re-upgrade be detected so that stale fast nodes can be rebuilt.
FAST_STORAGE_VERSION_DELIMITER = "-"
DEFAULT_STORAGE_VERSION_VALUE = "1.0.0"
FAST_STORAGE_VERSION_VALUE = "1.1.0"
FAST_NODE_CACHE_SIZE = 100000
MAX_VERSION = (1 << 63) - 1

# n<hash>: nodes indexed by their hash.
NODE_KEY_FORMAT = KeyFormat(b"n", HASH_SIZE)
# o<last-version><first-version><hash>: orphans keyed by their lifetime.
ORPHAN_KEY_FORMAT = KeyFormat(b"o", INT64_SIZE, INT64_SIZE, HASH_SIZE)
# f<key>: fast index of the latest state.
FAST_KEY_FORMAT = KeyFormat(b"f", 0)
# m<key>: metadata such as the storage version.
METADATA_KEY_FORMAT = KeyFormat(b"m", 0)
# r<version>: root hashes indexed by version.
ROOT_KEY_FORMAT = KeyFormat(b"r", INT64_SIZE)

ERR_INVALID_FAST_STORAGE_VERSION = (
    "Fast storage version must be in the format <storage version>"
    f"{FAST_STORAGE_VERSION_DELIMITER}<latest fast cache version>"
)


class NodeMissingHashError(IAVLError):
    """Raised when a node without a hash is looked up or saved."""

    def __init__(self, message: str = "node does not have a hash") -> None:
        super().__init__(message)


class NodeAlreadyPersistedError(IAVLError):
    """Raised when saving a node that is already persisted."""

    def __init__(
        self, message: str = "shouldn't be calling save on an already persisted node"
    ) -> None:
        super().__init__(message)


class RootMissingHashError(IAVLError):
    """Raised when saving a root node that has no hash."""

    def __init__(self, message: str = "root hash must not be empty") -> None:
        super().__init__(message)


class NodeDB:
    """Node storage over a key-value store, with batched writes and caches."""

    def __init__(self, db: MemDB, cache_size: int, opts: Optional[Options] = None) -> None:
        self._lock = threading.RLock()
        self.db = db
        self.batch = db.new_batch()
        self.opts = dataclasses.replace(opts) if opts is not None else Options()
        self.version_readers: dict[int, int] = {}
        self.latest_version = 0  # 0 means not yet known
        self.node_cache = LRUCache(cache_size)
        self.fast_node_cache = LRUCache(FAST_NODE_CACHE_SIZE)
        try:
            stored = db.get(METADATA_KEY_FORMAT.key(STORAGE_VERSION_KEY.encode()))
        except Exception:  # an unreadable store falls back to the default version
            stored = None
        self.storage_version = (
            stored.decode() if stored is not None else DEFAULT_STORAGE_VERSION_VALUE
        )

    # -- nodes -------------------------------------------------------------

    def get_node(self, hash: bytes) -> Node:
        """Load a node from the cache or the store; children are not loaded."""
        with self._lock:
            if not hash:
                raise NodeMissingHashError()
            cached = self.node_cache.get(hash)
            if cached is not None:
                self.opts.stat.inc_cache_hit()
                return cached
            self.opts.stat.inc_cache_miss()

            buf = self.db.get(self.node_key(hash))
            if buf is None:
                raise IAVLError(
                    f"Value missing for hash {hash.hex()} corresponding to nodeKey "
                    f"{self.node_key(hash).hex()}"
                )
            try:
                node = make_node(buf)
            except NodeEncodingError as exc:
                raise IAVLError(f"Error reading Node. bytes: {buf.hex()}, error: {exc}") from exc
            node.hash = bytes(hash)
            node.persisted = True
            self.node_cache.add(node.hash, node)
            return node

    def save_node(self, node: Node) -> None:
        """Write a hashed, unpersisted node to the batch."""
        with self._lock:
            if node.hash is None:
                raise NodeMissingHashError()
            if node.persisted:
                raise NodeAlreadyPersistedError()
            self.batch.set(self.node_key(node.hash), node.to_bytes())
            node.persisted = True
            self.node_cache.add(node.hash, node)

    def has(self, hash: bytes) -> bool:
        """Whether a node with the given hash is stored."""
        return self.db.get(self.node_key(hash)) is not None

    def save_branch(self, node: Node) -> bytes:
        """Save the node and its unpersisted descendants; return the node hash.

        Child references are dropped once saved.
        """
        if node.persisted:
            return node.hash
        if node.left_node is not None:
            node.left_hash = self.save_branch(node.left_node)
        if node.right_node is not None:
            node.right_hash = self.save_branch(node.right_node)
        node.compute_hash()
        self.save_node(node)
        # Flushing early keeps memory low while writing a genesis tree.
        if node.version <= GENESIS_VERSION:
            self.reset_batch()
        node.left_node = None
        node.right_node = None
        return node.hash

    def reset_batch(self) -> None:
        """Write the current batch and start a new one."""
        if self.opts.sync:
            self.batch.write_sync()
        else:
            self.batch.write()
        self.batch.close()
        self.batch = self.db.new_batch()

    # -- fast index --------------------------------------------------------

    def get_fast_node(self, key: bytes) -> Optional[FastNode]:
        """Return the fast node for key, or None if there is none."""
        if not self.has_upgraded_to_fast_storage():
            raise IAVLError("storage version is not fast")
        with self._lock:
            if not key:
                raise IAVLError("nodeDB.GetFastNode() requires key, len(key) equals 0")
            cached = self.fast_node_cache.get(key)
            if cached is not None:
                self.opts.stat.inc_fast_cache_hit()
                return cached
            self.opts.stat.inc_fast_cache_miss()

            buf = self.db.get(self.fast_node_key(key))
            if buf is None:
                return None
            try:
                fast_node = deserialize_fast_node(key, buf)
            except NodeEncodingError as exc:
                raise IAVLError(
                    f"error reading FastNode. bytes: {buf.hex()}, error: {exc}"
                ) from exc
            self.fast_node_cache.add(fast_node.key, fast_node)
            return fast_node

    def save_fast_node(self, node: FastNode) -> None:
        """Write a fast node to the batch and cache it."""
        with self._lock:
            self._save_fast_node(node, True)

    def save_fast_node_no_cache(self, node: FastNode) -> None:
        """Write a fast node to the batch without caching it."""
        with self._lock:
            self._save_fast_node(node, False)

    def _save_fast_node(self, node: FastNode, add_to_cache: bool) -> None:
        if node.key is None:
            raise IAVLError("cannot have FastNode with a nil value for key")
        self.batch.set(self.fast_node_key(node.key), node.to_bytes())
        if add_to_cache:
            self.fast_node_cache.add(node.key, node)

    def delete_fast_node(self, key: bytes) -> None:
        with self._lock:
            self.batch.delete(self.fast_node_key(key))
            self.fast_node_cache.remove(key)

    def fast_iterator(
        self, start: Optional[bytes], end: Optional[bytes], ascending: bool
    ) -> Iterator[tuple[bytes, bytes]]:
        """Iterate raw (prefixed key, encoded value) pairs of the fast index in [start, end)."""
        start_key = FAST_KEY_FORMAT.key_bytes(start) if start is not None else FAST_KEY_FORMAT.key()
        if end is not None:
            end_key = FAST_KEY_FORMAT.key_bytes(end)
        else:
            prefix = FAST_KEY_FORMAT.key()
            end_key = bytes([prefix[0] + 1]) + prefix[1:]
        if ascending:
            return self.db.iterator(start_key, end_key)
        return self.db.reverse_iterator(start_key, end_key)

    # -- storage version ---------------------------------------------------

    def set_fast_storage_version_to_batch(self) -> None:
        """Mark storage as fast at the current latest version; needs a commit to persist."""
        if self.storage_version >= FAST_STORAGE_VERSION_VALUE:
            versions = self.storage_version.split(FAST_STORAGE_VERSION_DELIMITER)
            if len(versions) > 2:
                raise IAVLError(ERR_INVALID_FAST_STORAGE_VERSION)
            new_version = versions[0]
        else:
            new_version = FAST_STORAGE_VERSION_VALUE

        new_version += FAST_STORAGE_VERSION_DELIMITER + str(self.get_latest_version())
        self.batch.set(
            METADATA_KEY_FORMAT.key(STORAGE_VERSION_KEY.encode()), new_version.encode()
        )
        self.storage_version = new_version

    def has_upgraded_to_fast_storage(self) -> bool:
        return self.storage_version >= FAST_STORAGE_VERSION_VALUE

    def should_force_fast_storage_upgrade(self) -> bool:
        """Whether the fast index was built at a version other than the latest one."""
        versions = self.storage_version.split(FAST_STORAGE_VERSION_DELIMITER)
        if len(versions) == 2:
            if versions[1] != str(self.get_latest_version()):
                return True
        return False

    # -- deletion ----------------------------------------------------------

    def delete_version(self, version: int, check_latest_version: bool) -> None:
        """Delete a version's orphans and root entry."""
        with self._lock:
            readers = self.version_readers.get(version, 0)
            if readers > 0:
                raise IAVLError(
                    f"unable to delete version {version}, it has {readers} active readers"
                )
            self._delete_orphans(version)
            self._delete_root(version, check_latest_version)

    def delete_versions_from(self, version: int) -> None:
        """Permanently delete all versions from the given one upwards."""
        latest = self.get_latest_version()
        if latest < version:
            return
        root = self.get_root(latest)
        if root is None:
            raise IAVLError(f"root for version {latest} not found")

        with self._lock:
            for v, readers in self.version_readers.items():
                if v >= version and readers != 0:
                    raise IAVLError(f"unable to delete version {v} with {readers} active readers")

            self._delete_nodes_from(version, root)

            # Orphans born at or after version go with their nodes; orphans
            # ending at version-1 or later are live again and lose their entry.
            for key, hash in self._traverse_range(
                ORPHAN_KEY_FORMAT.key(version - 1), ORPHAN_KEY_FORMAT.key(MAX_VERSION)
            ):
                to_version, from_version = ORPHAN_KEY_FORMAT.scan(key)[:2]
                if from_version >= version:
                    self.batch.delete(key)
                    self.batch.delete(self.node_key(hash))
                    self.node_cache.remove(hash)
                elif to_version >= version - 1:
                    self.batch.delete(key)

            for key, _ in self._traverse_range(
                ROOT_KEY_FORMAT.key(version), ROOT_KEY_FORMAT.key(MAX_VERSION)
            ):
                self.batch.delete(key)

    def delete_versions_range(self, from_version: int, to_version: int) -> None:
        """Delete the versions in [from_version, to_version)."""
        if from_version >= to_version:
            raise IAVLError("toVersion must be greater than fromVersion")
        if to_version == 0:
            raise IAVLError("toVersion must be greater than 0")

        with self._lock:
            latest = self.get_latest_version()
            if latest < to_version:
                raise IAVLError(f"cannot delete latest saved version ({latest})")

            predecessor = self.get_previous_version(from_version)
            for v, readers in self.version_readers.items():
                if predecessor < v < to_version and readers != 0:
                    raise IAVLError(f"unable to delete version {v} with {readers} active readers")

            for version in range(from_version, to_version):
                for key, hash in self._traverse_prefix(ORPHAN_KEY_FORMAT.key(version)):
                    _, orphan_from = ORPHAN_KEY_FORMAT.scan(key)[:2]
                    self.batch.delete(key)
                    if orphan_from > predecessor:
                        self.batch.delete(self.node_key(hash))
                        self.node_cache.remove(hash)
                    else:
                        self._save_orphan(hash, orphan_from, predecessor)

            for key, _ in self._traverse_range(
                ROOT_KEY_FORMAT.key(from_version), ROOT_KEY_FORMAT.key(to_version)
            ):
                self.batch.delete(key)

    def _delete_nodes_from(self, version: int, hash: bytes) -> None:
        if not hash:
            return
        node = self.get_node(hash)
        if node.version < version:
            # Children are never newer than their parent.
            return
        if node.left_hash is not None:
            self._delete_nodes_from(version, node.left_hash)
        if node.right_hash is not None:
            self._delete_nodes_from(version, node.right_hash)
        self.batch.delete(self.node_key(hash))
        self.node_cache.remove(hash)

    def _delete_orphans(self, version: int) -> None:
        predecessor = self.get_previous_version(version)
        for key, hash in self._traverse_prefix(ORPHAN_KEY_FORMAT.key(version)):
            to_version, from_version = ORPHAN_KEY_FORMAT.scan(key)[:2]
            self.batch.delete(key)
            if predecessor < from_version or from_version == to_version:
                self.batch.delete(self.node_key(hash))
                self.node_cache.remove(hash)
            else:
                self._save_orphan(hash, from_version, predecessor)

    def _delete_root(self, version: int, check_latest_version: bool) -> None:
        if check_latest_version and version == self.get_latest_version():
            raise IAVLError("tried to delete latest version")
        self.batch.delete(self.root_key(version))

    # -- orphans -----------------------------------------------------------

    def save_orphans(self, version: int, orphans: dict[bytes, int]) -> None:
        """Record nodes orphaned while building version, keyed by hash with their first version."""
        with self._lock:
            to_version = self.get_previous_version(version)
            for hash, from_version in orphans.items():
                self._save_orphan(bytes(hash), from_version, to_version)

    def _save_orphan(self, hash: bytes, from_version: int, to_version: int) -> None:
        if from_version > to_version:
            raise IAVLError(
                f"orphan expires before it comes alive.  {from_version} > {to_version}"
            )
        self.batch.set(self.orphan_key(from_version, to_version, hash), hash)

    # -- keys --------------------------------------------------------------

    def node_key(self, hash: bytes) -> bytes:
        return NODE_KEY_FORMAT.key_bytes(hash)

    def fast_node_key(self, key: bytes) -> bytes:
        return FAST_KEY_FORMAT.key_bytes(key)

    def orphan_key(self, from_version: int, to_version: int, hash: bytes) -> bytes:
        return ORPHAN_KEY_FORMAT.key(to_version, from_version, hash)

    def root_key(self, version: int) -> bytes:
        return ROOT_KEY_FORMAT.key(version)

    # -- versions and roots ------------------------------------------------

    def get_latest_version(self) -> int:
        if self.latest_version == 0:
            self.latest_version = self.get_previous_version(MAX_VERSION)
        return self.latest_version

    def update_latest_version(self, version: int) -> None:
        if self.latest_version < version:
            self.latest_version = version

    def reset_latest_version(self, version: int) -> None:
        self.latest_version = version

    def get_previous_version(self, version: int) -> int:
        """The highest saved version below version, or 0."""
        for key, _ in self.db.reverse_iterator(ROOT_KEY_FORMAT.key(1), ROOT_KEY_FORMAT.key(version)):
            return ROOT_KEY_FORMAT.scan(key)[0]
        return 0

    def get_first_version(self) -> int:
        """The lowest saved version, or 0 if there is none."""
        for key, _ in self.db.iterate_prefix(ROOT_KEY_FORMAT.key()):
            return ROOT_KEY_FORMAT.scan(key)[0]
        return 0

    def has_root(self, version: int) -> bool:
        return self.db.has(self.root_key(version))

    def get_root(self, version: int) -> Optional[bytes]:
        """The root hash of version, b"" for an empty tree, or None if not saved."""
        return self.db.get(self.root_key(version))

    def get_roots(self) -> dict[int, bytes]:
        return {
            ROOT_KEY_FORMAT.scan(key)[0]: value
            for key, value in self._traverse_prefix(ROOT_KEY_FORMAT.key())
        }

    def save_root(self, root: Node, version: int) -> None:
        if not root.hash:
            raise RootMissingHashError()
        self._save_root(root.hash, version)

    def save_empty_root(self, version: int) -> None:
        self._save_root(b"", version)

    def _save_root(self, hash: bytes, version: int) -> None:
        with self._lock:
            latest = self.get_latest_version()
            # The first version may be arbitrary; later ones must follow on.
            if latest > 0 and version != latest + 1:
                raise IAVLError(
                    f"must save consecutive versions; expected {latest + 1}, got {version}"
                )
            self.batch.set(self.root_key(version), hash)
            self.update_latest_version(version)

    def commit(self) -> None:
        """Write the pending batch to the store."""
        with self._lock:
            if self.opts.sync:
                self.batch.write_sync()
            else:
                self.batch.write()
            self.batch.close()
            self.batch = self.db.new_batch()

    def incr_version_readers(self, version: int) -> None:
        with self._lock:
            self.version_readers[version] = self.version_readers.get(version, 0) + 1

    def decr_version_readers(self, version: int) -> None:
        with self._lock:
            if self.version_readers.get(version, 0) > 0:
                self.version_readers[version] -= 1

    # -- traversal and inspection -----------------------------------------

    def _traverse_range(
        self, start: Optional[bytes], end: Optional[bytes]
    ) -> Iterator[tuple[bytes, bytes]]:
        return self.db.iterator(start, end)

    def _traverse_prefix(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        return self.db.iterate_prefix(prefix)

    def traverse_nodes(self) -> Iterator[Node]:
        """Yield every stored node, ordered by key."""
        nodes = []
        for key, value in self._traverse_prefix(NODE_KEY_FORMAT.key()):
            node = make_node(value)
            node.hash = NODE_KEY_FORMAT.scan(key)[0]
            nodes.append(node)
        nodes.sort(key=lambda n: n.key)
        yield from nodes

    def leaf_nodes(self) -> list[Node]:
        return [node for node in self.traverse_nodes() if node.is_leaf()]

    def nodes(self) -> list[Node]:
        return list(self.traverse_nodes())

    def orphans(self) -> list[bytes]:
        """Hashes of all recorded orphans."""
        return [value for _, value in self._traverse_prefix(ORPHAN_KEY_FORMAT.key())]

    def size(self) -> int:
        """Number of entries in the store."""
        return sum(1 for _ in self._traverse_range(None, None))

    def dump(self) -> str:
        """Human-readable listing of roots, orphans and nodes."""
        lines: list[str] = []
        for key, value in self._traverse_prefix(ROOT_KEY_FORMAT.key()):
            lines.append(f"{key.decode('latin-1')}: {value.hex()}\n")
        lines.append("\n")
        for key, value in self._traverse_prefix(ORPHAN_KEY_FORMAT.key()):
            lines.append(f"{key.decode('latin-1')}: {value.hex()}\n")
        lines.append("\n")
        prefix = NODE_KEY_FORMAT.prefix()
        for node in self.traverse_nodes():
            hash_hex = f"{node.hash.hex():>40}"
            key = node.key.decode("latin-1")
            if not node.hash:
                lines.append("\n")
            elif node.value is None and node.subtree_height > 0:
                lines.append(
                    f"{prefix}{hash_hex}: {key}   {'':<16} "
                    f"h={node.subtree_height} version={node.version}\n"
                )
            else:
                value = node.value.decode("latin-1")
                lines.append(
                    f"{prefix}{hash_hex}: {key} = {value:<16} "
                    f"h={node.subtree_height} version={node.version}\n"
                )
        return "-\n" + "".join(lines) + "-"