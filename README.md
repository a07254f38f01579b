# iavl

Building blocks of a versioned AVL+ tree in pure Python: tree nodes with
their binary encoding and Merkle hashing, a store that keeps nodes, version
roots, orphan records and a flat "fast" index in a key-value store, a
read-only view of the tree at one saved version, and the AVL rotations used
to rebalance a tree being modified.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `iavl.node` – `Node`, `new_node`, `make_node`, and the varint and
  length-prefixed byte encodings (`encode_varint`, `decode_varint`,
  `encode_uvarint`, `decode_uvarint`, `encode_bytes`, `decode_bytes`,
  `varint_size`, `bytes_size`). `Node.to_bytes()` and `make_node()` round-trip
  a node; `Node.compute_hash()` and `Node.hash_with_count()` give its SHA-256
  Merkle hash; `Node.validate()` checks its contents.
- `iavl.storage` – `MemDB` (an ordered in-memory key-value store with
  iterators and write batches), `Batch`, `KeyFormat`, `FastNode` and
  `deserialize_fast_node`, `Options`, `Stats` and `LRUCache`.
- `iavl.nodedb` – `NodeDB`: saves and loads nodes by hash, records version
  roots and orphans, deletes single versions, ranges of versions or every
  version from a given one upwards, and keeps the fast index and its storage
  version marker.
- `iavl.immutable_tree` – `ImmutableTree`: `get`, `get_with_index`,
  `get_by_index`, `has`, `iterate`, `iterator`, `size`, `height`, `hash` and
  `node_size` over one version.
- `iavl.avl` – `rotate_right`, `rotate_left` and `balance`, working on any
  object with `ndb` and `version` attributes.

## Example

```python
from iavl.immutable_tree import ImmutableTree
from iavl.node import Node, new_node
from iavl.nodedb import NodeDB
from iavl.storage import MemDB

db = MemDB()
ndb = NodeDB(db, 100)

left = new_node(b"a", b"1", 1)
right = new_node(b"b", b"2", 1)
root = Node(key=b"b", version=1, subtree_height=1, size=2,
            left_node=left, right_node=right)

ndb.save_branch(root)       # hashes and stores the three nodes
ndb.save_root(root, 1)
ndb.commit()

tree = ImmutableTree(ndb, ndb.get_node(ndb.get_root(1)), 1)
tree.get(b"a")               # b"1"
tree.get_with_index(b"b")    # (1, b"2")
list(tree.iterator(None, None, True))   # [(b"a", b"1"), (b"b", b"2")]
tree.hash() == root.hash     # True
```

`NodeDB(db, cache_size, opts)` takes an `Options` from `iavl.storage`
(`sync`, `initial_version`, `stat`); its `stat` counters record node and
fast-node cache hits and misses.

## What this package does not do

There is no mutable working tree here: nothing sets or removes keys, keeps a
list of orphaned nodes while editing, saves a new version, loads or rolls back
versions, or builds the fast index from a tree. Those steps have to be driven
by hand with `NodeDB` and `iavl.avl`, as in the example above. Storage is the
in-memory `MemDB` only; nothing is written to disk. There is no command-line
tool.

## Errors

Failures raise exceptions derived from `iavl.node.IAVLError`: decoding
problems raise `iavl.node.NodeEncodingError`, and `iavl.nodedb` adds
`NodeMissingHashError`, `NodeAlreadyPersistedError` and
`RootMissingHashError`.