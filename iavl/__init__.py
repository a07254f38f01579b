"""AVL+ tree nodes with Merkle hashing, node storage over a key-value store and read-only tree views."""

__version__ = "0.1.0"