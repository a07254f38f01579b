"""AVL rotations and rebalancing used when the working tree is modified."""

from __future__ import annotations

from typing import Protocol

from iavl.node import IAVLError, Node
from iavl.nodedb import NodeDB


class _WorkingTree(Protocol):
    ndb: NodeDB
    version: int


def rotate_right(tree: _WorkingTree, node: Node) -> tuple[Node, Node]:
    """Rotate node to the right; return the new subtree root and the orphaned left child."""
    version = tree.version + 1

    node = node.clone(version)
    orphaned = node.get_left_node(tree)
    new_node = orphaned.clone(version)

    moved_hash, moved_node = new_node.right_hash, new_node.right_node
    new_node.right_hash, new_node.right_node = node.hash, node
    node.left_hash, node.left_node = moved_hash, moved_node

    node.calc_height_and_size(tree)
    new_node.calc_height_and_size(tree)
    return new_node, orphaned


def rotate_left(tree: _WorkingTree, node: Node) -> tuple[Node, Node]:
    """Rotate node to the left; return the new subtree root and the orphaned right child."""
    version = tree.version + 1

    node = node.clone(version)
    orphaned = node.get_right_node(tree)
    new_node = orphaned.clone(version)

    moved_hash, moved_node = new_node.left_hash, new_node.left_node
    new_node.left_hash, new_node.left_node = node.hash, node
    node.right_hash, node.right_node = moved_hash, moved_node

    node.calc_height_and_size(tree)
    new_node.calc_height_and_size(tree)
    return new_node, orphaned


def balance(tree: _WorkingTree, node: Node, orphans: list[Node]) -> Node:
    """Rebalance an unpersisted node, appending replaced nodes to orphans.

    Returns the root of the rebalanced subtree, which is node itself when no
    rotation is needed.
    """
    if node.persisted:
        raise IAVLError("unexpected balance() call on persisted node")

    node_balance = node.calc_balance(tree)

    if node_balance > 1:
        left = node.get_left_node(tree)
        if left.calc_balance(tree) >= 0:
            # Left-left case.
            new_node, orphaned = rotate_right(tree, node)
            orphans.append(orphaned)
            return new_node
        # Left-right case.
        node.left_hash = None
        node.left_node, left_orphaned = rotate_left(tree, left)
        new_node, right_orphaned = rotate_right(tree, node)
        orphans.extend((left, left_orphaned, right_orphaned))
        return new_node

    if node_balance < -1:
        right = node.get_right_node(tree)
        if right.calc_balance(tree) <= 0:
            # Right-right case.
            new_node, orphaned = rotate_left(tree, node)
            orphans.append(orphaned)
            return new_node
        # Right-left case.
        node.right_hash = None
        node.right_node, right_orphaned = rotate_right(tree, right)
        new_node, left_orphaned = rotate_left(tree, node)
        orphans.extend((right, left_orphaned, right_orphaned))
        return new_node

    return node