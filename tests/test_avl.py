import pytest

from iavl.avl import balance, rotate_left, rotate_right
from iavl.immutable_tree import ImmutableTree
from iavl.node import IAVLError, Node, new_node
from iavl.nodedb import NodeDB
from iavl.storage import MemDB


@pytest.fixture
def tree():
    return ImmutableTree(NodeDB(MemDB(), 0, None), version=4)


def leaf(key):
    return new_node(key, b"v" + key, 1)


def leftmost_key(node):
    while not node.is_leaf():
        node = node.left_node
    return node.key


def inner(tree, left, right):
    node = Node(key=leftmost_key(right), left_node=left, right_node=right, version=1)
    node.calc_height_and_size(tree)
    return node


def leaf_keys(tree, node):
    return [n.key for n in node.traverse(tree, True) if n.is_leaf()]


def assert_avl(tree, node):
    for n in node.traverse(tree, True):
        if not n.is_leaf():
            assert abs(n.calc_balance(tree)) <= 1
            assert n.key == leftmost_key(n.right_node)


KEYS = [b"a", b"b", b"c", b"d"]


def test_balanced_node_is_returned_unchanged(tree):
    node = inner(tree, leaf(b"a"), leaf(b"b"))
    orphans = []
    assert balance(tree, node, orphans) is node
    assert orphans == []


def test_left_left_case(tree):
    a, b, c, d = map(leaf, KEYS)
    left = inner(tree, inner(tree, a, b), c)
    top = inner(tree, left, d)
    orphans = []
    result = balance(tree, top, orphans)
    assert len(orphans) == 1
    assert orphans[0] is left
    assert leaf_keys(tree, result) == KEYS
    assert result.size == len(KEYS)
    assert result.version == tree.version + 1
    assert_avl(tree, result)


def test_right_right_case(tree):
    a, b, c, d = map(leaf, KEYS)
    right = inner(tree, b, inner(tree, c, d))
    top = inner(tree, a, right)
    orphans = []
    result = balance(tree, top, orphans)
    assert len(orphans) == 1
    assert orphans[0] is right
    assert leaf_keys(tree, result) == KEYS
    assert result.size == len(KEYS)
    assert_avl(tree, result)


def test_left_right_case(tree):
    a, b, c, d = map(leaf, KEYS)
    bc = inner(tree, b, c)
    left = inner(tree, a, bc)
    top = inner(tree, left, d)
    orphans = []
    result = balance(tree, top, orphans)
    assert len(orphans) == 3
    assert orphans[0] is left
    assert orphans[1] is bc
    assert leaf_keys(tree, result) == KEYS
    assert result.size == len(KEYS)
    assert_avl(tree, result)


def test_right_left_case(tree):
    a, b, c, d = map(leaf, KEYS)
    bc = inner(tree, b, c)
    right = inner(tree, bc, d)
    top = inner(tree, a, right)
    orphans = []
    result = balance(tree, top, orphans)
    assert len(orphans) == 3
    assert orphans[0] is right
    assert leaf_keys(tree, result) == KEYS
    assert result.size == len(KEYS)
    assert_avl(tree, result)


def test_balance_persisted_node_raises(tree):
    node = inner(tree, leaf(b"a"), leaf(b"b"))
    node.persisted = True
    with pytest.raises(IAVLError, match="persisted"):
        balance(tree, node, [])


def test_rotate_right_preserves_order_and_does_not_mutate_input(tree):
    a, b, c = map(leaf, KEYS[:3])
    left = inner(tree, a, b)
    top = inner(tree, left, c)
    new_root, orphaned = rotate_right(tree, top)
    assert orphaned is left
    assert leaf_keys(tree, new_root) == KEYS[:3]
    assert top.left_node is left
    assert new_root.version == tree.version + 1
    assert new_root.size == top.size


def test_rotate_left_preserves_order(tree):
    a, b, c = map(leaf, KEYS[:3])
    right = inner(tree, b, c)
    top = inner(tree, a, right)
    new_root, orphaned = rotate_left(tree, top)
    assert orphaned is right
    assert leaf_keys(tree, new_root) == KEYS[:3]
    assert new_root.right_node is c
    assert new_root.size == top.size


def test_rotate_right_with_leaf_child_raises(tree):
    top = inner(tree, leaf(b"a"), leaf(b"b"))
    with pytest.raises(IAVLError, match="leaf"):
        rotate_right(tree, top)


def test_rotated_tree_hashes_like_equivalent_tree(tree):
    a, b, c, d = map(leaf, KEYS)
    top = inner(tree, inner(tree, inner(tree, a, b), c), d)
    result = balance(tree, top, [])
    root_hash, count = result.hash_with_count()
    assert count == 2 * len(KEYS) - 1
    assert root_hash == result.hash