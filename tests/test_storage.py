import pytest

from iavl.node import IAVLError, NodeEncodingError, encode_bytes, encode_varint
from iavl.storage import (
    Batch,
    FastNode,
    KeyFormat,
    LRUCache,
    MemDB,
    Options,
    Stats,
    deserialize_fast_node,
)


@pytest.fixture
def db():
    store = MemDB()
    for key in [b"b", b"a", b"c", b"d"]:
        store.set(key, key.upper())
    return store


def test_memdb_set_get_delete(db):
    assert db.get(b"a") == b"A"
    assert db.has(b"c")
    db.delete(b"c")
    assert db.get(b"c") is None
    assert not db.has(b"c")
    db.delete(b"zzz")
    assert len(db) == 3


def test_memdb_overwrite_keeps_single_key(db):
    db.set(b"a", b"new")
    assert db.get(b"a") == b"new"
    assert [k for k, _ in db.iterator(None, None)] == [b"a", b"b", b"c", b"d"]


def test_memdb_rejects_empty_key_and_nil_value():
    store = MemDB()
    with pytest.raises(ValueError):
        store.get(b"")
    with pytest.raises(ValueError):
        store.set(b"", b"v")
    with pytest.raises(ValueError):
        store.set(b"k", None)
    with pytest.raises(ValueError):
        list(store.iterator(b"", None))


def test_memdb_iterator_ranges(db):
    assert list(db.iterator(b"b", b"d")) == [(b"b", b"B"), (b"c", b"C")]
    assert [k for k, _ in db.iterator(None, None)] == [b"a", b"b", b"c", b"d"]
    assert [k for k, _ in db.reverse_iterator(b"b", None)] == [b"d", b"c", b"b"]


def test_memdb_iterator_tolerates_modification(db):
    seen = []
    for key, _ in db.iterator(None, None):
        seen.append(key)
        db.delete(key)
    assert seen == [b"a", b"b", b"c", b"d"]
    assert len(db) == 0


def test_memdb_iterate_prefix():
    store = MemDB()
    for key in [b"ra", b"rb", b"s", b"\xff\x01", b"\xff\xff"]:
        store.set(key, b"v")
    assert [k for k, _ in store.iterate_prefix(b"r")] == [b"ra", b"rb"]
    assert [k for k, _ in store.iterate_prefix(b"\xff")] == [b"\xff\x01", b"\xff\xff"]
    assert len(list(store.iterate_prefix(b""))) == 5


def test_batch_applies_on_write(db):
    batch = db.new_batch()
    batch.set(b"e", b"E")
    batch.delete(b"a")
    assert db.get(b"e") is None
    assert db.get(b"a") == b"A"
    batch.write()
    assert db.get(b"e") == b"E"
    assert db.get(b"a") is None


def test_batch_cannot_be_reused(db):
    batch = db.new_batch()
    batch.set(b"x", b"X")
    batch.write_sync()
    batch.close()
    with pytest.raises(IAVLError):
        batch.write()
    with pytest.raises(IAVLError):
        batch.set(b"y", b"Y")
    assert db.get(b"x") == b"X"


def test_batch_context_manager_discards_unwritten(db):
    with Batch(db) as batch:
        batch.set(b"q", b"Q")
    assert db.get(b"q") is None
    with pytest.raises(IAVLError):
        batch.delete(b"q")


def test_keyformat_int_segment_wire_bytes():
    root_fmt = KeyFormat(ord("r"), 8)
    assert root_fmt.key(1) == b"r\x00\x00\x00\x00\x00\x00\x00\x01"
    assert root_fmt.key() == b"r"
    assert root_fmt.prefix() == "r"


def test_keyformat_pads_short_segments():
    root_fmt = KeyFormat(ord("r"), 8)
    assert root_fmt.key_bytes(b"\x07") == root_fmt.key(7)
    with pytest.raises(ValueError):
        root_fmt.key_bytes(bytes(9))
    with pytest.raises(ValueError):
        root_fmt.key(1, 2)


def test_keyformat_negative_int_round_trip():
    fmt = KeyFormat(b"r", 8)
    assert fmt.scan(fmt.key(-5)) == (-5,)


def test_keyformat_variable_segment():
    fast_fmt = KeyFormat(ord("f"), 0)
    key = fast_fmt.key_bytes(b"some_key")
    assert key == b"fsome_key"
    assert fast_fmt.scan(key) == (b"some_key",)
    assert fast_fmt.key() == b"f"


def test_fast_node_round_trip():
    node = FastNode(b"some_key", b"test_value", 1)
    encoded = node.to_bytes()
    assert encoded == encode_varint(1) + encode_bytes(b"test_value")
    assert node.encoded_size() == len(encoded)
    assert deserialize_fast_node(b"some_key", encoded) == node


def test_fast_node_empty_value_round_trip():
    node = FastNode(b"k", b"", 100)
    assert deserialize_fast_node(b"k", node.to_bytes()) == node


def test_deserialize_fast_node_errors():
    with pytest.raises(NodeEncodingError, match="fastnode.version"):
        deserialize_fast_node(b"k", b"")
    with pytest.raises(NodeEncodingError, match="fastnode.value"):
        deserialize_fast_node(b"k", encode_varint(1) + b"\x05ab")


def test_stats_counters():
    stats = Stats()
    stats.inc_cache_hit()
    stats.inc_cache_hit()
    stats.inc_cache_miss()
    stats.inc_fast_cache_hit()
    stats.inc_fast_cache_miss()
    stats.inc_fast_cache_miss()
    assert (stats.cache_hit_cnt, stats.cache_miss_cnt) == (2, 1)
    assert (stats.fast_cache_hit_cnt, stats.fast_cache_miss_cnt) == (1, 2)


def test_options_defaults():
    opts = Options()
    assert opts.sync is False
    assert opts.initial_version == 0
    assert opts.stat.cache_hit_cnt == 0
    assert Options().stat is not opts.stat


def test_lru_cache_evicts_least_recent():
    cache = LRUCache(2)
    assert cache.add(b"a", 1) is None
    assert cache.add(b"b", 2) is None
    assert cache.get(b"a") == 1
    assert cache.add(b"c", 3) == 2
    assert cache.get(b"b") is None
    assert len(cache) == 2


def test_lru_cache_replace_and_remove():
    cache = LRUCache(3)
    cache.add(b"a", 1)
    assert cache.add(b"a", 10) == 1
    assert cache.get(b"a") == 10
    assert cache.remove(b"a") == 10
    assert cache.remove(b"a") is None
    assert len(cache) == 0


def test_lru_cache_zero_size_holds_nothing():
    cache = LRUCache(0)
    assert cache.add(b"a", 1) == 1
    assert cache.get(b"a") is None
    assert len(cache) == 0