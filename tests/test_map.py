"""
Map behaviour: lookups, mutation, persistence and sharing.

Run with: pytest tests/test_map.py -v
"""

import hashlib
import random

import pytest

from hamtmap.capabilities import BytesSink, IntKey, JSONSink, JSONValue, StringKey, key_bytes
from hamtmap.core import sha256_bytes
from hamtmap.errors import DecodeError, KeyNotFoundError, StoreLoadError, StoreWriteError, TraversalError
from hamtmap.hashing import TrieOptions
from hamtmap.map import Map, make_empty_map
from hamtmap.node import Bucket, Link, decode_node
from hamtmap.store import FileStore, MemoryStore
from hamtmap.trie import Trie

EMPTY_ROOT = sha256_bytes(b'{"bitmap":"0","slots":[],"v":1}')


def _keys(n: int) -> list:
    return [f"key-{i:04d}" for i in range(n)]


def _fill(m: Map, keys) -> Map:
    for k in keys:
        m.put(k, k.upper().encode())
    return m


def _root_node(m: Map):
    return decode_node(m.store.get(m.root()))


def _count_unflushed(node) -> int:
    return 1 + sum(_count_unflushed(link.node) for link in node.links() if link.dirty)


class TestScenario:
    def test_put_put_overwrite(self, store):
        m = Map.empty(store)
        m.put("a", JSONValue(1))
        m.put("b", JSONValue(2))
        m.put("a", JSONValue(3))

        out = JSONSink()
        assert m.get("a", out)
        assert out.value == 3
        assert m.get("b", out)
        assert out.value == 2
        assert not m.get("c", out)

        seen = {}
        m.for_each(lambda k, v: seen.__setitem__(k.decode(), v))
        assert seen == {"a": b"3", "b": b"2"}

    def test_empty_map_root_is_fixed(self, store):
        assert make_empty_map(store).root() == EMPTY_ROOT
        assert Map.empty(MemoryStore()).root() == EMPTY_ROOT
        assert len(Map.empty(store)) == 0


class TestLookupAndMutation:
    def test_round_trip(self, store):
        m = _fill(Map.empty(store), _keys(300))
        sink = BytesSink()
        for k in _keys(300):
            assert m.get(k, sink)
            assert sink.data == k.upper().encode()
        assert len(m) == 300

    def test_overwrite_keeps_one_entry(self, store):
        m = Map.empty(store)
        m.put("k", b"v1")
        m.put("k", b"v2")
        assert m.get_bytes("k") == b"v2"
        assert m.collect_keys() == [b"k"]

    def test_delete(self, store):
        m = _fill(Map.empty(store), _keys(20))
        assert m.delete("key-0007")
        assert not m.has("key-0007")
        assert m.get_bytes("key-0007") is None
        assert len(m) == 19

    def test_delete_absent_leaves_root(self, store):
        m = _fill(Map.empty(store), _keys(20))
        before = m.root()
        writes = store.stats.writes
        assert not m.delete("missing")
        assert m.root() == before
        assert store.stats.writes == writes

    def test_put_same_value_writes_nothing(self, store):
        m = _fill(Map.empty(store), _keys(20))
        before = m.root()
        writes = store.stats.writes
        m.put("key-0003", b"KEY-0003")
        assert m.root() == before
        assert store.stats.writes == writes

    def test_must_delete(self, store):
        m = _fill(Map.empty(store), _keys(3))
        m.must_delete("key-0001")
        with pytest.raises(KeyNotFoundError) as exc_info:
            m.must_delete("key-0001")
        assert isinstance(exc_info.value, KeyError)
        assert exc_info.value.key == b"key-0001"

    def test_capability_keys(self, store):
        m = Map.empty(store)
        m.put(IntKey(-5), b"neg")
        m.put(StringKey("s"), b"str")
        assert m.get_bytes(IntKey(-5)) == b"neg"
        assert m.get_bytes("s") == b"str"
        assert IntKey(-5) in m
        assert IntKey(5) not in m

    def test_rejects_objects_without_capabilities(self, store):
        m = Map.empty(store)
        with pytest.raises(TypeError):
            m.put(1.5, b"v")
        with pytest.raises(TypeError):
            m.put("k", "not bytes")

    def test_bad_root(self, store):
        with pytest.raises(ValueError):
            Map(store, "not-a-cid")


class TestPersistence:
    def test_old_roots_stay_readable(self, store):
        m = _fill(Map.empty(store), _keys(10))
        v1 = m.root()
        m.put("extra", b"x")
        m.delete("key-0000")

        old = m.at(v1)
        assert old.has("key-0000")
        assert not old.has("extra")
        assert not m.has("key-0000")
        assert m.has("extra")

    def test_structural_sharing(self, store, small_options):
        m = _fill(Map.empty(store, small_options), _keys(64))
        before = _root_node(m)
        key = "fresh-key"
        m.put(key, b"v")
        after = _root_node(m)

        touched = small_options.path(key_bytes(key)).index(0)
        for index, slot in before.items():
            if index != touched:
                assert after.slot(index) == slot

    def test_only_the_mutated_path_is_written(self, store, small_options):
        m = _fill(Map.empty(store, small_options), _keys(64))
        trie = Trie(store, small_options)
        pending = trie.set(_root_node(m), b"fresh-key", b"v")
        expected_writes = _count_unflushed(pending)

        writes = store.stats.writes
        m.put("fresh-key", b"v")
        assert store.stats.writes - writes == expected_writes
        assert expected_writes < m.stats().nodes

    def test_same_operations_same_root_across_stores(self, tmp_path, small_options):
        def build(st):
            m = _fill(Map.empty(st, small_options), _keys(50))
            for k in _keys(50)[::3]:
                m.delete(k)
            m.put("key-0003", b"again")
            return m.root()

        roots = {build(MemoryStore()), build(MemoryStore()), build(FileStore(tmp_path / "cas"))}
        assert len(roots) == 1

    def test_history_independence(self, small_options):
        keys = _keys(80)
        reference = _fill(Map.empty(MemoryStore(), small_options), keys)

        shuffled = list(keys)
        random.Random(7).shuffle(shuffled)
        m = Map.empty(MemoryStore(), small_options)
        for i, k in enumerate(shuffled):
            m.put(f"noise-{i}", b"n")
            m.put(k, k.upper().encode())
        for i in range(len(shuffled)):
            m.delete(f"noise-{i}")

        assert m.root() == reference.root()
        assert m.collect_keys() == reference.collect_keys()

    def test_delete_everything_returns_to_empty_root(self, store, small_options):
        keys = _keys(40)
        m = _fill(Map.empty(store, small_options), keys)
        for k in reversed(keys):
            assert m.delete(k)
        assert m.root() == EMPTY_ROOT
        assert m.stats().nodes == 1


class TestTraversal:
    def test_visits_present_keys_once(self, store, small_options):
        keys = _keys(60)
        m = _fill(Map.empty(store, small_options), keys)
        for k in keys[:20]:
            m.delete(k)

        visited = m.collect_keys()
        assert len(visited) == len(set(visited)) == 40
        assert sorted(visited) == sorted(k.encode() for k in keys[20:])
        assert list(m.keys()) == visited
        assert dict(m.items())[b"key-0030"] == b"KEY-0030"

    def test_visitor_failure_stops_traversal(self, store):
        m = _fill(Map.empty(store), _keys(10))
        calls = []

        def visitor(k, v):
            calls.append(k)
            if len(calls) == 3:
                raise RuntimeError("boom")

        with pytest.raises(TraversalError) as exc_info:
            m.for_each(visitor)
        assert len(calls) == 3
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.key == calls[-1]

    def test_stats(self, store, small_options):
        m = _fill(Map.empty(store, small_options), _keys(30))
        stats = m.stats()
        assert stats.entries == 30
        assert stats.links == stats.nodes - 1
        assert stats.max_bucket <= small_options.bucket_size
        assert stats.to_dict()["entries"] == 30


class TestCollisions:
    def test_shared_first_chunk_splits(self, store):
        def hash_fn(key: bytes) -> bytes:
            return b"\x00" + hashlib.sha256(key).digest()[1:]

        options = TrieOptions(bit_width=5, bucket_size=3, hash_fn=hash_fn)
        m = _fill(Map.empty(store, options), _keys(10))

        root = _root_node(m)
        assert root.bitmap == 1
        assert isinstance(root.slots[0], Link)
        for k in _keys(10):
            assert m.get_bytes(k) == k.upper().encode()

    def test_exhausted_hash_overfills_last_bucket(self, store):
        options = TrieOptions(bit_width=4, bucket_size=3, hash_fn=lambda key: b"\x00")
        keys = _keys(6)
        m = _fill(Map.empty(store, options), keys)

        stats = m.stats()
        assert stats.nodes == 2
        assert stats.max_depth == 1
        assert stats.max_bucket == 6
        for k in keys:
            assert m.has(k)

        for k in keys[:3]:
            m.delete(k)
        root = _root_node(m)
        assert m.stats().nodes == 1
        assert isinstance(root.slots[0], Bucket)
        assert [e.key for e in root.slots[0]] == [k.encode() for k in keys[3:]]


class _FlakyStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.fail_writes = False
        self.corrupt: set = set()

    def put(self, data: bytes) -> str:
        if self.fail_writes:
            raise OSError("disk full")
        return super().put(data)

    def get(self, cid: str) -> bytes:
        if cid in self.corrupt:
            return b"not a node"
        return super().get(cid)


class TestFailures:
    def test_failed_write_keeps_root(self):
        store = _FlakyStore()
        m = _fill(Map.empty(store), _keys(10))
        before = m.root()

        store.fail_writes = True
        with pytest.raises(StoreWriteError) as exc_info:
            m.put("new", b"v")
        assert isinstance(exc_info.value.__cause__, StoreWriteError)
        assert m.root() == before
        with pytest.raises(StoreWriteError):
            m.delete("key-0001")
        assert m.root() == before
        assert m.has("key-0001")

    def test_missing_root(self, store):
        m = Map(store, "ab" * 32)
        with pytest.raises(StoreLoadError) as exc_info:
            m.get("a")
        assert exc_info.value.cid == "ab" * 32

    def test_missing_child(self, store, small_options):
        m = _fill(Map.empty(store, small_options), _keys(30))
        child = next(_root_node(m).links())
        del store._blobs[child.cid]
        with pytest.raises(StoreLoadError):
            list(m.items())

    def test_corrupted_node(self):
        store = _FlakyStore()
        m = _fill(Map.empty(store), _keys(5))
        store.corrupt.add(m.root())
        with pytest.raises(DecodeError):
            m.has("key-0001")

    def test_sink_failure_is_decode_error(self, store):
        class Strict:
            def unmarshal(self, data):
                raise ValueError("bad value")

        m = Map.empty(store)
        m.put("k", b"v")
        with pytest.raises(DecodeError) as exc_info:
            m.get("k", Strict())
        assert exc_info.value.key == b"k"


@pytest.mark.slow
def test_randomized_against_dict(small_options):
    rng = random.Random(2024)
    m = Map.empty(MemoryStore(), small_options)
    model = {}
    for _ in range(3000):
        k = f"k{rng.randrange(400)}".encode()
        if rng.random() < 0.3:
            assert m.delete(k) == (k in model)
            model.pop(k, None)
        else:
            v = str(rng.random()).encode()
            m.put(k, v)
            model[k] = v
    assert dict(m.items()) == model
    rebuilt = Map.empty(MemoryStore(), small_options)
    for k in sorted(model):
        rebuilt.put(k, model[k])
    assert rebuilt.root() == m.root()
