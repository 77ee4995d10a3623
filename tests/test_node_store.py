"""
Tests for the NodeStore lifecycle: creation on first update, pruning and export filtering.
"""

import threading

from meshobserv.dispatcher import NeighborInfoUpdate, PositionUpdate, UserUpdate
from meshobserv.node import Node
from meshobserv.node_store import NodeStore

NOW = 1_000_000
TOPIC = 'msh/US/2/map/'


def prune(store, now):
    return store.prune(86400, 7200, 7200, 86400, now=now)


def test_apply_creates_node_on_first_update(store):
    node = store.apply(42, TOPIC, UserUpdate('Alpha', 'A', 'TBEAM', 'CLIENT'), now=NOW)
    assert 42 in store
    assert len(store) == 1
    assert store.get(42) is node
    assert node.seen_by == {TOPIC: NOW}
    assert node.long_name == 'Alpha'


def test_apply_reuses_existing_node(store):
    store.apply(42, TOPIC, UserUpdate('Alpha', 'A', 'TBEAM', 'CLIENT'), now=NOW)
    store.apply(42, 'msh/EU_868/2/map/', PositionUpdate(1, 2, 3, 4), now=NOW + 5)
    node = store.get(42)
    assert len(store) == 1
    assert node.long_name == 'Alpha'
    assert node.latitude == 1
    assert node.seen_by == {TOPIC: NOW, 'msh/EU_868/2/map/': NOW + 5}


def test_prune_removes_nodes_with_empty_seen_by(store):
    store.apply(1, TOPIC, UserUpdate('Old', 'O', '', ''), now=NOW - 90000)
    store.apply(2, TOPIC, UserUpdate('New', 'N', '', ''), now=NOW)
    removed = prune(store, NOW)
    assert removed == 1
    assert 1 not in store
    assert 2 in store


def test_neighbor_only_updates_do_not_refresh_seen_by(store):
    store.apply(7, TOPIC, NeighborInfoUpdate([(8, 1.0)]), now=NOW - 90000)
    store.apply(7, TOPIC, NeighborInfoUpdate([(9, 2.0)]), now=NOW)
    prune(store, NOW)
    assert 7 not in store


def test_get_valid_filters_but_store_keeps_incomplete_nodes(store):
    # position known, name not yet seen
    store.apply(1, TOPIC, PositionUpdate(377749000, -1224194000, 0, 16), now=NOW)
    store.apply(2, TOPIC, PositionUpdate(1, 1, 0, 0), now=NOW)
    store.apply(2, TOPIC, UserUpdate('Named', 'N', '', ''), now=NOW)

    valid = store.get_valid()
    assert list(valid) == [2]
    assert 1 in store
    assert len(store) == 2


def test_get_valid_returns_a_copy(store):
    store.apply(2, TOPIC, PositionUpdate(1, 1, 0, 0), now=NOW)
    store.apply(2, TOPIC, UserUpdate('Named', 'N', '', ''), now=NOW)
    valid = store.get_valid()
    valid.clear()
    assert 2 in store


def test_snapshot_serializes_valid_nodes_with_string_ids():
    node = Node(long_name='Named', latitude=5, longitude=6, seen_by={TOPIC: NOW})
    store = NodeStore({0xAAAA01: node, 3: Node(seen_by={TOPIC: NOW})})
    snapshot = store.snapshot()
    assert list(snapshot) == [str(0xAAAA01)]
    assert snapshot[str(0xAAAA01)]['longName'] == 'Named'


def test_prune_bounds_every_node(store):
    for node_id in range(1, 6):
        for i in range(15):
            store.apply(node_id, f'msh/US/2/e/LongFast/!{i:08x}', PositionUpdate(1, 1, 0, 0), now=NOW - i)
        store.apply(node_id, TOPIC, NeighborInfoUpdate([(n, 0.5) for n in range(1, 150)]), now=NOW)
    prune(store, NOW)
    for node_id in range(1, 6):
        node = store.get(node_id)
        assert len(node.seen_by) <= 10
        assert len(node.neighbors) <= 100


def test_lock_is_reentrant_for_maintenance(store):
    store.apply(2, TOPIC, PositionUpdate(1, 1, 0, 0), now=NOW)
    with store.lock:
        prune(store, NOW)
        assert store.get_valid() == {}


def test_concurrent_applies_are_not_lost(store):
    def worker(offset):
        for i in range(200):
            store.apply(offset * 1000 + i, TOPIC, PositionUpdate(1, 1, 0, 0), now=NOW)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(store) == 800


def test_replace_swaps_contents_in_place(store):
    store.apply(1, TOPIC, PositionUpdate(1, 1, 0, 0), now=NOW)
    loaded = {2: Node(long_name='Loaded', latitude=1, longitude=1, seen_by={TOPIC: NOW})}
    store.replace(loaded)
    assert 1 not in store
    assert store.get(2).long_name == 'Loaded'
    loaded.clear()
    assert 2 in store
