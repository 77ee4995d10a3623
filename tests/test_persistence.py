"""
Tests for snapshot persistence and blocklist loading.
"""

import json
import os
import stat
from unittest.mock import patch

import pytest

from meshobserv.node import Node
from meshobserv.persistence import load_blocklist, load_nodes, write_nodes

NOW = 1_700_000_000


def valid_nodes():
    alpha = Node(long_name='Alpha', short_name='A', hw_model='TBEAM', role='ROUTER',
                 latitude=377749000, longitude=-1224194000, altitude=12, precision=16,
                 seen_by={'msh/US/2/map/': NOW})
    alpha.update_device_metrics(90, 4.1, 7.5, 0.8, 3600, now=NOW)
    alpha.update_neighbor(0xBEEF, 6.5, now=NOW)
    bravo = Node(long_name='Bravo', latitude=-338688000, longitude=1512093000,
                 seen_by={'msh/ANZ/2/e/LongFast/!0000beef': NOW - 30, 'msh/ANZ/2/map/': NOW})
    bravo.update_environment_metrics(18.25, 60.0, 1009.5, 0.0, 270, 4.5, 9.0, 0.0, 0.2, 3.4, now=NOW)
    bravo.update_map_report('2.5.6', 'ANZ', 'LONG_FAST', False, 3, now=NOW)
    return {0xAAAA01: alpha, 0xBBBB02: bravo}


def test_missing_snapshot_is_empty(tmp_path):
    assert load_nodes(str(tmp_path / 'nodes.json')) == {}


def test_corrupt_snapshot_raises(tmp_path):
    path = tmp_path / 'nodes.json'
    path.write_text('{"1": ')
    with pytest.raises(ValueError):
        load_nodes(str(path))


def test_non_object_snapshot_raises(tmp_path):
    path = tmp_path / 'nodes.json'
    path.write_text('[]')
    with pytest.raises(ValueError):
        load_nodes(str(path))


def test_write_then_load_round_trip(tmp_path):
    path = str(tmp_path / 'nodes.json')
    nodes = valid_nodes()
    write_nodes(nodes, path)
    loaded = load_nodes(path)
    assert set(loaded) == set(nodes)
    for node_id, node in nodes.items():
        assert loaded[node_id] == node


def test_written_file_format(tmp_path):
    path = tmp_path / 'nodes.json'
    write_nodes(valid_nodes(), str(path))
    data = json.loads(path.read_text())
    assert sorted(data) == [str(0xAAAA01), str(0xBBBB02)]
    alpha = data[str(0xAAAA01)]
    assert alpha['longName'] == 'Alpha'
    assert alpha['batteryLevel'] == 90
    assert alpha['lastDeviceMetrics'] == NOW
    assert alpha['neighbors'] == {str(0xBEEF): {'snr': 6.5, 'updated': NOW}}
    assert 'temperature' not in alpha
    assert 'fwVersion' not in alpha
    bravo = data[str(0xBBBB02)]
    assert bravo['temperature'] == 18.25
    assert 'hasDefaultCh' not in bravo
    assert bravo['modemPreset'] == 'LONG_FAST'


def test_write_is_world_readable(tmp_path):
    path = tmp_path / 'nodes.json'
    write_nodes(valid_nodes(), str(path))
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o644


def test_write_replaces_existing_snapshot(tmp_path):
    path = tmp_path / 'nodes.json'
    path.write_text('{"stale": true}')
    write_nodes({}, str(path))
    assert json.loads(path.read_text()) == {}
    assert os.listdir(tmp_path) == ['nodes.json']


def test_failed_write_keeps_old_snapshot_and_cleans_up(tmp_path):
    path = tmp_path / 'nodes.json'
    path.write_text('{"old": {}}')
    with patch('meshobserv.persistence.os.replace', side_effect=OSError('rename failed')):
        with pytest.raises(OSError):
            write_nodes(valid_nodes(), str(path))
    assert path.read_text() == '{"old": {}}'
    assert os.listdir(tmp_path) == ['nodes.json']


def test_unserializable_node_cleans_up(tmp_path):
    path = tmp_path / 'nodes.json'
    broken = Node(long_name='Broken', latitude=1, longitude=1, seen_by={'t': 1})
    broken.role = object()
    with pytest.raises(TypeError):
        write_nodes({1: broken}, str(path))
    assert os.listdir(tmp_path) == []


def test_load_blocklist(tmp_path):
    path = tmp_path / 'blocked.txt'
    path.write_text('12345\n\nnot-a-number\n  678  \n-4\n4294967295\n')
    assert load_blocklist(str(path)) == {12345, 678, 4294967295}


def test_load_blocklist_missing_file_raises(tmp_path):
    with pytest.raises(OSError):
        load_blocklist(str(tmp_path / 'missing.txt'))
