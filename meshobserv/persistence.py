"""Snapshot and blocklist file handling"""

import json
import logging
import os
import tempfile
from typing import Dict, Set

from .node import Node

logger = logging.getLogger(__name__)


def load_nodes(path: str) -> Dict[int, Node]:
    """
    Load a node snapshot written by write_nodes().

    A missing file is an empty directory; any other read or parse failure
    propagates to the caller.
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.info(f'No node snapshot at {path}, starting empty')
        return {}
    if not isinstance(data, dict):
        raise ValueError(f'Node snapshot {path} is not a JSON object')
    return {int(node_id): Node.from_dict(record) for node_id, record in data.items()}


def write_nodes(nodes: Dict[int, Node], path: str) -> None:
    """
    Atomically replace the snapshot at path.

    The document is written to a temp file beside the destination, made
    world-readable and renamed over the old snapshot. On failure the temp file
    is removed and the error re-raised; the previous snapshot stays intact.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=os.path.basename(path), dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump({str(node_id): node.to_dict() for node_id, node in nodes.items()}, f)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def load_blocklist(path: str) -> Set[int]:
    """Read one decimal node id per line; lines that don't parse are ignored."""
    blocked = set()
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            try:
                node_id = int(line.strip(), 10)
            except ValueError:
                continue
            if node_id < 0 or node_id > 0xFFFFFFFF:
                continue
            blocked.add(node_id)
            logger.info(f'Node {node_id} blocked')
    return blocked
