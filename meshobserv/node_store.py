"""
Lock-guarded node directory.

One coarse lock serializes every mutation: message handlers hold it for a
single node's read-modify-write, the maintenance pass holds it across the whole
prune and snapshot write.
"""

import logging
import threading
import time
from typing import Dict, Optional, Protocol

from .node import Node

logger = logging.getLogger(__name__)


class NodeUpdate(Protocol):
    """A validated field-group update produced by the dispatcher."""

    def apply(self, node: Node, topic: str, now: int) -> None:
        ...


class NodeStore:
    def __init__(self, nodes: Optional[Dict[int, Node]] = None) -> None:
        self._nodes: Dict[int, Node] = dict(nodes or {})
        # Reentrant so the maintenance pass can hold it around prune + get_valid
        self.lock = threading.RLock()

    def __len__(self) -> int:
        with self.lock:
            return len(self._nodes)

    def __contains__(self, node_id: int) -> bool:
        with self.lock:
            return node_id in self._nodes

    def get(self, node_id: int) -> Optional[Node]:
        with self.lock:
            return self._nodes.get(node_id)

    def replace(self, nodes: Dict[int, Node]) -> None:
        """Swap in a whole directory, e.g. one loaded from a snapshot."""
        with self.lock:
            self._nodes = dict(nodes)

    def apply(self, node_id: int, topic: str, update: NodeUpdate, now: Optional[int] = None) -> Node:
        """Apply an update to a node, creating it on first sight."""
        now = int(time.time()) if now is None else now
        with self.lock:
            node = self._nodes.get(node_id)
            if node is None:
                node = Node.new(topic, now)
                self._nodes[node_id] = node
                logger.debug(f'New node {node_id} first seen on {topic}')
            update.apply(node, topic, now)
            return node

    def prune(self, seen_by_ttl: int, neighbor_ttl: int, metrics_ttl: int,
              map_report_ttl: int, now: Optional[int] = None) -> int:
        """Expire stale data on every node, dropping nodes no longer seen. Returns the number removed."""
        now = int(time.time()) if now is None else now
        removed = 0
        with self.lock:
            for node_id, node in list(self._nodes.items()):
                node.prune(seen_by_ttl, neighbor_ttl, metrics_ttl, map_report_ttl, now)
                if not node.seen_by:
                    del self._nodes[node_id]
                    removed += 1
        if removed:
            logger.debug(f'Pruned {removed} expired nodes')
        return removed

    def get_valid(self) -> Dict[int, Node]:
        """Filtered copy holding only nodes fit for export."""
        with self.lock:
            return {node_id: node for node_id, node in self._nodes.items() if node.is_valid()}

    def snapshot(self) -> Dict[str, dict]:
        """Serialized valid nodes, built while holding the lock."""
        with self.lock:
            return {str(node_id): node.to_dict() for node_id, node in self.get_valid().items()}
