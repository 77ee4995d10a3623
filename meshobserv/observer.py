"""
Background orchestration for meshobserv.

MeshObserver wires the rate limiter, the MQTT client and the dispatcher to one
NodeStore, and runs the periodic work: prune + snapshot write, rate counter
reset, and the liveness watchdog. Storage and connectivity faults are fatal;
the process exits and relies on its supervisor to restart it.
"""

import logging
import os
import threading
import time
from typing import Callable, Dict, Optional

from . import config
from .dispatcher import dispatch
from .mqtt_handler import MeshMQTTClient, parse_channel_key
from .node import Node
from .node_store import NodeStore
from .persistence import load_blocklist, load_nodes, write_nodes
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class FatalError(Exception):
    """Raised for faults the process must not survive."""


def exit_process(reason: str) -> None:
    """Default fatal handler: log and terminate immediately, from any thread."""
    logger.critical(reason)
    logging.shutdown()
    os._exit(1)


class ReceivingFlag:
    """Set by the message path, tested and cleared by the watchdog."""

    def __init__(self) -> None:
        self._value = False
        self._lock = threading.Lock()

    def set(self) -> None:
        with self._lock:
            self._value = True

    def test_and_clear(self) -> bool:
        with self._lock:
            value = self._value
            self._value = False
            return value


class MeshObserver:
    def __init__(self, store: Optional[NodeStore] = None, limiter: Optional[RateLimiter] = None,
                 nodes_file: Optional[str] = None,
                 client_factory: Optional[Callable[..., MeshMQTTClient]] = None,
                 on_fatal: Callable[[str], None] = exit_process,
                 prune_write_interval: int = None, rate_limit_period: int = None,
                 node_expiration: int = None, neighbor_expiration: int = None,
                 metrics_expiration: int = None, map_report_expiration: int = None) -> None:
        self.store = store if store is not None else NodeStore()
        self.limiter = limiter if limiter is not None else RateLimiter(config.RATE_LIMIT_COUNT)
        self.nodes_file = config.NODES_FILE if nodes_file is None else nodes_file
        self.client_factory = client_factory or MeshMQTTClient
        self.on_fatal = on_fatal
        self.prune_write_interval = prune_write_interval or config.PRUNE_WRITE_INTERVAL
        self.rate_limit_period = rate_limit_period or config.RATE_LIMIT_PERIOD
        self.node_expiration = node_expiration or config.NODE_EXPIRATION
        self.neighbor_expiration = neighbor_expiration or config.NEIGHBOR_EXPIRATION
        self.metrics_expiration = metrics_expiration or config.METRICS_EXPIRATION
        self.map_report_expiration = map_report_expiration or config.MAP_REPORT_EXPIRATION
        self.receiving = ReceivingFlag()
        self.client = None
        self.last_write_time = 0
        self.last_write_count = 0
        self._stop = threading.Event()
        self._threads = []

    def load(self) -> None:
        """Populate the store from the snapshot file, if one is configured."""
        if not self.nodes_file:
            return
        try:
            nodes = load_nodes(self.nodes_file)
        except Exception as e:
            raise FatalError(f'Failed to load nodes from {self.nodes_file}: {e}') from e
        self.store.replace(nodes)
        logger.info(f'Loaded {len(nodes)} nodes from disk')

    def handle_message(self, sender_id: int, topic: str, portnum: int, payload: bytes) -> None:
        """MQTT client callback for every accepted, decoded message."""
        self.receiving.set()
        dispatch(self.store, sender_id, topic, portnum, payload)

    def start(self) -> None:
        """Load state, connect and start the background loops. Raises FatalError on startup faults."""
        self.load()
        self.client = self.client_factory(
            handler=self.handle_message,
            accept=self.limiter.accept,
            key=parse_channel_key(config.MQTT_KEY),
        )
        try:
            self.client.connect()
        except Exception as e:
            raise FatalError(f'Failed to connect to MQTT: {e}') from e

        self._start_thread(self._maintenance_loop, 'meshobserv-maintenance')
        self._start_thread(self._rate_reset_loop, 'meshobserv-rate-reset')
        logger.info(
            f'Observer running (prune/write every {self.prune_write_interval}s, '
            f'rate limit {self.limiter.limit}/{self.rate_limit_period}s)'
        )

    def stop(self) -> None:
        """Stop the background loops and disconnect; state since the last write is not flushed."""
        logger.info('Stopping observer')
        self._stop.set()
        if self.client is not None:
            self.client.disconnect()
        for thread in self._threads:
            thread.join(timeout=5)

    def prune_and_write(self, now: Optional[int] = None) -> Dict[int, Node]:
        """
        Prune the store and persist its valid subset, holding the store lock throughout.
        Write errors propagate.
        """
        with self.store.lock:
            self.store.prune(self.node_expiration, self.neighbor_expiration,
                             self.metrics_expiration, self.map_report_expiration, now)
            valid = self.store.get_valid()
            if self.nodes_file:
                write_nodes(valid, self.nodes_file)
                self.last_write_time = time.time()
                self.last_write_count = len(valid)
                logger.info(f'Wrote {len(valid)} nodes to disk')
        return valid

    def run_maintenance_cycle(self, now: Optional[int] = None) -> bool:
        """One orchestrator tick. Returns False after reporting a fatal fault."""
        try:
            self.prune_and_write(now)
        except Exception as e:
            self.on_fatal(f'Failed to write nodes: {e}')
            return False
        if not self.receiving.test_and_clear():
            self.on_fatal(f'No messages received in {self.prune_write_interval}s')
            return False
        return True

    def status(self) -> str:
        """Coarse ingestion status for the health endpoint."""
        if self._stop.is_set():
            return 'stopped'
        if self.client is None:
            return 'disconnected'
        if not self.client.is_connected():
            return 'connecting'
        return 'receiving_packets'

    def _start_thread(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _maintenance_loop(self) -> None:
        while not self._stop.wait(self.prune_write_interval):
            if not self.run_maintenance_cycle():
                return

    def _rate_reset_loop(self) -> None:
        while not self._stop.wait(self.rate_limit_period):
            self.limiter.reset()


def build_observer() -> MeshObserver:
    """Observer configured from config, including the optional blocklist."""
    blocked = set()
    if config.BLOCKLIST_FILE:
        try:
            blocked = load_blocklist(config.BLOCKLIST_FILE)
        except OSError as e:
            raise FatalError(f'Failed to read blocklist {config.BLOCKLIST_FILE}: {e}') from e
    return MeshObserver(limiter=RateLimiter(config.RATE_LIMIT_COUNT, blocked))
