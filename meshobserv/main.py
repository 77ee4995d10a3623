"""meshobserv application - logging setup and the Flask status endpoints"""

import logging
import time
from pathlib import Path
from typing import Optional

from flask import Flask, Response, jsonify

from . import config
from .observer import MeshObserver, build_observer

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(level: str = None, log_file: str = None) -> None:
    """
    Configure the root logger: console always, plus a fresh log file when one is configured.
    A log file left over from a previous run is archived with a timestamp suffix.
    """
    log_level = getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO)
    log_file = config.LOG_FILE if log_file is None else log_file

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Console handler (stdout)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if log_path.exists():
            timestamp = time.strftime('%Y%m%d-%H%M%S')
            log_path.rename(log_path.with_name(f'{log_path.stem}-{timestamp}{log_path.suffix}'))
        file_handler = logging.FileHandler(str(log_path), mode='w')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(file_handler)

    # paho is chatty at DEBUG
    logging.getLogger('meshobserv.mqtt_handler.paho').setLevel(max(log_level, logging.INFO))
    # Suppress verbose Werkzeug HTTP request logging
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logger.info(f'=== MESHOBSERV STARTED at {time.strftime("%Y-%m-%d %H:%M:%S")} (log_level={logging.getLevelName(log_level)}) ===')


app = Flask(__name__)

# Set by init_background_services(); endpoints report 'disconnected' until then
observer: Optional[MeshObserver] = None


def init_background_services() -> MeshObserver:
    """Build and start the observer. FatalError propagates to the caller."""
    global observer
    observer = build_observer()
    observer.start()
    return observer


def shutdown_background_services() -> None:
    global observer
    if observer is not None:
        observer.stop()
        observer = None


@app.route('/health', methods=['GET'])
def health_check() -> Response:
    """Ingestion status and node counts."""
    if observer is None:
        return jsonify({'status': 'ok', 'mqtt_status': 'disconnected', 'nodes_tracked': 0, 'nodes_valid': 0})
    return jsonify({
        'status': 'ok',
        'mqtt_status': observer.status(),
        'nodes_tracked': len(observer.store),
        'nodes_valid': len(observer.store.get_valid()),
        'last_write_time': observer.last_write_time,
        'last_write_count': observer.last_write_count,
    })


@app.route('/api/nodes', methods=['GET'])
def get_nodes() -> Response:
    """The valid-node snapshot, same document as the nodes file."""
    if observer is None:
        return jsonify({})
    try:
        return jsonify(observer.store.snapshot())
    except Exception as e:
        logger.exception('Failed to get nodes')
        return jsonify({'error': str(e)}), 500
