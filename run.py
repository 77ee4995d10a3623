#!/usr/bin/env python3
"""Simple runner for meshobserv"""

import sys
import os
import socket
import signal
import threading

# Ensure working directory is the project root (where this script is located)
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
os.chdir(SCRIPT_DIR)
sys.path.insert(0, SCRIPT_DIR)

terminate = threading.Event()


def signal_handler(signum, frame):
    """Handle signals gracefully."""
    print(f'Received signal {signum}, shutting down...', flush=True)
    terminate.set()


# Register signal handlers
signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)

try:
    from meshobserv import config
    from meshobserv.main import app, init_background_services, setup_logging, shutdown_background_services
    from meshobserv.observer import FatalError
    from werkzeug.serving import make_server

    setup_logging()

    try:
        init_background_services()
    except FatalError as e:
        print(f'[FATAL ERROR] {e}', flush=True)
        sys.exit(1)

    server = None
    if config.WEBAPP_ENABLED:
        print(f'[STARTUP] Status server on http://{config.WEBAPP_HOST}:{config.WEBAPP_PORT}', flush=True)
        server = make_server(config.WEBAPP_HOST, config.WEBAPP_PORT, app, threaded=True)
        # Enable SO_REUSEADDR to allow immediate restart
        server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        threading.Thread(target=server.serve_forever, name='meshobserv-web', daemon=True).start()

    # wait until exit
    while not terminate.wait(1):
        pass

    print('[SHUTDOWN] Exiting', flush=True)
    if server is not None:
        server.shutdown()
    shutdown_background_services()

except SystemExit:
    raise

except Exception as e:
    print(f'[FATAL ERROR] {type(e).__name__}: {e}', flush=True)
    import traceback
    traceback.print_exc()
    sys.stderr.flush()
    sys.exit(1)
