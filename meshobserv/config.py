"""Configuration loader for meshobserv"""
import configparser
import os
import logging
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

# Find config files (look in project root)
# Public config: meshobserv.config (user copy) or meshobserv.config.template (template)
# MESHOBSERV_CONFIG points at an explicit file and takes precedence over both
CONFIG_FILE = Path(__file__).parent.parent / 'meshobserv.config'
CONFIG_TEMPLATE_FILE = Path(__file__).parent.parent / 'meshobserv.config.template'

if os.getenv('MESHOBSERV_CONFIG'):
    CONFIG_FILE = Path(os.environ['MESHOBSERV_CONFIG'])
elif not CONFIG_FILE.exists():
    CONFIG_FILE = CONFIG_TEMPLATE_FILE

DEFAULT_TOPICS = [
    'msh/+/2/map/',
    'msh/+/2/e/+/+',
    'msh/+/+/2/map/',
    'msh/+/+/2/e/+/+',
    'msh/+/+/+/2/map/',
    'msh/+/+/+/2/e/+/+',
    'msh/+/+/+/+/2/map/',
    'msh/+/+/+/+/2/e/+/+',
]


def parse_topics(value: str) -> List[str]:
    """
    Parse a comma or newline separated topic list.

    Blank entries are dropped, so a trailing comma is harmless.
    """
    topics = []
    for line in value.replace(',', '\n').splitlines():
        topic = line.strip()
        if topic:
            topics.append(topic)
    return topics


# Load configuration
config = configparser.ConfigParser()
if CONFIG_FILE.exists():
    config.read(CONFIG_FILE)
else:
    logger.warning(f"Configuration file not found: {CONFIG_FILE}, using built-in defaults")

# MQTT Configuration
MQTT_BROKER = config.get('mqtt', 'broker', fallback='mqtt.meshtastic.org')
MQTT_PORT = config.getint('mqtt', 'port', fallback=1883)
# SECURITY: Try environment variables first, fallback to config file
MQTT_USERNAME = os.getenv('MQTT_USERNAME') or config.get('mqtt', 'username', fallback='meshdev')
MQTT_PASSWORD = os.getenv('MQTT_PASSWORD') or config.get('mqtt', 'password', fallback='large4cats')
# 'AQ==' is the Meshtastic shorthand for the default channel key
MQTT_KEY = os.getenv('MQTT_KEY') or config.get('mqtt', 'encryption_key', fallback='AQ==')
MQTT_TOPICS = parse_topics(config.get('mqtt', 'topics', fallback='')) or list(DEFAULT_TOPICS)
MQTT_HANDLER_WORKERS = config.getint('mqtt', 'handler_workers', fallback=4)
if MQTT_HANDLER_WORKERS < 1:
    logger.warning(f"handler_workers must be at least 1 (got {MQTT_HANDLER_WORKERS}), using 1")
    MQTT_HANDLER_WORKERS = 1

# Storage Configuration
# Empty nodes_file disables snapshot persistence entirely
NODES_FILE = os.getenv('MESHOBSERV_NODES_FILE') or config.get('storage', 'nodes_file', fallback='')
BLOCKLIST_FILE = os.getenv('MESHOBSERV_BLOCKLIST_FILE') or config.get('storage', 'blocklist_file', fallback='')

# Expiry Configuration (seconds)
NODE_EXPIRATION = config.getint('expiry', 'node_expiration', fallback=86400)
NEIGHBOR_EXPIRATION = config.getint('expiry', 'neighbor_expiration', fallback=7200)
METRICS_EXPIRATION = config.getint('expiry', 'metrics_expiration', fallback=7200)
MAP_REPORT_EXPIRATION = config.getint('expiry', 'map_report_expiration', fallback=NODE_EXPIRATION)
PRUNE_WRITE_INTERVAL = config.getint('expiry', 'prune_write_interval', fallback=60)
if PRUNE_WRITE_INTERVAL < 1:
    logger.warning(f"prune_write_interval is too low: {PRUNE_WRITE_INTERVAL}s, using 60s")
    PRUNE_WRITE_INTERVAL = 60

# Rate Limit Configuration
RATE_LIMIT_COUNT = config.getint('rate_limit', 'count', fallback=4000)
RATE_LIMIT_PERIOD = config.getint('rate_limit', 'period', fallback=3600)

# Status Web App Configuration
WEBAPP_ENABLED = config.getboolean('webapp', 'enabled', fallback=False)
WEBAPP_HOST = config.get('webapp', 'host', fallback='127.0.0.1')
WEBAPP_PORT = config.getint('webapp', 'port', fallback=5103)

# Debug Configuration
LOG_LEVEL = config.get('debug', 'log_level', fallback='INFO').upper()
LOG_FILE = config.get('debug', 'log_file', fallback='')
