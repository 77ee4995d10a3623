"""
Meshtastic MQTT ingestion for meshobserv.
Uses paho-mqtt directly with the meshtastic protobuf definitions for decoding.
Filters topics, unwraps ServiceEnvelopes, decrypts default-key traffic and hands
(sender, topic, portnum, payload) to the message handler.
"""

import base64
import logging
import os
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional

import paho.mqtt.client as mqtt_client
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from google.protobuf.message import DecodeError

# Import Meshtastic protobuf definitions
from meshtastic.protobuf import mesh_pb2, mqtt_pb2

from . import config

logger = logging.getLogger(__name__)

# msh/<region path>/2/e/<channel>/!<gateway id>  or  msh/<region path>/2/map/
# \Z rather than $, which would also accept a trailing newline
TOPIC_REGEX = re.compile(r'^msh(?:/[^/]+)+/2/(?:e/[^/]+/![0-9a-f]+|map/)\Z')

# Default channel PSK, what 'AQ==' stands for
DEFAULT_KEY = bytes([
    0xd4, 0xf1, 0xbb, 0x3a,
    0x20, 0x29, 0x07, 0x59,
    0xf0, 0xbc, 0xff, 0xab,
    0xcf, 0x4e, 0x69, 0x01,
])

CONNECT_TIMEOUT = 30

MessageHandler = Callable[[int, str, int, bytes], None]


@dataclass
class MeshMessage:
    sender_id: int
    topic: str
    portnum: int
    payload: bytes


def parse_channel_key(key_str: str) -> bytes:
    """
    Decode a base64 channel key as shown in the Meshtastic apps.
    'AQ==' is shorthand for the default key; url-safe alphabet and missing
    padding are tolerated.
    """
    if not key_str or key_str == 'AQ==':
        return DEFAULT_KEY
    padded_key = key_str.ljust(len(key_str) + ((4 - (len(key_str) % 4)) % 4), '=')
    replaced_key = padded_key.replace('-', '+').replace('_', '/')
    key_bytes = base64.b64decode(replaced_key.encode('ascii'))
    if len(key_bytes) not in (16, 32):
        raise ValueError(f'Channel key must be 16 or 32 bytes, got {len(key_bytes)}')
    return key_bytes


def crypt_payload(key: bytes, packet_id: int, sender_id: int, data: bytes) -> bytes:
    """
    AES-CTR transform of a packet payload; encrypting and decrypting are the same operation.
    The nonce is the packet id and the sender id, each little-endian in 8 bytes.
    """
    nonce_packet_id = packet_id.to_bytes(8, 'little')
    nonce_from_node = sender_id.to_bytes(8, 'little')
    nonce = nonce_packet_id + nonce_from_node
    cipher = Cipher(algorithms.AES(key), modes.CTR(nonce))
    transform = cipher.decryptor()
    return transform.update(data) + transform.finalize()


def decode_message(topic: str, raw: bytes, key: bytes = DEFAULT_KEY,
                   accept: Optional[Callable[[int], bool]] = None) -> Optional[MeshMessage]:
    """
    Turn one raw MQTT message into a MeshMessage, or None when it should be dropped.
    Touches no shared state apart from the accept callback.
    """
    # filter topic
    if not TOPIC_REGEX.match(topic):
        return None

    # parse ServiceEnvelope
    service_envelope = mqtt_pb2.ServiceEnvelope()
    try:
        service_envelope.ParseFromString(raw)
    except DecodeError as e:
        logger.warning(f'Could not parse ServiceEnvelope on {topic}: {e}')
        return None
    if not service_envelope.HasField('packet'):
        logger.warning(f'Skipping ServiceEnvelope with no MeshPacket on {topic}')
        return None
    mp = service_envelope.packet

    # no anonymous packets
    sender_id = getattr(mp, 'from')
    if sender_id == 0:
        logger.warning(f'Skipping MeshPacket from unknown on {topic}')
        return None

    if accept is not None and not accept(sender_id):
        return None

    if mp.HasField('decoded'):
        data = mp.decoded
    else:
        encrypted = mp.encrypted
        if not encrypted:
            logger.warning(f'Skipping MeshPacket from {sender_id} with no data on {topic}')
            return None
        decrypted_bytes = crypt_payload(key, mp.id, sender_id, encrypted)
        data = mesh_pb2.Data()
        try:
            data.ParseFromString(decrypted_bytes)
        except DecodeError:
            # probably encrypted with another channel's key
            return None

    return MeshMessage(sender_id=sender_id, topic=topic, portnum=data.portnum, payload=data.payload)


class MeshMQTTClient:
    """
    paho-mqtt subscriber feeding decoded messages to a handler.

    Messages are decoded on a small worker pool so the paho network thread is
    never blocked on store contention. Reconnection is left to paho's loop.
    """

    def __init__(self, handler: MessageHandler, accept: Optional[Callable[[int], bool]] = None,
                 key: bytes = DEFAULT_KEY, broker: str = None, port: int = None,
                 username: str = None, password: str = None, topics: List[str] = None,
                 workers: int = None) -> None:
        self.handler = handler
        self.accept = accept
        self.key = key
        self.broker = broker or config.MQTT_BROKER
        self.port = port or config.MQTT_PORT
        self.username = config.MQTT_USERNAME if username is None else username
        self.password = config.MQTT_PASSWORD if password is None else password
        self.topics = list(topics or config.MQTT_TOPICS)
        self.workers = workers or config.MQTT_HANDLER_WORKERS
        self.client = None
        self.executor = None
        self.was_connected = False
        self._accepting = threading.Event()
        self._connected = threading.Event()
        self._connect_error = None

    def connect(self, timeout: float = CONNECT_TIMEOUT) -> None:
        """
        Connect, subscribe and start the network loop.
        Raises ConnectionError if the broker refuses or doesn't answer in time.
        """
        logger.info(f'Connecting to MQTT broker: {self.broker}:{self.port}')
        self.client = mqtt_client.Client(
            mqtt_client.CallbackAPIVersion.VERSION2,
            client_id=f'meshobserv-{os.urandom(4).hex()}',
            clean_session=True,
            userdata=None
        )
        self.client.connect_timeout = 10
        if self.username:
            self.client.username_pw_set(username=self.username, password=self.password)
        self.client.enable_logger(logging.getLogger(f'{__name__}.paho'))
        self.client.on_connect = self._on_mqtt_connect
        self.client.on_disconnect = self._on_mqtt_disconnect
        self.client.on_subscribe = self._on_mqtt_subscribe
        self.client.on_message = self._on_mqtt_message

        self.executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='meshobserv-handler')
        self._accepting.set()
        try:
            self.client.connect(self.broker, self.port, 60)
            self.client.loop_start()
        except Exception as e:
            self._teardown()
            raise ConnectionError(f'Failed to connect to {self.broker}:{self.port}: {e}') from e

        if not self._connected.wait(timeout) or self._connect_error:
            error = self._connect_error or f'no CONNACK within {timeout}s'
            self._teardown()
            raise ConnectionError(f'MQTT connection failed: {error}')
        logger.info('[MQTT] Network loop started (automatic reconnection enabled)')

    def disconnect(self) -> None:
        """Stop accepting messages, close the connection and let in-flight handlers finish."""
        self._accepting.clear()
        if self.client is not None:
            try:
                self.client.disconnect()
            except Exception as e:
                logger.error(f'Error disconnecting from MQTT: {e}')
        self._teardown()
        logger.info('Disconnected from MQTT broker')

    def is_connected(self) -> bool:
        return self.client is not None and self.client.is_connected()

    def _teardown(self) -> None:
        if self.client is not None:
            self.client.loop_stop()
            self.client = None
        if self.executor is not None:
            self.executor.shutdown(wait=True)
            self.executor = None

    def _on_mqtt_connect(self, client_obj, userdata, flags, reason_code, properties):
        """Subscribe after every successful (re)connection."""
        if reason_code == 0:
            if self.was_connected:
                logger.warning('[MQTT] RECONNECTED to MQTT broker (connection was restored)')
            else:
                logger.info('[MQTT] Connected to MQTT broker')
                self.was_connected = True
            result, mid = client_obj.subscribe([(topic, 0) for topic in self.topics])
            logger.info(f'[MQTT] Subscribing to {len(self.topics)} topics (result={result}, mid={mid})')
        else:
            self._connect_error = f'broker refused connection: {reason_code}'
            logger.error(f'[MQTT] Connection failed with code: {reason_code}')
        self._connected.set()

    def _on_mqtt_subscribe(self, client_obj, userdata, mid, reason_code_list, properties):
        for i, reason_code in enumerate(reason_code_list):
            if reason_code.is_failure:
                logger.error(f'[MQTT] Subscription {self.topics[i]} FAILED with reason code: {reason_code}')
            else:
                logger.debug(f'[MQTT] Subscription {self.topics[i]} accepted with QoS: {reason_code}')

    def _on_mqtt_disconnect(self, client_obj, userdata, disconnect_flags, reason_code, properties):
        if self._accepting.is_set():
            logger.warning(f'[MQTT] DISCONNECTED from broker: {reason_code}, paho will reconnect')

    def _on_mqtt_message(self, client_obj, userdata, msg):
        if not self._accepting.is_set():
            return
        executor = self.executor
        if executor is None:
            return
        try:
            executor.submit(self._handle_raw, msg.topic, msg.payload)
        except RuntimeError:
            # executor shut down between the check and the submit
            pass

    def _handle_raw(self, topic: str, payload: bytes) -> None:
        try:
            message = decode_message(topic, payload, self.key, self.accept)
            if message is not None:
                self.handler(message.sender_id, message.topic, message.portnum, message.payload)
        except Exception as e:
            logger.error(f'Error in MQTT message handler for {topic}: {e}', exc_info=True)
