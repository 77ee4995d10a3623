"""
Builders for Meshtastic wire messages used across the tests.
"""

from meshtastic.protobuf import mesh_pb2, mqtt_pb2, portnums_pb2

from meshobserv.mqtt_handler import DEFAULT_KEY, crypt_payload

MAP_TOPIC = 'msh/US/2/map/'
CHANNEL_TOPIC = 'msh/US/bayarea/2/e/LongFast/!a1b2c3d4'
NOW = 1_700_000_000


def make_data(portnum: int, payload: bytes) -> mesh_pb2.Data:
    data = mesh_pb2.Data()
    data.portnum = portnum
    data.payload = payload
    return data


def make_envelope(sender_id: int, portnum: int = portnums_pb2.TEXT_MESSAGE_APP, payload: bytes = b'hi',
                  packet_id: int = 1234, encrypt: bool = False, key: bytes = DEFAULT_KEY) -> bytes:
    """Serialized ServiceEnvelope carrying one MeshPacket, optionally encrypted."""
    envelope = mqtt_pb2.ServiceEnvelope()
    envelope.channel_id = 'LongFast'
    envelope.gateway_id = '!a1b2c3d4'
    packet = envelope.packet
    setattr(packet, 'from', sender_id)
    packet.id = packet_id
    data = make_data(portnum, payload)
    if encrypt:
        packet.encrypted = crypt_payload(key, packet_id, sender_id, data.SerializeToString())
    else:
        packet.decoded.CopyFrom(data)
    return envelope.SerializeToString()


def position_payload(latitude: int, longitude: int, altitude: int = 0, precision: int = 0) -> bytes:
    position = mesh_pb2.Position()
    position.latitude_i = latitude
    position.longitude_i = longitude
    position.altitude = altitude
    position.precision_bits = precision
    return position.SerializeToString()


def user_payload(long_name: str, short_name: str = 'TN', hw_model: int = 0, role: int = 0) -> bytes:
    user = mesh_pb2.User()
    user.long_name = long_name
    user.short_name = short_name
    user.hw_model = hw_model
    user.role = role
    return user.SerializeToString()
