"""
Per-port decoding and validation of Meshtastic application payloads.

Every supported port has a decoder in DECODERS that parses the payload and
either rejects it (returns None) or returns an update describing which field
groups to set. Updates are applied to the NodeStore under its lock by
dispatch(); decoders themselves never touch shared state.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

from google.protobuf.message import DecodeError

from meshtastic.protobuf import config_pb2, mesh_pb2, mqtt_pb2, portnums_pb2, telemetry_pb2

from .node import Node
from .node_store import NodeStore

logger = logging.getLogger(__name__)


def _enum_name(enum_type, value: int) -> str:
    """Enum value name, or the number itself for values newer than our protobufs."""
    try:
        return enum_type.Name(value)
    except ValueError:
        return str(value)


def port_name(portnum: int) -> str:
    return _enum_name(portnums_pb2.PortNum, portnum)


@dataclass
class PositionUpdate:
    latitude: int
    longitude: int
    altitude: int
    precision: int

    def apply(self, node: Node, topic: str, now: int) -> None:
        node.update_position(self.latitude, self.longitude, self.altitude, self.precision)
        node.update_seen_by(topic, now)


@dataclass
class UserUpdate:
    long_name: str
    short_name: str
    hw_model: str
    role: str

    def apply(self, node: Node, topic: str, now: int) -> None:
        node.update_user(self.long_name, self.short_name, self.hw_model, self.role)


@dataclass
class DeviceMetricsUpdate:
    battery_level: int
    voltage: float
    channel_utilization: float
    air_util_tx: float
    uptime: int

    def apply(self, node: Node, topic: str, now: int) -> None:
        node.update_device_metrics(self.battery_level, self.voltage, self.channel_utilization,
                                   self.air_util_tx, self.uptime, now)


@dataclass
class EnvironmentMetricsUpdate:
    temperature: float
    relative_humidity: float
    barometric_pressure: float
    lux: float
    wind_direction: int
    wind_speed: float
    wind_gust: float
    radiation: float
    rainfall_1h: float
    rainfall_24h: float

    def apply(self, node: Node, topic: str, now: int) -> None:
        node.update_environment_metrics(
            self.temperature,
            self.relative_humidity,
            self.barometric_pressure,
            self.lux,
            self.wind_direction,
            self.wind_speed,
            self.wind_gust,
            self.radiation,
            self.rainfall_1h,
            self.rainfall_24h,
            now,
        )


@dataclass
class NeighborInfoUpdate:
    neighbors: List[Tuple[int, float]] = field(default_factory=list)  # (neighbor id, snr)

    def apply(self, node: Node, topic: str, now: int) -> None:
        for neighbor_id, snr in self.neighbors:
            node.update_neighbor(neighbor_id, snr, now)


@dataclass
class MapReportUpdate:
    user: UserUpdate
    position: PositionUpdate
    fw_version: str
    region: str
    modem_preset: str
    has_default_channel: bool
    online_local_nodes: int

    def apply(self, node: Node, topic: str, now: int) -> None:
        self.user.apply(node, topic, now)
        node.update_map_report(self.fw_version, self.region, self.modem_preset,
                               self.has_default_channel, self.online_local_nodes, now)
        self.position.apply(node, topic, now)


Update = Union[PositionUpdate, UserUpdate, DeviceMetricsUpdate, EnvironmentMetricsUpdate,
               NeighborInfoUpdate, MapReportUpdate]


def decode_position(sender_id: int, topic: str, payload: bytes) -> Optional[PositionUpdate]:
    position = mesh_pb2.Position()
    position.ParseFromString(payload)
    logger.debug(
        f'[msg] {sender_id} ({topic}) POSITION_APP: ({position.latitude_i}, {position.longitude_i}, '
        f'{position.altitude}) {position.precision_bits}/32'
    )
    # (0, 0) means no fix
    if position.latitude_i == 0 and position.longitude_i == 0:
        return None
    return PositionUpdate(
        latitude=position.latitude_i,
        longitude=position.longitude_i,
        altitude=position.altitude,
        precision=position.precision_bits,
    )


def decode_nodeinfo(sender_id: int, topic: str, payload: bytes) -> Optional[UserUpdate]:
    user = mesh_pb2.User()
    user.ParseFromString(payload)
    update = UserUpdate(
        long_name=user.long_name,
        short_name=user.short_name,
        hw_model=_enum_name(mesh_pb2.HardwareModel, user.hw_model),
        role=_enum_name(config_pb2.Config.DeviceConfig.Role, user.role),
    )
    logger.debug(
        f'[msg] {sender_id} ({topic}) NODEINFO_APP: {{"{update.long_name}" "{update.short_name}" '
        f'{update.hw_model} {update.role}}}'
    )
    if not update.long_name:
        return None
    return update


def decode_telemetry(sender_id: int, topic: str,
                     payload: bytes) -> Optional[Union[DeviceMetricsUpdate, EnvironmentMetricsUpdate]]:
    telemetry = telemetry_pb2.Telemetry()
    telemetry.ParseFromString(payload)
    if telemetry.HasField('device_metrics'):
        m = telemetry.device_metrics
        logger.debug(
            f'[msg] {sender_id} ({topic}) TELEMETRY_APP: DeviceMetrics{{power: {m.battery_level}% '
            f'({m.voltage}V); chUtil: {m.channel_utilization}%; airUtilTx: {m.air_util_tx}%; '
            f'uptime: {m.uptime_seconds}s}}'
        )
        return DeviceMetricsUpdate(
            battery_level=m.battery_level,
            voltage=m.voltage,
            channel_utilization=m.channel_utilization,
            air_util_tx=m.air_util_tx,
            uptime=m.uptime_seconds,
        )
    if telemetry.HasField('environment_metrics'):
        m = telemetry.environment_metrics
        logger.debug(
            f'[msg] {sender_id} ({topic}) TELEMETRY_APP: EnvironmentMetrics{{temp: {m.temperature}; '
            f'hum: {m.relative_humidity}; pres: {m.barometric_pressure}; lux: {m.lux}; '
            f'wind: {m.wind_direction} @ {m.wind_speed} G {m.wind_gust}; rad: {m.radiation}; '
            f'rain: {m.rainfall_1h} {m.rainfall_24h}}}'
        )
        return EnvironmentMetricsUpdate(
            temperature=m.temperature,
            relative_humidity=m.relative_humidity,
            barometric_pressure=m.barometric_pressure,
            lux=m.lux,
            wind_direction=m.wind_direction,
            wind_speed=m.wind_speed,
            wind_gust=m.wind_gust,
            radiation=m.radiation,
            rainfall_1h=m.rainfall_1h,
            rainfall_24h=m.rainfall_24h,
        )
    # other telemetry variants (power, air quality, ...) aren't tracked
    return None


def decode_neighborinfo(sender_id: int, topic: str, payload: bytes) -> Optional[NeighborInfoUpdate]:
    neighbor_info = mesh_pb2.NeighborInfo()
    neighbor_info.ParseFromString(payload)
    logger.debug(
        f'[msg] {sender_id} ({topic}) NEIGHBORINFO_APP: {neighbor_info.node_id} <-> '
        f'{len(neighbor_info.neighbors)} neighbors'
    )
    # only trust a node's report about itself
    if neighbor_info.node_id != sender_id:
        return None
    if not neighbor_info.neighbors:
        return None
    return NeighborInfoUpdate(neighbors=[
        (neighbor.node_id, neighbor.snr)
        for neighbor in neighbor_info.neighbors
        if neighbor.node_id != 0
    ])


def decode_mapreport(sender_id: int, topic: str, payload: bytes) -> Optional[MapReportUpdate]:
    map_report = mqtt_pb2.MapReport()
    map_report.ParseFromString(payload)
    update = MapReportUpdate(
        user=UserUpdate(
            long_name=map_report.long_name,
            short_name=map_report.short_name,
            hw_model=_enum_name(mesh_pb2.HardwareModel, map_report.hw_model),
            role=_enum_name(config_pb2.Config.DeviceConfig.Role, map_report.role),
        ),
        position=PositionUpdate(
            latitude=map_report.latitude_i,
            longitude=map_report.longitude_i,
            altitude=map_report.altitude,
            precision=map_report.position_precision,
        ),
        fw_version=map_report.firmware_version,
        region=_enum_name(config_pb2.Config.LoRaConfig.RegionCode, map_report.region),
        modem_preset=_enum_name(config_pb2.Config.LoRaConfig.ModemPreset, map_report.modem_preset),
        has_default_channel=map_report.has_default_channel,
        online_local_nodes=map_report.num_online_local_nodes,
    )
    logger.debug(f'[msg] {sender_id} ({topic}) MAP_REPORT_APP: {update}')
    if not update.user.long_name:
        return None
    if update.position.latitude == 0 and update.position.longitude == 0:
        return None
    return update


DECODERS: Dict[int, Callable[[int, str, bytes], Optional[Update]]] = {
    portnums_pb2.POSITION_APP: decode_position,
    portnums_pb2.NODEINFO_APP: decode_nodeinfo,
    portnums_pb2.TELEMETRY_APP: decode_telemetry,
    portnums_pb2.NEIGHBORINFO_APP: decode_neighborinfo,
    portnums_pb2.MAP_REPORT_APP: decode_mapreport,
}


def dispatch(store: NodeStore, sender_id: int, topic: str, portnum: int, payload: bytes,
             now: Optional[int] = None) -> Optional[Update]:
    """
    Decode one application payload and fold it into the store.
    Returns the applied update, or None if nothing changed.
    """
    if portnum == portnums_pb2.TEXT_MESSAGE_APP:
        text = payload.decode('utf-8', errors='replace')
        logger.info(f'[msg] {sender_id} ({topic}) TEXT_MESSAGE_APP: "{text}"')
        return None

    decoder = DECODERS.get(portnum)
    if decoder is None:
        logger.debug(f'[msg] {sender_id} ({topic}) {port_name(portnum)}')
        return None

    try:
        update = decoder(sender_id, topic, payload)
    except DecodeError as e:
        logger.warning(f'Could not parse {port_name(portnum)} payload from {sender_id} on {topic}: {e}')
        return None
    if update is None:
        return None

    store.apply(sender_id, topic, update, now)
    return update
