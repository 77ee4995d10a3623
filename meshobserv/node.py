"""
Node records for the mesh directory.

A node carries independently-aging groups of attributes: identity and position
persist until overwritten, while device metrics, environment metrics and map
report data each carry their own lastUpdated stamp and are cleared as a whole
once that stamp expires. seenBy (relay topic -> last seen) and neighbors are
bounded maps pruned oldest-first.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

SEEN_BY_LIMIT = 10
NEIGHBOR_LIMIT = 100


def clean_float(value: float) -> float:
    """Replace non-finite readings with 0 and limit to 3 decimal places."""
    if value is None or not math.isfinite(value):
        return 0.0
    # ties round away from zero
    return math.copysign(math.floor(abs(value) * 1000 + 0.5) / 1000, value)


def _now(now: Optional[int]) -> int:
    return int(time.time()) if now is None else now


def _oldest_key(entries: Dict[Any, int]) -> Any:
    """Key with the smallest timestamp; the first one wins on ties."""
    oldest = None
    for key, stamp in entries.items():
        if oldest is None or stamp < entries[oldest]:
            oldest = key
    return oldest


@dataclass
class Neighbor:
    snr: float = 0.0
    updated: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = {'updated': self.updated}
        if self.snr:
            data['snr'] = self.snr
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Neighbor':
        return cls(snr=data.get('snr', 0.0), updated=data.get('updated', 0))


# (attribute, JSON key, always emitted)
_JSON_FIELDS = (
    # User
    ('long_name', 'longName', True),
    ('short_name', 'shortName', True),
    ('hw_model', 'hwModel', True),
    ('role', 'role', True),
    # MapReport
    ('fw_version', 'fwVersion', False),
    ('region', 'region', False),
    ('modem_preset', 'modemPreset', False),
    ('has_default_channel', 'hasDefaultCh', False),
    ('online_local_nodes', 'onlineLocalNodes', False),
    ('last_map_report', 'lastMapReport', False),
    # Position
    ('latitude', 'latitude', True),
    ('longitude', 'longitude', True),
    ('altitude', 'altitude', False),
    ('precision', 'precision', False),
    # DeviceMetrics
    ('battery_level', 'batteryLevel', False),
    ('voltage', 'voltage', False),
    ('channel_utilization', 'chUtil', False),
    ('air_util_tx', 'airUtilTx', False),
    ('uptime', 'uptime', False),
    ('last_device_metrics', 'lastDeviceMetrics', False),
    # EnvironmentMetrics
    ('temperature', 'temperature', False),
    ('relative_humidity', 'relativeHumidity', False),
    ('barometric_pressure', 'barometricPressure', False),
    ('lux', 'lux', False),
    ('wind_direction', 'windDirection', False),
    ('wind_speed', 'windSpeed', False),
    ('wind_gust', 'windGust', False),
    ('radiation', 'radiation', False),
    ('rainfall_1h', 'rainfall1', False),
    ('rainfall_24h', 'rainfall24', False),
    ('last_environment_metrics', 'lastEnvironmentMetrics', False),
)


@dataclass
class Node:
    # User
    long_name: str = ''
    short_name: str = ''
    hw_model: str = ''
    role: str = ''
    # MapReport
    fw_version: str = ''
    region: str = ''
    modem_preset: str = ''
    has_default_channel: bool = False
    online_local_nodes: int = 0
    last_map_report: int = 0
    # Position (1e-7 degrees, metres, precision bits)
    latitude: int = 0
    longitude: int = 0
    altitude: int = 0
    precision: int = 0
    # DeviceMetrics
    battery_level: int = 0
    voltage: float = 0.0
    channel_utilization: float = 0.0
    air_util_tx: float = 0.0
    uptime: int = 0
    last_device_metrics: int = 0
    # EnvironmentMetrics
    temperature: float = 0.0
    relative_humidity: float = 0.0
    barometric_pressure: float = 0.0
    lux: float = 0.0
    wind_direction: int = 0
    wind_speed: float = 0.0
    wind_gust: float = 0.0
    radiation: float = 0.0
    rainfall_1h: float = 0.0
    rainfall_24h: float = 0.0
    last_environment_metrics: int = 0
    # NeighborInfo, None rather than empty when there are no neighbors
    neighbors: Optional[Dict[int, Neighbor]] = None
    # relay topic -> last seen
    seen_by: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def new(cls, topic: str, now: Optional[int] = None) -> 'Node':
        return cls(seen_by={topic: _now(now)})

    def clear_device_metrics(self) -> None:
        self.battery_level = 0
        self.voltage = 0.0
        self.channel_utilization = 0.0
        self.air_util_tx = 0.0
        self.uptime = 0
        self.last_device_metrics = 0

    def clear_environment_metrics(self) -> None:
        self.temperature = 0.0
        self.relative_humidity = 0.0
        self.barometric_pressure = 0.0
        self.lux = 0.0
        self.wind_direction = 0
        self.wind_speed = 0.0
        self.wind_gust = 0.0
        self.radiation = 0.0
        self.rainfall_1h = 0.0
        self.rainfall_24h = 0.0
        self.last_environment_metrics = 0

    def clear_map_report(self) -> None:
        self.fw_version = ''
        self.region = ''
        self.modem_preset = ''
        self.has_default_channel = False
        self.online_local_nodes = 0
        self.last_map_report = 0

    def is_valid(self) -> bool:
        """A node is exported only once it has been seen, named and placed."""
        if not self.seen_by:
            return False
        if not self.long_name:
            return False
        if self.latitude == 0 and self.longitude == 0:
            return False
        return True

    def prune(self, seen_by_ttl: int, neighbor_ttl: int, metrics_ttl: int,
              map_report_ttl: int, now: Optional[int] = None) -> None:
        now = _now(now)
        # SeenBy
        for topic, last_seen in list(self.seen_by.items()):
            if last_seen + seen_by_ttl < now:
                del self.seen_by[topic]
        while len(self.seen_by) > SEEN_BY_LIMIT:
            del self.seen_by[_oldest_key(self.seen_by)]
        # Neighbors
        if self.neighbors:
            for neighbor_id, neighbor in list(self.neighbors.items()):
                if neighbor.updated + neighbor_ttl < now:
                    del self.neighbors[neighbor_id]
            while len(self.neighbors) > NEIGHBOR_LIMIT:
                stamps = {k: n.updated for k, n in self.neighbors.items()}
                del self.neighbors[_oldest_key(stamps)]
        if not self.neighbors:
            self.neighbors = None
        # Optional groups expire as a unit
        if self.last_device_metrics > 0 and self.last_device_metrics + metrics_ttl < now:
            self.clear_device_metrics()
        if self.last_environment_metrics > 0 and self.last_environment_metrics + metrics_ttl < now:
            self.clear_environment_metrics()
        if self.last_map_report > 0 and self.last_map_report + map_report_ttl < now:
            self.clear_map_report()

    def update_user(self, long_name: str, short_name: str, hw_model: str, role: str) -> None:
        self.long_name = long_name
        self.short_name = short_name
        self.hw_model = hw_model
        self.role = role

    def update_position(self, latitude: int, longitude: int, altitude: int, precision: int) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self.altitude = altitude
        self.precision = precision

    def update_device_metrics(self, battery_level: int, voltage: float, channel_utilization: float,
                              air_util_tx: float, uptime: int, now: Optional[int] = None) -> None:
        self.battery_level = battery_level
        self.voltage = clean_float(voltage)
        self.channel_utilization = clean_float(channel_utilization)
        self.air_util_tx = clean_float(air_util_tx)
        self.uptime = uptime
        self.last_device_metrics = _now(now)

    def update_environment_metrics(self, temperature: float, relative_humidity: float,
                                   barometric_pressure: float, lux: float, wind_direction: int,
                                   wind_speed: float, wind_gust: float, radiation: float,
                                   rainfall_1h: float, rainfall_24h: float,
                                   now: Optional[int] = None) -> None:
        self.temperature = clean_float(temperature)
        self.relative_humidity = clean_float(relative_humidity)
        self.barometric_pressure = clean_float(barometric_pressure)
        self.lux = clean_float(lux)
        self.wind_direction = wind_direction
        self.wind_speed = clean_float(wind_speed)
        self.wind_gust = clean_float(wind_gust)
        self.radiation = clean_float(radiation)
        self.rainfall_1h = clean_float(rainfall_1h)
        self.rainfall_24h = clean_float(rainfall_24h)
        self.last_environment_metrics = _now(now)

    def update_map_report(self, fw_version: str, region: str, modem_preset: str,
                          has_default_channel: bool, online_local_nodes: int,
                          now: Optional[int] = None) -> None:
        self.fw_version = fw_version
        self.region = region
        self.modem_preset = modem_preset
        self.has_default_channel = has_default_channel
        self.online_local_nodes = online_local_nodes
        self.last_map_report = _now(now)

    def update_neighbor(self, neighbor_id: int, snr: float, now: Optional[int] = None) -> None:
        if self.neighbors is None:
            self.neighbors = {}
        self.neighbors[neighbor_id] = Neighbor(snr=clean_float(snr), updated=_now(now))

    def update_seen_by(self, topic: str, now: Optional[int] = None) -> None:
        self.seen_by[topic] = _now(now)

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot record; zero-valued optional fields are omitted."""
        data = {}
        for attr, key, always in _JSON_FIELDS:
            value = getattr(self, attr)
            if always or value:
                data[key] = value
        if self.neighbors:
            data['neighbors'] = {str(k): n.to_dict() for k, n in self.neighbors.items()}
        data['seenBy'] = dict(self.seen_by)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Node':
        node = cls()
        for attr, key, _ in _JSON_FIELDS:
            if key in data:
                setattr(node, attr, data[key])
        neighbors = data.get('neighbors')
        if neighbors:
            node.neighbors = {int(k): Neighbor.from_dict(v) for k, v in neighbors.items()}
        node.seen_by = {str(k): int(v) for k, v in (data.get('seenBy') or {}).items()}
        return node
