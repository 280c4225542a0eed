"""Statistics about groups, clients, connections and tracks.

The ``to_dict`` methods produce the JSON shape used by the statistics
interface: camel-case keys, empty optional fields left out, and
durations expressed as floating-point milliseconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from rtpcore.rtptime import MILLISECOND

__all__ = ["Track", "Conn", "ClientStats", "GroupStats", "collect_groups"]

_LAYER_KEYS = (
    ("sid", "sid"),
    ("maxSid", "max_sid"),
    ("tid", "tid"),
    ("maxTid", "max_tid"),
)


def _duration_to_ms(ns: int) -> float:
    return ns / MILLISECOND


def _duration_from_ms(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{key} must be a number of milliseconds")
    return int(value * MILLISECOND)


def _int_field(data: Mapping[str, Any], key: str, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{key} must be an integer")
    return value


@dataclass
class Track:
    """Statistics of a single track; durations are in nanoseconds."""

    bitrate: int = 0
    loss: float = 0.0
    max_bitrate: int = 0
    rtt: int = 0
    jitter: int = 0
    sid: Optional[int] = None
    max_sid: Optional[int] = None
    tid: Optional[int] = None
    max_tid: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Return the JSON-ready representation of the track."""
        result: Dict[str, Any] = {}
        for key, attr in _LAYER_KEYS:
            value = getattr(self, attr)
            if value is not None:
                result[key] = value
        result["bitrate"] = self.bitrate
        if self.max_bitrate:
            result["maxBitrate"] = self.max_bitrate
        result["loss"] = self.loss
        if self.rtt:
            result["rtt"] = _duration_to_ms(self.rtt)
        if self.jitter:
            result["jitter"] = _duration_to_ms(self.jitter)
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Track":
        """Build a track from its JSON representation."""
        if not isinstance(data, Mapping):
            raise TypeError("track statistics must be a mapping")
        loss = data.get("loss", 0.0)
        if isinstance(loss, bool) or not isinstance(loss, (int, float)):
            raise TypeError("loss must be a number")
        rtt = data.get("rtt")
        jitter = data.get("jitter")
        layers = {attr: _int_field(data, key, None) for key, attr in _LAYER_KEYS}
        return cls(
            bitrate=_int_field(data, "bitrate", 0),
            loss=float(loss),
            max_bitrate=_int_field(data, "maxBitrate", 0),
            rtt=0 if rtt is None else _duration_from_ms(rtt, "rtt"),
            jitter=0 if jitter is None else _duration_from_ms(jitter, "jitter"),
            **layers,
        )


@dataclass
class Conn:
    """Statistics of a connection and its tracks."""

    id: str
    max_bitrate: int = 0
    tracks: List[Track] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Return the JSON-ready representation of the connection."""
        result: Dict[str, Any] = {"id": self.id}
        if self.max_bitrate:
            result["maxBitrate"] = self.max_bitrate
        result["tracks"] = [t.to_dict() for t in self.tracks]
        return result


@dataclass
class ClientStats:
    """Statistics of a client's upstream and downstream connections."""

    id: str
    up: List[Conn] = field(default_factory=list)
    down: List[Conn] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Return the JSON-ready representation of the client."""
        result: Dict[str, Any] = {"id": self.id}
        if self.up:
            result["up"] = [c.to_dict() for c in self.up]
        if self.down:
            result["down"] = [c.to_dict() for c in self.down]
        return result


@dataclass
class GroupStats:
    """Statistics of all clients in a group."""

    name: str
    clients: List[ClientStats] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Return the JSON-ready representation of the group."""
        result: Dict[str, Any] = {"name": self.name}
        if self.clients:
            result["clients"] = [c.to_dict() for c in self.clients]
        return result


def _client_stats(client: Any) -> ClientStats:
    get_stats = getattr(client, "get_stats", None)
    if callable(get_stats):
        return get_stats()
    return ClientStats(id=client.id)


def collect_groups(
    groups: Mapping[str, Optional[Iterable[Any]]],
) -> List[GroupStats]:
    """Gather statistics for every group, sorted by name.

    ``groups`` maps group names to their clients; a group mapped to None
    is skipped.  Clients with a ``get_stats()`` method report their own
    statistics, others contribute just their ``id``.  Clients are sorted
    by id.
    """
    result = []
    for name, clients in groups.items():
        if clients is None:
            continue
        collected = sorted(
            (_client_stats(c) for c in clients), key=lambda c: c.id
        )
        result.append(GroupStats(name=name, clients=collected))
    result.sort(key=lambda g: g.name)
    return result