"""Decisions made while reading packets from an upstream track.

This covers when to send NACKs for late packets, how long to wait for a
congested writer, when to ask the sender for a keyframe, and the track
statistics reported for upstream and downstream tracks.

Packet rates are in packets per second, sending rates in bytes per
second, times in nanoseconds unless stated otherwise.
"""

from __future__ import annotations

from typing import Optional, Tuple

from rtpcore.packetcache import CacheStats, PacketCache
from rtpcore.rtptime import JIFFIES_PER_SEC, SECOND, to_duration
from rtpcore.stats import Track
from rtpcore.trackstate import DownTrackState

__all__ = [
    "KeyframeRequester",
    "nack_threshold",
    "unnacked_count",
    "write_delay",
    "late_nack",
    "up_track_stats",
    "down_track_stats",
    "KEYFRAME_INTERVAL",
]

_U16 = 0xFFFF
_U32 = 0xFFFFFFFF

# Minimum interval between two keyframe requests.
KEYFRAME_INTERVAL = SECOND // 2

_MIN_LATE_PACKETS = 2
_MAX_LATE_PACKETS = 24
_MAX_UNNACKED = 4


def nack_threshold(packet_rate: int) -> int:
    """Return how many packets late a packet must be before it is NACKed.

    This is 20ms worth of packets or 2 packets, whichever is more, and
    never more than 24.
    """
    packets = packet_rate // 50
    return max(_MIN_LATE_PACKETS, min(packets, _MAX_LATE_PACKETS))


def unnacked_count(packet_rate: int) -> int:
    """Return how many of the most recent packets are left out of a NACK,
    so that later NACKs make better use of their bitmap."""
    return min(_MAX_UNNACKED, nack_threshold(packet_rate))


def write_delay(packet_rate: int) -> int:
    """Return, in jiffies, how long a congested audio writer may be
    waited for."""
    if packet_rate > 512:
        return JIFFIES_PER_SEC // packet_rate // 2
    return JIFFIES_PER_SEC // 1024


def late_nack(
    cache: PacketCache, seqno: int, first: int, packet_rate: int
) -> Optional[Tuple[int, int]]:
    """Decide whether packets are missing for long enough to NACK them.

    ``seqno`` is the packet just stored and ``first`` the first seqno of
    the cache's loss bitmap returned by the store.  Returns the first
    missing seqno and the bitmap of those that follow, or None if there
    is nothing to request yet.
    """
    delta = (seqno - first) & _U16
    if delta & 0x8000:
        delta = 0
    if delta <= nack_threshold(packet_rate):
        return None
    return cache.bitmap_get((seqno - unnacked_count(packet_rate)) & _U16)


class KeyframeRequester:
    """Rate-limits keyframe requests sent upstream.

    Set ``needed`` when a downstream track asks for a keyframe; it is
    cleared when a keyframe arrives, or when the codec gives no way of
    telling keyframes apart.  Clear it as well if sending a request fails.
    """

    def __init__(self, can_send_pli: bool) -> None:
        self.can_send_pli = can_send_pli
        self.needed = False
        self._requested: Optional[int] = None

    def observe(self, keyframe: bool, known: bool) -> None:
        """Take note of a received packet's keyframe status."""
        if keyframe or not known:
            self.needed = False

    def due(self, now: int) -> bool:
        """Return True if a keyframe request should be sent now."""
        if not self.needed:
            return False
        if self._requested is not None and now - self._requested <= KEYFRAME_INTERVAL:
            return False
        self._requested = now
        if not self.can_send_pli:
            self.needed = False
            return False
        return True


def up_track_stats(
    cache_stats: CacheStats, jitter: int, hz: int, rate: int, max_bitrate: int
) -> Track:
    """Build the statistics of an upstream track.

    ``jitter`` is in units of 1/hz and ``rate`` in bytes per second.
    """
    loss = 0.0
    if cache_stats.expected > 0:
        lost = (cache_stats.expected - cache_stats.received) & _U32
        loss = lost / cache_stats.expected
    return Track(
        bitrate=rate * 8,
        max_bitrate=max_bitrate,
        loss=loss,
        jitter=jitter * (SECOND // hz),
    )


def down_track_stats(
    state: DownTrackState,
    rate: int,
    jitter: Optional[int],
    clockrate: int,
    now: int,
) -> Track:
    """Build the statistics of a downstream track.

    ``rate`` is the sending rate in bytes per second and ``now`` is in
    jiffies.  ``jitter`` is in units of 1/clockrate; if None, the jitter
    from the receiver's last report is used.
    """
    layer = state.layer
    max_rate, _, _ = state.get_max_bitrate(now)
    loss, reported_jitter = state.stats.get(now)
    if jitter is None:
        jitter = reported_jitter
    return Track(
        sid=layer.sid,
        max_sid=layer.max_sid,
        tid=layer.tid,
        max_tid=layer.max_tid,
        bitrate=rate * 8,
        max_bitrate=max_rate,
        loss=loss / 256.0,
        rtt=to_duration(state.rtt, JIFFIES_PER_SEC),
        jitter=jitter * SECOND // clockrate,
    )