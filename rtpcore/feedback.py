"""Feedback computed for upstream tracks.

This covers receiver reports, the maximum bitrate announced upstream,
NACK packing and the sizing of packet caches.  Times are in jiffies
(see ``rtpcore.rtptime``) and bitrates in bits per second.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from rtpcore.packetcache import CacheStats, to_bitmap
from rtpcore.rtptime import JIFFIES_PER_SEC
from rtpcore.trackstate import sadd

__all__ = [
    "ReceptionReport",
    "max_up_bitrate",
    "reception_report",
    "remb_rate",
    "nack_pairs",
    "min_packet_cache",
    "cache_size",
    "AUDIO_BITRATE",
    "MAX_NACK_PAIRS",
    "MAX_CACHE_SIZE",
]

logger = logging.getLogger(__name__)

_U64 = (1 << 64) - 1
_U32 = 0xFFFFFFFF

# Bitrate requested for an audio track.
AUDIO_BITRATE = 100 * 1024
# At most this many NACK pairs are sent in one packet.
MAX_NACK_PAIRS = 240
# Upper bound on the number of packets kept in a cache.
MAX_CACHE_SIZE = 1024

_VIDEO_CACHE = 128
_AUDIO_CACHE = 24
# Jiffies per unit of the report's delay field (1/65536 s).
_JIFFIES_PER_DELAY_UNIT = JIFFIES_PER_SEC // 0x10000


@dataclass(frozen=True)
class ReceptionReport:
    """The fields of a reception report block about one source."""

    ssrc: int
    fraction_lost: int
    total_lost: int
    last_sequence_number: int
    jitter: int
    last_sender_report: int
    delay: int


def max_up_bitrate(
    downs: Iterable[Tuple[int, int, int]], min_bitrate: int
) -> int:
    """Return the bitrate to request from the sender of a track.

    ``downs`` yields, for each downstream track, its allowed bitrate and
    its current spatial and temporal layers.  Lower spatial layers are
    assumed to take a quarter more throughput, and each temporal layer
    is assumed to halve the throughput of the one above it.
    """
    minrate = _U64
    maxrate = min_bitrate
    maxsid = 0
    maxtid = 0
    for rate, sid, tid in downs:
        maxsid = max(maxsid, sid)
        maxtid = max(maxtid, tid)
        rate = max(rate, min_bitrate)
        minrate = min(minrate, rate)
        maxrate = max(maxrate, rate)
    if maxsid > 0:
        maxrate = sadd(maxrate, maxrate // 4)
    for _ in range(maxtid):
        minrate = sadd(minrate, minrate)
    return min(minrate, maxrate)


def reception_report(
    ssrc: int,
    stats: CacheStats,
    jitter: int,
    sr_time: int,
    sr_ntp_time: int,
    now: int,
) -> ReceptionReport:
    """Build a reception report from cache statistics.

    ``sr_time`` is when the last sender report was received (0 if none)
    and ``sr_ntp_time`` its NTP timestamp.
    """
    total_lost = 0
    if stats.total_expected > stats.total_received:
        total_lost = stats.total_expected - stats.total_received
    fraction_lost = 0
    if stats.expected > stats.received:
        lost = stats.expected - stats.received
        fraction_lost = min(((lost * 256) & _U32) // stats.expected, 255)
    delay = 0
    if sr_time != 0:
        delay = ((now - sr_time) & _U64) // _JIFFIES_PER_DELAY_UNIT
    return ReceptionReport(
        ssrc=ssrc & _U32,
        fraction_lost=fraction_lost,
        total_lost=total_lost & _U32,
        last_sequence_number=stats.eseqno,
        jitter=jitter & _U32,
        last_sender_report=(sr_ntp_time >> 16) & _U32,
        delay=delay & _U32,
    )


def remb_rate(
    tracks: Iterable[Any],
    low_bitrate: int,
    max_bitrate: int,
    min_bitrate: int,
) -> Optional[Tuple[List[int], int]]:
    """Compute the estimated maximum bitrate to announce upstream.

    Each track provides ``ssrc``, ``remb`` (whether the sender accepts
    bitrate estimates), ``kind`` ("audio" or "video"), ``label`` and
    ``downs`` (as for ``max_up_bitrate``).  Returns the SSRCs the
    estimate applies to and the rate, or None if no track accepts one.
    """
    ssrcs: List[int] = []
    rate = 0
    for track in tracks:
        if not track.remb:
            continue
        ssrcs.append(track.ssrc)
        if track.kind == "audio":
            rate = sadd(rate, AUDIO_BITRATE)
        elif track.label == "l":
            rate = sadd(rate, low_bitrate)
        else:
            rate = sadd(rate, max_up_bitrate(track.downs, min_bitrate))
    if not ssrcs:
        return None
    return ssrcs, min(rate, max_bitrate)


def nack_pairs(seqnos: Sequence[int]) -> List[Tuple[int, int]]:
    """Pack a sorted list of seqnos into (first, bitmap) NACK pairs.

    At most ``MAX_NACK_PAIRS`` pairs are produced; the rest are dropped.
    """
    pairs: List[Tuple[int, int]] = []
    remain = list(seqnos)
    while remain:
        if len(pairs) >= MAX_NACK_PAIRS:
            logger.warning("NACK: packet overflow")
            break
        first, bitmap, remain = to_bitmap(remain)
        pairs.append((first, bitmap))
    return pairs


def min_packet_cache(is_video: bool) -> int:
    """Return the smallest cache size for a video or audio track."""
    return _VIDEO_CACHE if is_video else _AUDIO_CACHE


def cache_size(packet_rate: int, rtos: Iterable[int], is_video: bool) -> int:
    """Return the number of packets a cache should hold.

    The cache covers four times the largest retransmission timeout
    (in jiffies) among the downstream tracks at the given packet rate,
    bounded below by ``min_packet_cache`` and above by
    ``MAX_CACHE_SIZE``.
    """
    maxrto = max(rtos, default=0)
    packets = ((packet_rate * maxrto * 4) & _U64) // JIFFIES_PER_SEC
    packets = max(packets, min_packet_cache(is_video))
    return min(packets, MAX_CACHE_SIZE)