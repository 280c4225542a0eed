"""Decisions made when forwarding cached packets to downstream tracks.

This covers how many tracks a writer serves, when a newly added track is
brought up to date by replaying from the last keyframe, which requested
retransmissions are worth asking upstream for, and how a congested writer
skips the rest of a video frame.
"""

from __future__ import annotations

import math
from typing import Iterable, Iterator, List, Optional

from rtpcore.packetcache import PacketCache

__all__ = [
    "FrameDropper",
    "isqrt",
    "writer_capacity",
    "should_replay",
    "keyframe_sequence",
    "nack_cutoff",
    "filter_nacks",
]

_U16 = 0xFFFF

# Number of tracks a writer serves while the pool is small.
DEFAULT_WRITER_CAPACITY = 4
# Packets skipped by a congested video writer, at most.
DROP_PACKETS = 7
# Replay from the keyframe only if it is at most this many packets back.
MAX_REPLAY = 40
# Without a keyframe, NACKs further back than this are ignored.
NACK_HORIZON = 256


def isqrt(n: int) -> int:
    """Return the integer square root of n; values below 2 are returned
    unchanged."""
    if n < 2:
        return n
    return math.isqrt(n)


def writer_capacity(count: int) -> int:
    """Return how many tracks one writer serves when the pool holds
    ``count`` tracks in total."""
    if count > 16:
        return isqrt(count)
    return DEFAULT_WRITER_CAPACITY


def should_replay(last: int, keyframe: int) -> bool:
    """True if the packets since the keyframe are few enough to replay
    rather than asking for a new keyframe."""
    return ((last - keyframe) & _U16) < MAX_REPLAY


def keyframe_sequence(kf: int, last: int, cache: PacketCache) -> Iterator[bytes]:
    """Yield cached packets from kf up to last, stopping at the first gap."""
    seqno = kf & _U16
    last &= _U16
    while ((last - seqno) & 0x8000) == 0:
        packet = cache.get(seqno)
        if packet is None:
            return
        yield packet
        seqno = (seqno + 1) & _U16


def nack_cutoff(cache: PacketCache) -> Optional[int]:
    """Return the oldest seqno worth retransmitting, or None if nothing
    has been received yet."""
    keyframe = cache.keyframe()
    if keyframe is not None:
        return keyframe
    last = cache.last()
    if last is None:
        return None
    return (last - NACK_HORIZON) & _U16


def filter_nacks(nacks: Iterable[int], cache: PacketCache) -> List[int]:
    """Select the seqnos still worth requesting upstream.

    Seqnos older than the cutoff and packets that have arrived in the
    meantime are dropped; the rest are returned oldest first.
    """
    cutoff = nack_cutoff(cache)
    if cutoff is None:
        return []
    kept = [
        s & _U16
        for s in nacks
        if ((s - cutoff) & 0x8000) == 0 and cache.get(s) is None
    ]
    kept.sort(key=lambda s: (s - cutoff) & _U16)
    return kept


class FrameDropper:
    """Tracks the frame-dropping state of one writer."""

    def __init__(self) -> None:
        self._drop = 0

    def admit(self, congested: bool, isvideo: bool, marker: bool) -> bool:
        """Decide whether a packet is still handed to the writer.

        A congested video writer skips the rest of the current frame, up
        to a bounded number of packets.  A congested audio writer is
        still handed the packet, to be delivered after a short wait.
        """
        if self._drop > 0:
            self._drop = 0 if marker else self._drop - 1
            return False
        if not congested:
            return True
        if isvideo:
            if not marker:
                self._drop = DROP_PACKETS
            return False
        return True