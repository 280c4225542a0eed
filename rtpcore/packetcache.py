"""A cache of recently seen RTP packets.

The cache keeps a history of recent packets, the last keyframe seen, a
bitmap of recent losses and the statistics needed for receiver reports.
Sequence numbers are 16-bit and compared modulo 2**16.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

# Maximum size of packets stored in the cache.
BUF_SIZE = 1504

MAX_CAPACITY = 0xFFFF

_U16 = 0xFFFF
_U32 = 0xFFFFFFFF


def compare(s1: int, s2: int) -> int:
    """Compare two sequence numbers modulo 2**16."""
    if s1 == s2:
        return 0
    if ((s2 - s1) & 0x8000) != 0:
        return 1
    return -1


def _seqno_invalid(seqno: int, reference: int) -> bool:
    """True if seqno is unreasonably far in the past of reference."""
    if compare(reference, seqno) < 0:
        return False
    return ((reference - seqno) & _U16) > 0x100


def _trailing_zeros32(x: int) -> int:
    x &= _U32
    if x == 0:
        return 32
    return (x & -x).bit_length() - 1


@dataclass(frozen=True)
class _Entry:
    seqno: int
    timestamp: int
    marker: bool
    data: bytes


class _LossBitmap:
    """Recent loss history: bit i set means first+i was received."""

    def __init__(self) -> None:
        self.valid = False
        self.first = 0
        self.bits = 0

    def set(self, seqno: int) -> None:
        if not self.valid or _seqno_invalid(seqno, self.first):
            self.first = seqno
            self.bits = 1
            self.valid = True
            return

        if compare(self.first, seqno) > 0:
            return

        if ((seqno - self.first) & _U16) >= 32:
            shift = (seqno - self.first - 31) & _U16
            self.bits >>= shift
            self.first = (self.first + shift) & _U16

        if self.bits & 1:
            ones = _trailing_zeros32(~self.bits)
            self.bits >>= ones
            self.first = (self.first + ones) & _U16

        offset = (seqno - self.first) & _U16
        if offset < 32:
            self.bits = (self.bits | (1 << offset)) & _U32

    def get(self, next_seqno: int) -> Optional[Tuple[int, int]]:
        first = self.first
        if compare(first, next_seqno) >= 0:
            return None
        count = min((next_seqno - first) & _U16, 17)
        missing = (~self.bits) & ~((_U32 << count) & _U32) & _U32
        self.bits >>= count
        self.first = (self.first + count) & _U16

        if missing == 0:
            return None

        if (missing & 1) == 0:
            zeros = _trailing_zeros32(missing)
            missing >>= zeros
            first = (first + zeros) & _U16

        return first, (missing >> 1) & _U16


@dataclass(frozen=True)
class CacheStats:
    """Reception statistics of a cache."""

    received: int
    total_received: int
    expected: int
    total_expected: int
    eseqno: int


def _check_capacity(capacity: int) -> None:
    if not 1 <= capacity <= MAX_CAPACITY:
        raise ValueError(
            f"cache capacity must be between 1 and {MAX_CAPACITY}, "
            f"got {capacity}"
        )


class PacketCache:
    """A thread-safe ring of recently received packets."""

    def __init__(self, capacity: int) -> None:
        _check_capacity(capacity)
        self._lock = threading.Lock()
        self._last = 0
        self._cycle = 0
        self._last_valid = False
        self._expected = 0
        self._total_expected = 0
        self._received = 0
        self._total_received = 0
        self._keyframe = 0
        self._keyframe_valid = False
        self._bitmap = _LossBitmap()
        self._tail = 0
        self._entries: List[Optional[_Entry]] = [None] * capacity

    def store(
        self,
        seqno: int,
        timestamp: int,
        keyframe: bool,
        marker: bool,
        buf: bytes,
    ) -> Tuple[int, int]:
        """Store a packet; return the first seqno of the loss bitmap and
        the index at which the packet was stored."""
        seqno &= _U16
        with self._lock:
            if not self._last_valid or _seqno_invalid(seqno, self._last):
                self._last = seqno
                self._last_valid = True
                self._expected = (self._expected + 1) & _U32
                self._received = (self._received + 1) & _U32
            else:
                cmp = compare(self._last, seqno)
                if cmp < 0:
                    self._received = (self._received + 1) & _U32
                    self._expected = (
                        self._expected + ((seqno - self._last) & _U16)
                    ) & _U32
                    if seqno < self._last:
                        self._cycle = (self._cycle + 1) & _U16
                    self._last = seqno
                    if self._keyframe_valid and compare(self._keyframe, seqno) > 0:
                        self._keyframe_valid = False
                elif cmp > 0 and self._received < self._expected:
                    self._received += 1

            self._bitmap.set(seqno)

            if keyframe:
                self._keyframe = seqno
                self._keyframe_valid = True

            index = self._tail
            self._entries[index] = _Entry(
                seqno=seqno,
                timestamp=timestamp & _U32,
                marker=bool(marker),
                data=bytes(buf[:BUF_SIZE]),
            )
            self._tail = (index + 1) % len(self._entries)
            return self._bitmap.first, index

    def expect(self, n: int) -> None:
        """Record that n additional packets are expected."""
        if n <= 0:
            return
        with self._lock:
            self._expected = (self._expected + n) & _U32

    def get(self, seqno: int) -> Optional[bytes]:
        """Return the cached packet with the given seqno, or None."""
        seqno &= _U16
        with self._lock:
            for entry in self._entries:
                if entry is None or (not entry.data and not entry.marker):
                    continue
                if entry.seqno == seqno:
                    return entry.data or None
            return None

    def get_at(self, seqno: int, index: int) -> Optional[bytes]:
        """Return the packet stored at index if it has the given seqno."""
        seqno &= _U16
        with self._lock:
            if not 0 <= index < len(self._entries):
                return None
            entry = self._entries[index]
            if entry is None or entry.seqno != seqno:
                return None
            return entry.data or None

    def seqno_at(self, index: int) -> Optional[int]:
        """Return the seqno of the packet stored at index, None if empty."""
        with self._lock:
            if not 0 <= index < len(self._entries):
                raise IndexError(f"cache index {index} out of range")
            entry = self._entries[index]
            return None if entry is None else entry.seqno

    def capacity(self) -> int:
        """Return the number of slots in the cache."""
        with self._lock:
            return len(self._entries)

    def bitmap_value(self) -> int:
        """Return the raw 32-bit loss bitmap."""
        with self._lock:
            return self._bitmap.bits

    def last(self) -> Optional[int]:
        """Return the most recent seqno seen, or None."""
        with self._lock:
            return self._last if self._last_valid else None

    def keyframe(self) -> Optional[int]:
        """Return the seqno of the last keyframe seen, or None."""
        with self._lock:
            return self._keyframe if self._keyframe_valid else None

    def bitmap_get(self, next_seqno: int) -> Optional[Tuple[int, int]]:
        """Shift up to 17 bits out of the loss bitmap.

        Returns None if no packet was missing, otherwise the seqno of the
        first missing packet and a 16-bit bitmap of the missing packets
        that follow it.
        """
        with self._lock:
            return self._bitmap.get(next_seqno & _U16)

    def _resize(self, capacity: int) -> None:
        old = self._entries
        size = len(old)
        if size == capacity:
            return
        tail = self._tail
        entries: List[Optional[_Entry]] = [None] * capacity
        if capacity > size:
            entries[:tail] = old[:tail]
            entries[tail + capacity - size:] = old[tail:]
        elif capacity > tail:
            entries[:tail] = old[:tail]
            entries[tail:] = old[tail + size - capacity:]
        else:
            # every recent index is invalidated
            entries[:] = old[tail - capacity:tail]
            self._tail = 0
        self._entries = entries

    def resize(self, capacity: int) -> None:
        """Resize the cache; may invalidate indices of recent packets."""
        _check_capacity(capacity)
        with self._lock:
            self._resize(capacity)

    def resize_cond(self, capacity: int) -> bool:
        """Resize only if worthwhile and without invalidating recent
        indices; return whether the cache was resized."""
        _check_capacity(capacity)
        with self._lock:
            current = len(self._entries)
            if capacity * 3 // 4 <= current < capacity * 2:
                return False
            if capacity < current and self._tail > capacity:
                return False
            self._resize(capacity)
            return True

    def get_stats(self, reset: bool) -> CacheStats:
        """Return reception statistics, resetting the interval counters
        if reset is true."""
        with self._lock:
            stats = CacheStats(
                received=self._received,
                total_received=(self._total_received + self._received) & _U32,
                expected=self._expected,
                total_expected=(self._total_expected + self._expected) & _U32,
                eseqno=((self._cycle << 16) | self._last) & _U32,
            )
            if reset:
                self._total_expected = (
                    self._total_expected + self._expected
                ) & _U32
                self._expected = 0
                self._total_received = (
                    self._total_received + self._received
                ) & _U32
                self._received = 0
            return stats


def to_bitmap(seqnos: Sequence[int]) -> Tuple[int, int, List[int]]:
    """Cover a prefix of a sorted list of seqnos with a NACK bitmap.

    Returns the first seqno, the bitmap of the following ones and the
    seqnos that could not be covered.
    """
    if not seqnos:
        raise ValueError("to_bitmap needs at least one seqno")
    first = seqnos[0]
    bitmap = 0
    remain = list(seqnos[1:])
    for pos, seqno in enumerate(remain):
        delta = (seqno - first - 1) & _U16
        if delta >= 16:
            return first, bitmap, remain[pos:]
        bitmap |= 1 << delta
    return first, bitmap, []