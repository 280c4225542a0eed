"""Remapping of RTP sequence numbers and picture ids around dropped packets.

When packets are dropped before forwarding, later packets are renumbered
so that the receiver sees a contiguous sequence.  A bounded history of
mappings is kept so that retransmissions and reordered packets can still
be mapped forwards and backwards.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

__all__ = ["MAX_ENTRIES", "PacketMap", "compare"]

MAX_ENTRIES = 128

_U16 = 0xFFFF
# Jumps larger than this reset the mapping.
_WINDOW = 8 * 1024


def compare(s1: int, s2: int) -> int:
    """Compare two sequence numbers modulo 2**16; return -1, 0 or 1."""
    s1 &= _U16
    s2 &= _U16
    if s1 == s2:
        return 0
    if (s2 - s1) & 0x8000:
        return 1
    return -1


@dataclass
class _Entry:
    first: int
    count: int
    delta: int
    pid_delta: int


class PacketMap:
    """A thread-safe map from source seqnos to forwarded seqnos."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._next = 0
        self._next_pid = 0
        self._delta = 0
        self._pid_delta = 0
        self._last_entry = 0
        self._entries: List[_Entry] = []

    def map(self, seqno: int, pid: int) -> Optional[Tuple[int, int]]:
        """Map a seqno, recording the mapping if it is new.

        Returns the target seqno and the picture id delta to apply, or
        None if the seqno cannot be mapped.
        """
        seqno &= _U16
        pid &= _U16
        with self._lock:
            if self._delta == 0 and not self._entries:
                if (
                    compare(self._next, seqno) <= 0
                    or ((self._next - seqno) & _U16) > _WINDOW
                ):
                    self._next = (seqno + 1) & _U16
                    self._next_pid = pid
                return seqno, 0

            if compare(self._next, seqno) <= 0:
                if ((seqno - self._next) & _U16) > _WINDOW:
                    self._restart(seqno, pid)
                    return seqno, 0
                self._add_mapping(seqno, self._delta, self._pid_delta)
                self._next = (seqno + 1) & _U16
                self._next_pid = pid
                return (seqno + self._delta) & _U16, self._pid_delta

            if ((self._next - seqno) & _U16) > _WINDOW:
                self._restart(seqno, pid)
                return seqno, 0

            return self._direct(seqno)

    def _restart(self, seqno: int, pid: int) -> None:
        self._delta = 0
        self._pid_delta = 0
        self._last_entry = 0
        self._entries = []
        self._next = (seqno + 1) & _U16
        self._next_pid = pid

    def _add_mapping(self, seqno: int, delta: int, pid_delta: int) -> None:
        if not self._entries:
            return

        last = self._entries[self._last_entry]
        if delta == last.delta and pid_delta == last.pid_delta:
            last.count = (seqno - last.first + 1) & _U16
            return

        first = seqno
        d = (last.delta - delta) & _U16
        # Extend the interval over missing values, but keep the targets
        # of successive intervals from overlapping.
        if d < _WINDOW:
            candidate = (last.first + last.count + d) & _U16
            if compare(candidate, seqno) < 0:
                first = candidate
        entry = _Entry(
            first=first,
            count=(seqno - first + 1) & _U16,
            delta=delta,
            pid_delta=pid_delta,
        )

        if len(self._entries) < MAX_ENTRIES:
            self._entries.append(entry)
            self._last_entry = len(self._entries) - 1
            return

        slot = (self._last_entry + 1) % MAX_ENTRIES
        self._entries[slot] = entry
        self._last_entry = slot

    def _recent_entries(self) -> Iterator[_Entry]:
        """Yield entries from the most recent backwards, wrapping around."""
        size = len(self._entries)
        for step in range(size):
            yield self._entries[(self._last_entry - step) % size]

    def _direct(self, seqno: int) -> Optional[Tuple[int, int]]:
        for entry in self._recent_entries():
            if compare(seqno, entry.first) >= 0:
                end = (entry.first + entry.count) & _U16
                if compare(seqno, end) < 0:
                    return (seqno + entry.delta) & _U16, entry.pid_delta
                return None
        return None

    def direct(self, seqno: int) -> Optional[Tuple[int, int]]:
        """Look up an already recorded mapping without adding one."""
        with self._lock:
            return self._direct(seqno & _U16)

    def reverse(self, seqno: int) -> Optional[Tuple[int, int]]:
        """Map a target seqno back to the original one.

        Returns the original seqno and the picture id delta to undo, or
        None if the seqno cannot be mapped.
        """
        seqno &= _U16
        with self._lock:
            if not self._entries:
                if self._delta == 0:
                    return seqno, 0
                return None

            for entry in self._recent_entries():
                first = (entry.first + entry.delta) & _U16
                if compare(seqno, first) >= 0:
                    end = (first + entry.count) & _U16
                    if compare(seqno, end) < 0:
                        return (seqno - entry.delta) & _U16, entry.pid_delta
                    return None
            return None

    def drop(self, seqno: int, pid: int) -> bool:
        """Record a dropped packet; return True if it is safe to drop."""
        seqno &= _U16
        pid &= _U16
        with self._lock:
            if seqno != self._next:
                return False

            if not self._entries:
                self._entries = [
                    _Entry(
                        first=(seqno - _WINDOW) & _U16,
                        count=_WINDOW,
                        delta=0,
                        pid_delta=0,
                    )
                ]
                self._last_entry = 0

            self._pid_delta = (self._pid_delta + pid - self._next_pid) & _U16
            self._next_pid = pid
            self._delta = (self._delta - 1) & _U16
            self._next = (seqno + 1) & _U16
            return True