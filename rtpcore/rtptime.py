"""Conversions between RTP clock units, NTP timestamps and wall-clock time.

Durations are integers counting nanoseconds, and points in time are integers
counting nanoseconds since the Unix epoch, as returned by ``time.time_ns()``.
"""

from __future__ import annotations

import time

NANOSECOND = 1
MICROSECOND = 1_000
MILLISECOND = 1_000_000
SECOND = 1_000_000_000

# The LCM of 48000, 96000 and 65536.
JIFFIES_PER_SEC = 24_576_000

_UINT64_MASK = (1 << 64) - 1
_UINT32_MASK = (1 << 32) - 1

# Offset of 1900-01-01T00:00:00Z (the NTP origin) from the Unix epoch.
NTP_EPOCH_NS = -2_208_988_800 * SECOND

# Arbitrary origin for local clocks, fixed when the module is loaded.
_EPOCH_MONOTONIC_NS = time.monotonic_ns()
_EPOCH_WALL_NS = time.time_ns()


def from_duration(d: int, hz: int) -> int:
    """Convert a duration in nanoseconds into units of 1/hz, truncating."""
    if d < 0:
        return -from_duration(-d, hz)
    return (d * hz) // SECOND


def to_duration(tm: int, hz: int) -> int:
    """Convert a count of units of 1/hz into a duration in nanoseconds."""
    if tm < 0:
        return -to_duration(-tm, hz)
    return (tm * SECOND) // hz


def now(hz: int) -> int:
    """Return the current time in units of 1/hz from an arbitrary origin."""
    elapsed = time.monotonic_ns() - _EPOCH_MONOTONIC_NS
    return from_duration(elapsed, hz) & _UINT64_MASK


def microseconds() -> int:
    """Return the current time in microseconds from an arbitrary origin."""
    return now(1_000_000)


def jiffies() -> int:
    """Return the current time in jiffies from an arbitrary origin."""
    return now(JIFFIES_PER_SEC)


def time_to_jiffies(tm: int) -> int:
    """Convert a wall-clock time (ns since the Unix epoch) into jiffies."""
    return from_duration(tm - _EPOCH_WALL_NS, JIFFIES_PER_SEC) & _UINT64_MASK


def ntp_to_time(ntp: int) -> int:
    """Convert a 64-bit NTP timestamp into ns since the Unix epoch."""
    sec = (ntp >> 32) & _UINT32_MASK
    frac = ntp & _UINT32_MASK
    return NTP_EPOCH_NS + sec * SECOND + ((frac * SECOND) >> 32)


def time_to_ntp(tm: int) -> int:
    """Convert a time in ns since the Unix epoch into a 64-bit NTP timestamp."""
    d = tm - NTP_EPOCH_NS
    sec = (d // SECOND) & _UINT32_MASK
    frac = (d % SECOND) & _UINT32_MASK
    return ((sec << 32) + (frac << 32) // SECOND) & _UINT64_MASK