"""Per-track state of a downstream track: bitrate limits, receiver
feedback, round-trip time, clock offsets and scalable-layer selection.

Times are in jiffies (see ``rtpcore.rtptime``) and bitrates in bits per
second.  Sending rates passed in are in bytes per second, as produced by
a rate estimator.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from rtpcore.rtptime import JIFFIES_PER_SEC

__all__ = [
    "Bitrate",
    "ReceiverStats",
    "LayerInfo",
    "DownTrackState",
    "sadd",
    "RECEIVER_REPORT_TIMEOUT",
    "DEFAULT_MAX_BITRATE",
    "MIN_LOSS_RATE",
    "INIT_LOSS_RATE",
    "MAX_LOSS_RATE",
]

_U64 = (1 << 64) - 1
_U32 = 0xFFFFFFFF

RECEIVER_REPORT_TIMEOUT = 30 * JIFFIES_PER_SEC

# Bitrate assumed when the receiver has given no recent feedback.
DEFAULT_MAX_BITRATE = 512 * 1024

MIN_LOSS_RATE = 9600
INIT_LOSS_RATE = 512 * 1000
MAX_LOSS_RATE = 1 << 30

# Reports referring to a sender report older than this are ignored.
_MAX_SR_AGE = 8 * JIFFIES_PER_SEC
# Jiffies per unit of the report's delay field (1/65536 s).
_JIFFIES_PER_DELAY_UNIT = JIFFIES_PER_SEC // 0x10000


def sadd(x: int, y: int) -> int:
    """Add two unsigned 64-bit values, saturating at the maximum."""
    return min(x + y, _U64)


class Bitrate:
    """A bitrate together with the time it was last updated."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._bitrate = 0
        self._jiffies = 0

    def set(self, bitrate: int, now: int) -> None:
        """Record a bitrate measured or announced at time ``now``."""
        with self._lock:
            self._bitrate = bitrate
            self._jiffies = now

    def get(self, now: int) -> Optional[int]:
        """Return the bitrate, or None if it is not recent."""
        with self._lock:
            ts = self._jiffies
            if now < ts or now - ts > RECEIVER_REPORT_TIMEOUT:
                return None
            return self._bitrate


class ReceiverStats:
    """Loss and jitter last reported by the receiver."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._loss = 0
        self._jitter = 0
        self._jiffies = 0

    def set(self, loss: int, jitter: int, now: int) -> None:
        """Record the fraction lost (out of 256) and jitter of a report."""
        with self._lock:
            self._loss = loss & 0xFF
            self._jitter = jitter & _U32
            self._jiffies = now

    def get(self, now: int) -> Tuple[int, int]:
        """Return (loss, jitter), or (0, 0) if the report is not recent."""
        with self._lock:
            ts = self._jiffies
            if now < ts or now > ts + RECEIVER_REPORT_TIMEOUT:
                return 0, 0
            return self._loss, self._jitter


@dataclass(frozen=True)
class LayerInfo:
    """Current, wanted and highest seen spatial and temporal layers."""

    sid: int = 0
    wanted_sid: int = 0
    max_sid: int = 0
    tid: int = 0
    wanted_tid: int = 0
    max_tid: int = 0
    # stick to spatial layer 0
    limit_sid: bool = False

    def pack(self) -> int:
        """Pack into a 32-bit word, four bits per layer number."""
        return (
            (self.sid & 0xF)
            | (self.wanted_sid & 0xF) << 4
            | (self.max_sid & 0xF) << 8
            | (1 << 12 if self.limit_sid else 0)
            | (self.tid & 0xF) << 16
            | (self.wanted_tid & 0xF) << 20
            | (self.max_tid & 0xF) << 24
        )

    @classmethod
    def unpack(cls, value: int) -> "LayerInfo":
        """Build a LayerInfo from a word produced by ``pack``."""
        return cls(
            sid=value & 0xF,
            wanted_sid=(value >> 4) & 0xF,
            max_sid=(value >> 8) & 0xF,
            limit_sid=((value >> 12) & 1) != 0,
            tid=(value >> 16) & 0xF,
            wanted_tid=(value >> 20) & 0xF,
            max_tid=(value >> 24) & 0xF,
        )


class DownTrackState:
    """Feedback-driven state of one downstream track."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.max_bitrate = Bitrate()
        self.max_remb_bitrate = Bitrate()
        self.stats = ReceiverStats()
        self.rtt = 0
        # latest sending rate in bytes per second, used by handle_report
        self.sending_rate = 0
        self._layer = 0
        self._time_offset = (0, 0)
        self._sr_time = (0, 0)

    @property
    def layer(self) -> LayerInfo:
        """The current layer selection."""
        return LayerInfo.unpack(self._layer)

    @layer.setter
    def layer(self, info: LayerInfo) -> None:
        self._layer = info.pack()

    def set_time_offset(self, ntp: int, rtp: int) -> None:
        """Record the NTP and RTP times of the sender's last report."""
        self._time_offset = (ntp & _U64, rtp & _U32)

    def get_time_offset(self) -> Tuple[int, int]:
        """Return the (ntp, rtp) pair recorded by ``set_time_offset``."""
        return self._time_offset

    def set_sr_time(self, tm: int, ntp: int) -> None:
        """Record when our last sender report was sent and its NTP time."""
        self._sr_time = (tm, ntp & _U64)

    def get_sr_time(self) -> Tuple[int, int]:
        """Return the (jiffies, ntp) pair of our last sender report."""
        return self._sr_time

    def get_max_bitrate(self, now: int) -> Tuple[int, int, int]:
        """Return the allowed bitrate and the current spatial and
        temporal layers."""
        layer = self.layer
        rate = self.max_bitrate.get(now)
        if rate is None:
            rate = DEFAULT_MAX_BITRATE
        remb = self.max_remb_bitrate.get(now)
        if remb and remb < rate:
            rate = remb
        return rate, layer.sid, layer.tid

    def adjust_layer(self, rate: int, now: int) -> None:
        """Move the wanted layer by one step given the sending rate in
        bytes per second; temporal layers are preferred, spatial layers
        are a last resort."""
        maximum, _, _ = self.get_max_bitrate(now)
        bits = rate * 8
        with self._lock:
            layer = self.layer
            if bits < maximum * 7 // 8:
                if layer.limit_sid and layer.wanted_sid != 0:
                    layer = replace(layer, wanted_sid=0)
                elif not layer.limit_sid and layer.sid < layer.max_sid:
                    layer = replace(layer, wanted_sid=layer.sid + 1)
                elif layer.tid < layer.max_tid:
                    layer = replace(layer, wanted_tid=layer.tid + 1)
                else:
                    return
            elif bits > maximum * 3 // 2:
                if layer.tid > 0:
                    layer = replace(layer, wanted_tid=layer.tid - 1)
                elif layer.sid > 0:
                    wanted = 0 if layer.limit_sid else layer.sid - 1
                    layer = replace(layer, wanted_sid=wanted)
                else:
                    return
            else:
                return
            self.layer = layer

    def update_rate(self, loss: int, actual_rate: int, now: int) -> None:
        """Update the loss-based bitrate limit from a reported fraction
        lost (out of 256) and the sending rate in bytes per second."""
        rate = self.max_bitrate.get(now)
        if rate is None or rate < MIN_LOSS_RATE or rate > MAX_LOSS_RATE:
            # no recent feedback
            rate = INIT_LOSS_RATE
        if loss < 5:
            # only probe upwards if we are actually near the limit
            if 8 * actual_rate >= rate * 3 // 4:
                rate = min(rate * 269 // 256, MAX_LOSS_RATE)
        elif loss > 25:
            rate = max(rate * (512 - loss) // 512, MIN_LOSS_RATE)
        # always set, to refresh the timestamp
        self.max_bitrate.set(rate, now)

    def handle_report(
        self,
        fraction_lost: int,
        jitter: int,
        last_sender_report: int,
        delay: int,
        now: int,
    ) -> None:
        """Process a reception report about this track, updating the
        receiver statistics, the bitrate limit and the round-trip time."""
        self.stats.set(fraction_lost, jitter, now)
        self.update_rate(fraction_lost, self.sending_rate, now)

        if last_sender_report == 0:
            return
        sr_time, sr_ntp = self.get_sr_time()
        if now < sr_time or now - sr_time > _MAX_SR_AGE:
            return
        if (last_sender_report & _U32) != (sr_ntp >> 16) & _U32:
            return
        delay_jiffies = delay * _JIFFIES_PER_DELAY_UNIT
        elapsed = now - sr_time
        if delay_jiffies > elapsed:
            return
        rtt = elapsed - delay_jiffies
        with self._lock:
            old = self.rtt
            self.rtt = (3 * old + rtt) // 4 if old > 0 else rtt