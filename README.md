# rtpcore

Building blocks for a selective forwarding unit that relays RTP media
between conference participants. Everything here is pure Python with no
runtime dependencies: you pass in packets, sequence numbers and report
fields, and get back cached packets, renumbered sequence numbers,
decisions and statistics.

## Modules

- `rtpcore.rtptime`: durations are integer nanoseconds. `from_duration`
  and `to_duration` convert between durations and units of 1/hz;
  `now`, `microseconds` and `jiffies` read a monotonic clock from an
  arbitrary origin; `time_to_jiffies` converts a wall-clock time
  (nanoseconds since the Unix epoch); `ntp_to_time` and `time_to_ntp`
  convert 64-bit NTP timestamps. `JIFFIES_PER_SEC` is 24576000.
- `rtpcore.packetcache`: `PacketCache`, a thread-safe ring of recently
  received packets that also keeps a loss bitmap (`bitmap_get`,
  `bitmap_value`), the last sequence number and keyframe (`last`,
  `keyframe`) and the receiver-report counters (`get_stats`, returning a
  `CacheStats`). Packets are read back with `get` or `get_at`, which
  return `bytes` or `None`. `resize` and `resize_cond` change the
  capacity. `to_bitmap` packs a prefix of a sorted list of sequence
  numbers into a NACK pair; `compare` orders sequence numbers modulo
  2^16.
- `rtpcore.packetmap`: `PacketMap`, which renumbers a stream after
  packets have been dropped (`drop`, `map`), looks up recorded mappings
  (`direct`) and maps retransmission requests back to the original
  numbers (`reverse`). Lookups return `(seqno, pid_delta)` or `None`.
- `rtpcore.trackstate`: per-receiver state: `Bitrate`, `ReceiverStats`,
  `LayerInfo` (packable into a 32-bit word) and `DownTrackState`, which
  adjusts the wanted spatial and temporal layers from the sending rate
  (`adjust_layer`), derives a loss-based bitrate limit (`update_rate`)
  and round-trip times from reception reports (`handle_report`).
  `sadd` is a saturating 64-bit addition.
- `rtpcore.feedback`: the numbers that go into receiver reports and
  bitrate estimates (`ReceptionReport`, `reception_report`, `remb_rate`,
  `max_up_bitrate`), NACK packing (`nack_pairs`) and cache sizing
  (`cache_size`, `min_packet_cache`).
- `rtpcore.reader`: decisions made while reading an incoming stream:
  when to NACK (`late_nack`, `nack_threshold`, `unnacked_count`), how
  long to wait for a congested writer (`write_delay`), when to ask for a
  keyframe (`KeyframeRequester`), and per-track statistics
  (`up_track_stats`, `down_track_stats`).
- `rtpcore.writer`: fanning a stream out to receivers: `FrameDropper`,
  `isqrt`, `writer_capacity`, `should_replay`, `keyframe_sequence`, and
  filtering of retransmission requests (`nack_cutoff`, `filter_nacks`).
- `rtpcore.stats`: `Track`, `Conn`, `ClientStats` and `GroupStats` with
  JSON-ready `to_dict` forms (durations as milliseconds), `Track.from_dict`,
  and `collect_groups`, which gathers statistics sorted by group name and
  client id.

## Example

```python
from rtpcore.packetcache import PacketCache, to_bitmap
from rtpcore.packetmap import PacketMap

cache = PacketCache(16)
first, index = cache.store(13, 42, False, False, b"\x80\x60payload")
assert cache.get(13) == b"\x80\x60payload"
assert cache.get_at(13, index) == b"\x80\x60payload"
assert cache.get(14) is None

stats = cache.get_stats(reset=True)
print(stats.received, stats.expected)

first, bitmap, remaining = to_bitmap([18, 19, 32, 38])   # (18, 0x1001, [38])

packets = PacketMap()
packets.map(42, 1001)        # (42, 0)
packets.drop(43, 1002)       # True: 43 may be skipped
packets.map(44, 1003)        # (43, 1)
packets.reverse(43)          # (44, 1)
```

## What this package does not do

There is no network code: nothing here opens sockets, negotiates
WebRTC sessions, handles ICE, parses or serialises RTP and RTCP packets,
or runs a signalling or HTTP server. There are no group, client or
recording facilities and no command-line program. The package supplies
the state and decisions that such a server needs, and leaves sending and
receiving to the caller.

## Running the tests

```
pip install -e ".[test]"
pytest
```