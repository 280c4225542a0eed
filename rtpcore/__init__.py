"""Building blocks for forwarding RTP media: caching, remapping, timing, feedback and statistics."""

__version__ = "0.1.0"
__all__ = [
    "feedback",
    "packetcache",
    "packetmap",
    "reader",
    "rtptime",
    "stats",
    "trackstate",
    "writer",
]