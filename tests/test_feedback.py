from types import SimpleNamespace

import pytest

from rtpcore.feedback import (
    AUDIO_BITRATE,
    MAX_CACHE_SIZE,
    MAX_NACK_PAIRS,
    ReceptionReport,
    cache_size,
    max_up_bitrate,
    min_packet_cache,
    nack_pairs,
    reception_report,
    remb_rate,
)
from rtpcore.packetcache import CacheStats
from rtpcore.rtptime import JIFFIES_PER_SEC


def _expand(pairs):
    result = []
    for first, bitmap in pairs:
        result.append(first)
        result.extend(
            (first + i + 1) & 0xFFFF for i in range(16) if (bitmap >> i) & 1
        )
    return result


def _stats(received, expected, total_received=None, total_expected=None):
    return CacheStats(
        received=received,
        total_received=received if total_received is None else total_received,
        expected=expected,
        total_expected=expected if total_expected is None else total_expected,
        eseqno=31,
    )


def test_nack_pairs_round_trip():
    seqnos = [18, 19, 32, 38]
    assert _expand(nack_pairs(seqnos)) == seqnos


def test_nack_pairs_split():
    pairs = nack_pairs([18, 19, 32, 38])
    assert len(pairs) == 2
    assert pairs[1] == (38, 0)


def test_nack_pairs_empty():
    assert nack_pairs([]) == []


def test_nack_pairs_overflow():
    seqnos = [i * 17 for i in range(300)]
    pairs = nack_pairs(seqnos)
    assert len(pairs) == MAX_NACK_PAIRS
    assert _expand(pairs) == seqnos[:MAX_NACK_PAIRS]


def test_max_up_bitrate_no_downs():
    assert max_up_bitrate([], 200000) == 200000


def test_max_up_bitrate_single():
    assert max_up_bitrate([(500000, 0, 0)], 200000) == 500000


def test_max_up_bitrate_clamped_to_minimum():
    assert max_up_bitrate([(1000, 0, 0)], 200000) == 200000


def test_max_up_bitrate_prefers_slowest():
    downs = [(300000, 0, 0), (900000, 0, 0)]
    assert max_up_bitrate(downs, 200000) == 300000


def test_max_up_bitrate_temporal_bounds():
    downs = [(300000, 0, 2), (900000, 0, 0)]
    result = max_up_bitrate(downs, 200000)
    assert 300000 < result <= 900000


def test_max_up_bitrate_saturates():
    limit = (1 << 64) - 1
    assert max_up_bitrate([(limit, 1, 3)], 200000) == limit


def test_reception_report_no_loss():
    report = reception_report(7, _stats(32, 32), 5, 0, 0, 1000)
    assert report == ReceptionReport(
        ssrc=7,
        fraction_lost=0,
        total_lost=0,
        last_sequence_number=31,
        jitter=5,
        last_sender_report=0,
        delay=0,
    )


def test_reception_report_fraction_capped():
    report = reception_report(1, _stats(0, 256), 0, 0, 0, 0)
    assert report.fraction_lost == 255
    assert report.total_lost == 256


def test_reception_report_fraction_in_range():
    report = reception_report(1, _stats(30, 32), 0, 0, 0, 0)
    assert 0 < report.fraction_lost < 255
    assert report.total_lost == 2


def test_reception_report_delay_one_second():
    sr_time = 5 * JIFFIES_PER_SEC
    report = reception_report(
        1, _stats(1, 1), 0, sr_time, 0, sr_time + JIFFIES_PER_SEC
    )
    assert report.delay == 0x10000


def test_remb_rate_none_without_remb():
    track = SimpleNamespace(ssrc=1, remb=False, kind="video", label="", downs=[])
    assert remb_rate([track], 100000, 10**7, 200000) is None


def test_remb_rate_audio():
    track = SimpleNamespace(ssrc=9, remb=True, kind="audio", label="", downs=[])
    assert remb_rate([track], 100000, 10**7, 200000) == ([9], AUDIO_BITRATE)


def test_remb_rate_low_label():
    track = SimpleNamespace(ssrc=3, remb=True, kind="video", label="l", downs=[])
    assert remb_rate([track], 100000, 10**7, 200000) == ([3], 100000)


def test_remb_rate_video_uses_downs():
    track = SimpleNamespace(
        ssrc=4, remb=True, kind="video", label="h", downs=[(500000, 0, 0)]
    )
    assert remb_rate([track], 100000, 10**7, 200000) == ([4], 500000)


def test_remb_rate_capped():
    tracks = [
        SimpleNamespace(
            ssrc=i, remb=True, kind="video", label="", downs=[(10**9, 0, 0)]
        )
        for i in range(3)
    ]
    ssrcs, rate = remb_rate(tracks, 100000, 10**7, 200000)
    assert ssrcs == [0, 1, 2]
    assert rate == 10**7


@pytest.mark.parametrize("is_video,expected", [(True, 128), (False, 24)])
def test_min_packet_cache(is_video, expected):
    assert min_packet_cache(is_video) == expected


def test_cache_size_without_rtos():
    assert cache_size(1000, [], True) == min_packet_cache(True)
    assert cache_size(1000, [], False) == min_packet_cache(False)


def test_cache_size_capped():
    assert cache_size(10**6, [JIFFIES_PER_SEC * 10], True) == MAX_CACHE_SIZE


def test_cache_size_grows_with_rto():
    small = cache_size(500, [JIFFIES_PER_SEC // 10], False)
    large = cache_size(500, [JIFFIES_PER_SEC // 10, JIFFIES_PER_SEC // 4], False)
    assert min_packet_cache(False) <= small < large <= MAX_CACHE_SIZE