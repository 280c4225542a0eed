import random

import pytest

from rtpcore.packetcache import (
    BUF_SIZE,
    CacheStats,
    PacketCache,
    compare,
    to_bitmap,
)

VALUE = 0xCDD58F1E035379C0


def random_buf(rng):
    length = rng.randrange(1, BUF_SIZE)
    return bytes(rng.getrandbits(8) for _ in range(length))


def nack_range(first, bitmap):
    yield first
    for i in range(16):
        if bitmap & (1 << i):
            yield (first + i + 1) & 0xFFFF


def store_value(cache, value):
    first = None
    for i in range(64):
        if value & (1 << i):
            first, _ = cache.store(42 + i, 0, False, False, b"\x00")
    return first


def test_cache():
    rng = random.Random(1)
    buf1 = random_buf(rng)
    buf2 = random_buf(rng)
    cache = PacketCache(16)

    assert cache.last() is None

    _, i1 = cache.store(13, 42, False, False, buf1)
    _, i2 = cache.store(17, 42, False, False, buf2)

    assert cache.last() == 17

    assert cache.get(13) == buf1
    assert len(cache.get(13)) == len(buf1)
    assert cache.get_at(13, i1) == buf1
    assert cache.get(17) == buf2
    assert cache.get_at(17, i2) == buf2

    assert cache.get(42) is None
    assert cache.get_at(17, i1) is None
    assert cache.get_at(42, i2) is None


def test_cache_overflow():
    cache = PacketCache(16)
    for i in range(32):
        cache.store(i, 0, False, False, bytes([i]))
    for i in range(32):
        got = cache.get(i)
        if i < 16:
            assert got is None
        else:
            assert got == bytes([i])


def test_cache_grow():
    cache = PacketCache(16)
    for i in range(24):
        cache.store(i, 0, False, False, bytes([i]))
    cache.resize(32)
    assert cache.capacity() == 32
    for i in range(32):
        if i < 8:
            expected = i + 16
        elif i >= 24:
            expected = i - 16
        else:
            expected = None
        assert cache.seqno_at(i) == expected


def test_cache_shrink():
    cache = PacketCache(16)
    for i in range(24):
        cache.store(i, 0, False, False, bytes([i]))
    cache.resize(12)
    assert cache.capacity() == 12
    for i in range(12):
        expected = i + 16 if i < 8 else i + 4
        assert cache.seqno_at(i) == expected


def test_cache_grow_cond():
    cache = PacketCache(16)
    assert cache.capacity() == 16

    assert cache.resize_cond(17) is False
    assert cache.capacity() == 16

    assert cache.resize_cond(15) is False
    assert cache.capacity() == 16

    assert cache.resize_cond(32) is True
    assert cache.capacity() == 32

    assert cache.resize_cond(16) is True
    assert cache.capacity() == 16


def test_bitmap():
    cache = PacketCache(16)
    first = store_value(cache, VALUE)
    value = VALUE >> ((first - 42) & 0xFFFF)
    assert value & 0xFFFFFFFF == cache.bitmap_value()


def test_bitmap_wrap():
    cache = PacketCache(16)
    cache.store(0x7000, 0, False, False, b"\x00")
    cache.store(0xA000, 0, False, False, b"\x00")
    first = store_value(cache, VALUE)
    value = VALUE >> ((first - 42) & 0xFFFF)
    assert value & 0xFFFFFFFF == cache.bitmap_value()


def test_bitmap_get():
    cache = PacketCache(16)
    store_value(cache, VALUE)
    value = VALUE
    pos = 42
    while cache.bitmap_value() != 0:
        result = cache.bitmap_get(42 + 65)
        assert result is not None
        first, bitmap = result
        assert pos <= first < pos + 64
        value >>= first - pos
        pos = first
        assert value & 1 == 0
        value >>= 1
        pos += 1
        while bitmap:
            assert (bitmap & 1) != (value & 1)
            bitmap >>= 1
            value >>= 1
            pos += 1
    assert value == 0


def test_bitmap_packet():
    cache = PacketCache(16)
    store_value(cache, VALUE)
    result = cache.bitmap_get(42 + 65)
    assert result is not None
    first, bitmap = result
    nacked = list(nack_range(first, bitmap))
    assert nacked
    for s in nacked:
        if 42 <= s < 42 + 64:
            assert (VALUE >> (s - 42)) & 1 == 0


def test_to_bitmap():
    f, b, r = to_bitmap([18, 19, 32, 38])
    assert f == 18
    assert b == 1 | 1 << (32 - 18 - 1)
    assert r == [38]

    f2, b2, r2 = to_bitmap(r)
    assert (f2, b2, r2) == (38, 0, [])


def test_to_bitmap_nack():
    seqnos = [18, 19, 32, 38]
    pairs = []
    remain = seqnos
    while remain:
        f, b, remain = to_bitmap(remain)
        pairs.append((f, b))
    recovered = [s for f, b in pairs for s in nack_range(f, b)]
    assert recovered == seqnos


def test_to_bitmap_empty():
    with pytest.raises(ValueError):
        to_bitmap([])


def test_cache_stats_full():
    cache = PacketCache(16)
    for i in range(32):
        cache.store(i, 0, False, False, bytes([i]))
    assert cache.get_stats(False) == CacheStats(32, 32, 32, 32, 31)


def test_cache_stats_drop():
    cache = PacketCache(16)
    for i in range(32):
        if i not in (8, 10):
            cache.store(i, 0, False, False, bytes([i]))
    assert cache.get_stats(False) == CacheStats(30, 30, 32, 32, 31)


def test_cache_stats_unordered():
    cache = PacketCache(16)
    for i in range(32):
        if i not in (8, 10):
            cache.store(i, 0, False, False, bytes([i]))
    cache.store(8, 0, False, False, bytes([8]))
    cache.store(10, 0, False, False, bytes([10]))
    assert cache.get_stats(False) == CacheStats(32, 32, 32, 32, 31)


def test_cache_stats_nack():
    cache = PacketCache(16)
    for i in range(32):
        if i not in (8, 10):
            cache.store(i, 0, False, False, bytes([i]))
    cache.expect(2)
    cache.store(8, 0, False, False, bytes([8]))
    cache.store(10, 0, False, False, bytes([10]))
    assert cache.get_stats(False) == CacheStats(32, 32, 34, 34, 31)


def test_cache_stats_reset():
    cache = PacketCache(16)
    for i in range(10):
        cache.store(i, 0, False, False, bytes([i]))
    first = cache.get_stats(True)
    assert first == CacheStats(10, 10, 10, 10, 9)
    cache.store(10, 0, False, False, b"\x0a")
    assert cache.get_stats(False) == CacheStats(1, 11, 1, 11, 10)


def test_cache_stats_wraparound_cycle():
    cache = PacketCache(16)
    cache.store(0xFFFE, 0, False, False, b"\x01")
    cache.store(0xFFFF, 0, False, False, b"\x01")
    cache.store(0, 0, False, False, b"\x01")
    assert cache.get_stats(False).eseqno == 0x10000


def test_keyframe():
    cache = PacketCache(16)
    assert cache.keyframe() is None
    cache.store(5, 0, True, False, b"\x01")
    cache.store(6, 0, False, False, b"\x01")
    assert cache.keyframe() == 5


def test_compare():
    assert compare(1, 1) == 0
    assert compare(1, 2) == -1
    assert compare(2, 1) == 1
    assert compare(0xFFFF, 0) == -1
    assert compare(0, 0xFFFF) == 1


@pytest.mark.parametrize("capacity", [0, 0x10000])
def test_bad_capacity(capacity):
    with pytest.raises(ValueError):
        PacketCache(capacity)


def test_seqno_at_out_of_range():
    cache = PacketCache(4)
    with pytest.raises(IndexError):
        cache.seqno_at(4)


def test_oversized_packet_truncated():
    cache = PacketCache(4)
    cache.store(1, 0, False, False, bytes(BUF_SIZE + 10))
    assert len(cache.get(1)) == BUF_SIZE