"""Unit tests for the Bloom filter."""

from __future__ import annotations

import math

import pytest

from graphcrawler.dedup.bloom import BloomFilter, optimal_parameters
from graphcrawler.middleware.error_handler import ConfigurationError


class TestOptimalParameters:
    def test_one_million_at_one_percent(self) -> None:
        size, hashes = optimal_parameters(1_000_000, 0.01)
        assert size == math.ceil(-1_000_000 * math.log(0.01) / math.log(2) ** 2)
        assert hashes == 7

    @pytest.mark.parametrize(("n", "p"), [(0, 0.01), (10, 0.0), (10, 1.0), (10, -0.5)])
    def test_invalid_inputs(self, n: int, p: float) -> None:
        with pytest.raises(ConfigurationError):
            optimal_parameters(n, p)


class TestBloomFilter:
    def test_no_false_negatives(self) -> None:
        bloom = BloomFilter.for_capacity(1000, 0.01)
        keys = [f"did:plc:{i:06d}" for i in range(1000)]
        for key in keys:
            bloom.add(key)
        assert all(key in bloom for key in keys)
        assert bloom.items_added == 1000

    def test_false_positive_rate_near_target(self) -> None:
        bloom = BloomFilter.for_capacity(5000, 0.01)
        for i in range(5000):
            bloom.add(f"member-{i}")
        false_positives = sum(1 for i in range(20000) if f"other-{i}" in bloom)
        assert false_positives / 20000 < 0.03

    def test_empty_filter_contains_nothing(self) -> None:
        bloom = BloomFilter(64, 3)
        assert "anything" not in bloom
        assert bloom.fill_ratio == 0.0
        assert bloom.estimated_false_positive_rate() == 0.0

    def test_merge_is_union(self) -> None:
        a = BloomFilter(4096, 4)
        b = BloomFilter(4096, 4)
        a.add("left")
        b.add("right")
        a.merge(b)
        assert "left" in a and "right" in a

    def test_merge_rejects_incompatible(self) -> None:
        with pytest.raises(ConfigurationError):
            BloomFilter(64, 3).merge(BloomFilter(128, 3))

    def test_clear(self) -> None:
        bloom = BloomFilter(256, 2)
        bloom.add("x")
        bloom.clear()
        assert "x" not in bloom
        assert bloom.bits_set == 0

    def test_serialization_round_trip(self) -> None:
        bloom = BloomFilter.for_capacity(100, 0.05)
        bloom.add("a")
        bloom.add("b")
        restored = BloomFilter.from_bytes(bloom.to_bytes())
        assert restored.compatible_with(bloom)
        assert restored.items_added == 2
        assert "a" in restored and "b" in restored

    @pytest.mark.parametrize("blob", [b"", b"XXXX" + b"\x00" * 40, b"GCBF\x00"])
    def test_from_bytes_rejects_garbage(self, blob: bytes) -> None:
        with pytest.raises(ValueError):
            BloomFilter.from_bytes(blob)

    def test_from_bytes_rejects_truncated_bits(self) -> None:
        blob = BloomFilter(1024, 3).to_bytes()
        with pytest.raises(ValueError):
            BloomFilter.from_bytes(blob[:-1])
