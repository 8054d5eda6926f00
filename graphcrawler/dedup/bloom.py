"""Bloom filter used as the probabilistic pre-check in front of the dedup store.

The bit array is a ``bytearray``; bit positions come from Kirsch-Mitzenmacher
double hashing over the two 64-bit halves of ``mmh3.hash64``. Bits are only
ever set, except by an explicit ``clear``.
"""

from __future__ import annotations

import math
import struct

import mmh3

from graphcrawler.middleware.error_handler import ConfigurationError

# size (bits), hash count, items added
_HEADER = struct.Struct(">QIQ")
_MAGIC = b"GCBF"


def optimal_parameters(expected_elements: int, false_positive_rate: float) -> tuple[int, int]:
    """Bit-array size and hash count for *expected_elements* at *false_positive_rate*.

    size = ceil(-n * ln(p) / ln(2)^2), hashes = max(1, round(size / n * ln(2)))
    """
    if expected_elements < 1:
        raise ConfigurationError("expected_elements must be >= 1", expected_elements=expected_elements)
    if not 0.0 < false_positive_rate < 1.0:
        raise ConfigurationError(
            "false_positive_rate must be between 0 and 1 (exclusive)",
            false_positive_rate=false_positive_rate,
        )
    size = math.ceil(-expected_elements * math.log(false_positive_rate) / (math.log(2) ** 2))
    size = max(size, 1)
    hash_count = max(1, round(size / expected_elements * math.log(2)))
    return size, hash_count


class BloomFilter:
    """Fixed-size Bloom filter over string keys."""

    def __init__(self, size: int, hash_count: int) -> None:
        if size < 1 or hash_count < 1:
            raise ConfigurationError("Bloom filter needs size >= 1 and hash_count >= 1")
        self.size = size
        self.hash_count = hash_count
        self.items_added = 0
        self._bits = bytearray((size + 7) // 8)

    @classmethod
    def for_capacity(cls, expected_elements: int, false_positive_rate: float) -> "BloomFilter":
        return cls(*optimal_parameters(expected_elements, false_positive_rate))

    def _positions(self, key: str) -> list[int]:
        h1, h2 = mmh3.hash64(key.encode("utf-8"), signed=False)
        return [(h1 + i * h2) % self.size for i in range(self.hash_count)]

    def add(self, key: str) -> None:
        for pos in self._positions(key):
            self._bits[pos >> 3] |= 1 << (pos & 7)
        self.items_added += 1

    def __contains__(self, key: str) -> bool:
        return all(self._bits[pos >> 3] & (1 << (pos & 7)) for pos in self._positions(key))

    def compatible_with(self, other: "BloomFilter") -> bool:
        return self.size == other.size and self.hash_count == other.hash_count

    def merge(self, other: "BloomFilter") -> None:
        """Bitwise OR *other* into this filter."""
        if not self.compatible_with(other):
            raise ConfigurationError(
                "Cannot merge Bloom filters with different parameters",
                size=(self.size, other.size),
                hash_count=(self.hash_count, other.hash_count),
            )
        merged = int.from_bytes(self._bits, "big") | int.from_bytes(other._bits, "big")
        self._bits = bytearray(merged.to_bytes(len(self._bits), "big"))
        self.items_added = max(self.items_added, other.items_added)

    def clear(self) -> None:
        self._bits = bytearray(len(self._bits))
        self.items_added = 0

    @property
    def bits_set(self) -> int:
        return int.from_bytes(self._bits, "big").bit_count()

    @property
    def fill_ratio(self) -> float:
        return self.bits_set / self.size

    def estimated_false_positive_rate(self) -> float:
        return self.fill_ratio**self.hash_count

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        return _MAGIC + _HEADER.pack(self.size, self.hash_count, self.items_added) + bytes(self._bits)

    @classmethod
    def from_bytes(cls, blob: bytes) -> "BloomFilter":
        head = len(_MAGIC) + _HEADER.size
        if len(blob) < head or not blob.startswith(_MAGIC):
            raise ValueError("Not a serialized Bloom filter")
        size, hash_count, items_added = _HEADER.unpack(blob[len(_MAGIC):head])
        bits = blob[head:]
        if size < 1 or hash_count < 1 or len(bits) != (size + 7) // 8:
            raise ValueError("Corrupt Bloom filter payload")
        bloom = cls(size, hash_count)
        bloom._bits = bytearray(bits)
        bloom.items_added = items_added
        return bloom
