"""
Bloom filter over normalized usernames.

Bits live in 64-bit words guarded by striped locks, so concurrent
registrations can set bits without serializing on a single mutex.
A filter never clears individual bits; resizing means building a new one.
"""

import hashlib
import math
import threading
from array import array
from typing import List

from username_index.utils import normalize_username

WORD_BITS = 64

class BitField:
    """Fixed-size bit array with thread-safe set and lock-free test."""

    def __init__(self, size: int, stripes: int = 64):
        if size <= 0:
            raise ValueError("BitField size must be positive")
        self.size = size
        self.word_count = (size + WORD_BITS - 1) // WORD_BITS
        self._words = array('Q', bytes(8 * self.word_count))
        self._locks = [threading.Lock() for _ in range(max(1, min(stripes, self.word_count)))]

    def __len__(self) -> int:
        return self.size

    def _locate(self, index: int):
        return divmod(index % self.size, WORD_BITS)

    def set(self, index: int):
        word, offset = self._locate(index)
        # Read-modify-write of a whole word; the stripe keeps neighbours intact
        with self._locks[word % len(self._locks)]:
            self._words[word] |= (1 << offset)

    def test(self, index: int) -> bool:
        word, offset = self._locate(index)
        return bool((self._words[word] >> offset) & 1)

    def clear_all(self):
        for lock in self._locks:
            lock.acquire()
        try:
            for i in range(self.word_count):
                self._words[i] = 0
        finally:
            for lock in reversed(self._locks):
                lock.release()

    def count_set(self) -> int:
        return sum(bin(word).count("1") for word in self._words)

class HashScheme:
    """
    Double hashing: k positions from two salted 64-bit BLAKE2b digests.
    position_i = (h1 + i * h2) mod size
    """
    SALT_1 = b"username-h1"
    SALT_2 = b"username-h2"

    def __init__(self, hash_count: int, size: int):
        self.hash_count = hash_count
        self.size = size

    def _digest(self, data: bytes, salt: bytes) -> int:
        return int.from_bytes(hashlib.blake2b(data, digest_size=8, salt=salt).digest(), byteorder='little')

    def positions(self, username: str) -> List[int]:
        data = normalize_username(username).encode('utf-8')
        h1 = self._digest(data, self.SALT_1)
        h2 = self._digest(data, self.SALT_2)
        if h2 % self.size == 0:
            h2 += 1
        return [(h1 + i * h2) % self.size for i in range(self.hash_count)]

class BloomFilter:
    """
    Bloom filter sized from capacity and target error rate.
    might_contain() == False is a guarantee of absence.
    """

    def __init__(self, capacity: int = 100000, error_rate: float = 0.01, lock_stripes: int = 64):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if not 0 < error_rate < 1:
            raise ValueError("error_rate must be between 0 and 1")

        self.capacity = capacity
        self.error_rate = error_rate

        self.bit_size = self._optimal_bit_size(capacity, error_rate)
        self.hash_count = self._optimal_hash_count(self.bit_size, capacity)

        self.bits = BitField(self.bit_size, stripes=lock_stripes)
        self.hashes = HashScheme(self.hash_count, self.bit_size)

        self._count_lock = threading.Lock()
        self.item_count = 0

    @staticmethod
    def _optimal_bit_size(n: int, p: float) -> int:
        m = -(n * math.log(p)) / (math.log(2) ** 2)
        return int(math.ceil(m))

    @staticmethod
    def _optimal_hash_count(m: int, n: int) -> int:
        k = (m / n) * math.log(2)
        return max(1, int(round(k)))

    @property
    def is_empty(self) -> bool:
        return self.item_count == 0

    def add(self, username: str):
        for index in self.hashes.positions(username):
            self.bits.set(index)
        with self._count_lock:
            self.item_count += 1

    def might_contain(self, username: str) -> bool:
        return all(self.bits.test(index) for index in self.hashes.positions(username))

    def __contains__(self, username: str) -> bool:
        return self.might_contain(username)

    def estimated_false_positive_rate(self) -> float:
        k, n, m = self.hash_count, self.item_count, self.bit_size
        return (1 - math.exp(-k * n / m)) ** k

    def saturation(self) -> float:
        return self.item_count / self.capacity

    def fill_ratio(self) -> float:
        return self.bits.count_set() / self.bit_size
