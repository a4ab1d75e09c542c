"""
Cross-shard duplicate detection for corpus assembly.

Strategies:
1. Exact - digest of the normalized body; first occurrence wins
2. SimHash (optional) - 64-bit locality-sensitive fingerprint over word
   3-grams, looked up through a banded index so near-duplicates within a
   Hamming distance are found without pairwise comparison
"""

import hashlib
import re
import struct
import unicodedata
from typing import Dict, List, Optional, Set

import numpy as np

from common.logging.logger import get_logger

logger = get_logger("deduplication")

_WHITESPACE = re.compile(r"\s+")
_WORD = re.compile(r"\w+")


def normalize_body(text: str) -> str:
    """NFC-normalizes, collapses whitespace inside lines and drops blank lines."""
    if text is None:
        raise ValueError("text is required")
    text = unicodedata.normalize("NFC", text)
    lines = (_WHITESPACE.sub(" ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def content_digest(text: str) -> bytes:
    """16-byte digest of the normalized body."""
    return hashlib.blake2b(normalize_body(text).encode("utf-8"), digest_size=16).digest()


class ExactDeduplicator:
    """Remembers body digests; reports whether a body was seen before."""

    def __init__(self):
        self._seen: Set[bytes] = set()
        self._stats = {'checked': 0, 'duplicates': 0}

    def is_duplicate(self, text: str) -> bool:
        """Checks and registers in one step."""
        digest = content_digest(text)
        self._stats['checked'] += 1
        if digest in self._seen:
            self._stats['duplicates'] += 1
            return True
        self._seen.add(digest)
        return False

    def __len__(self) -> int:
        return len(self._seen)

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, 'unique': len(self._seen)}


class SimHash:
    """
    SimHash fingerprint for near-duplicate text detection.

    Similar documents map to fingerprints with a small Hamming distance.
    """

    def __init__(self, num_bits: int = 64):
        if num_bits is None:
            raise ValueError("num_bits is required")
        if num_bits > 64:
            raise ValueError("num_bits must be <= 64")
        self.num_bits = num_bits
        self._shifts = np.arange(num_bits, dtype=np.uint64)

    @staticmethod
    def _tokenize(text: str) -> List[str]:
        """Word 3-grams, plus single words so short texts still hash."""
        words = _WORD.findall(text.lower())
        grams = [" ".join(words[i:i + 3]) for i in range(len(words) - 2)]
        grams.extend(words)
        return grams

    @staticmethod
    def _hash_token(token: str) -> int:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        return struct.unpack("<Q", digest)[0]

    def compute(self, text: str) -> int:
        if text is None:
            raise ValueError("text is required")

        tokens = self._tokenize(text)
        if not tokens:
            return 0

        hashes = np.array([self._hash_token(t) for t in tokens], dtype=np.uint64)
        bits = (hashes[:, None] >> self._shifts) & np.uint64(1)
        votes = bits.sum(axis=0, dtype=np.int64) * 2 - len(tokens)

        fingerprint = 0
        for i in np.nonzero(votes > 0)[0]:
            fingerprint |= 1 << int(i)
        return fingerprint

    @staticmethod
    def hamming_distance(hash1: int, hash2: int) -> int:
        return bin(hash1 ^ hash2).count("1")


class SimHashIndex:
    """
    Banded index over SimHash fingerprints.

    Fingerprints are cut into threshold + 1 bands: two fingerprints within
    `threshold` bits of each other agree on at least one whole band, so
    only fingerprints sharing a band are compared.
    """

    def __init__(self, threshold: int = 3, num_bits: int = 64):
        if threshold is None:
            raise ValueError("threshold is required")
        if threshold < 0 or threshold >= num_bits:
            raise ValueError("threshold must be in [0, num_bits)")

        self.threshold = threshold
        self.num_bits = num_bits
        self.num_bands = threshold + 1
        self._band_bits = num_bits // self.num_bands
        self._bands: List[Dict[int, List[int]]] = [dict() for _ in range(self.num_bands)]
        self._count = 0

    def _band_keys(self, fingerprint: int) -> List[int]:
        keys = []
        for band in range(self.num_bands):
            start = band * self._band_bits
            # Last band takes the leftover bits
            width = self.num_bits - start if band == self.num_bands - 1 else self._band_bits
            keys.append((fingerprint >> start) & ((1 << width) - 1))
        return keys

    def find(self, fingerprint: int) -> Optional[int]:
        """Returns a stored fingerprint within threshold, if any."""
        for band, key in enumerate(self._band_keys(fingerprint)):
            for candidate in self._bands[band].get(key, ()):
                if SimHash.hamming_distance(candidate, fingerprint) <= self.threshold:
                    return candidate
        return None

    def add(self, fingerprint: int):
        for band, key in enumerate(self._band_keys(fingerprint)):
            self._bands[band].setdefault(key, []).append(fingerprint)
        self._count += 1

    def __len__(self) -> int:
        return self._count


class NearDuplicateDetector:
    """SimHash + banded index: check-and-register like ExactDeduplicator."""

    def __init__(self, threshold: int = 3):
        self.simhash = SimHash()
        self.index = SimHashIndex(threshold=threshold)
        self._stats = {'checked': 0, 'near_duplicates': 0}

    def is_duplicate(self, text: str) -> bool:
        fingerprint = self.simhash.compute(normalize_body(text))
        self._stats['checked'] += 1
        if self.index.find(fingerprint) is not None:
            self._stats['near_duplicates'] += 1
            return True
        self.index.add(fingerprint)
        return False

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, 'indexed': len(self.index)}
