"""Tests for corpus_pipeline/deduplication.py: pure functions and data structures."""

import random

import pytest
from conftest import french_body

from corpus_pipeline.deduplication import (
    ExactDeduplicator,
    NearDuplicateDetector,
    SimHash,
    SimHashIndex,
    content_digest,
    normalize_body,
)


# ── Normalization ─────────────────────────────────────────────

class TestNormalizeBody:
    def test_collapses_whitespace_and_blank_lines(self):
        assert normalize_body("  a   b \n\n\t c\td  \n") == "a b\nc d"

    def test_unicode_nfc(self):
        assert normalize_body("cafe\u0301") == "caf\u00e9"

    def test_keeps_case(self):
        assert normalize_body("Paris") != normalize_body("paris")

    def test_none_raises(self):
        with pytest.raises(ValueError):
            normalize_body(None)


class TestContentDigest:
    def test_equal_after_normalization(self):
        assert content_digest("a  b\n\nc") == content_digest(" a b \nc ")

    def test_different_bodies(self):
        assert content_digest("a b") != content_digest("a c")

    def test_digest_size(self):
        assert len(content_digest("x")) == 16


# ── Exact ─────────────────────────────────────────────────────

class TestExactDeduplicator:
    def test_first_occurrence_wins(self):
        dedup = ExactDeduplicator()
        assert dedup.is_duplicate("same body") is False
        assert dedup.is_duplicate("same  body ") is True
        assert dedup.is_duplicate("other body") is False
        assert len(dedup) == 2

    def test_stats(self):
        dedup = ExactDeduplicator()
        for text in ["a", "a", "b", "a"]:
            dedup.is_duplicate(text)
        assert dedup.get_stats() == {"checked": 4, "duplicates": 2, "unique": 2}


# ── SimHash ───────────────────────────────────────────────────

def _random_text(seed: int, words: int = 3000) -> str:
    rng = random.Random(seed)
    lines = []
    for _ in range(words // 15):
        lines.append(" ".join(f"mot{rng.randrange(5000)}" for _ in range(15)))
    return "\n".join(lines)


def _one_word_changed(text: str) -> str:
    first = text.split(" ", 1)[0]
    return text.replace(first, "changed", 1)


class TestSimHash:
    def test_deterministic(self):
        sh = SimHash()
        assert sh.compute(french_body(5)) == sh.compute(french_body(5))

    def test_similar_texts_close(self):
        sh = SimHash()
        a = _random_text(1)
        b = _one_word_changed(a)
        assert SimHash.hamming_distance(sh.compute(a), sh.compute(b)) <= 3

    def test_different_texts_far(self):
        sh = SimHash()
        distance = SimHash.hamming_distance(sh.compute(_random_text(1)), sh.compute(_random_text(2)))
        assert distance > 10

    def test_empty_text(self):
        assert SimHash().compute("") == 0

    def test_rejects_wide_fingerprints(self):
        with pytest.raises(ValueError):
            SimHash(num_bits=128)

    def test_hamming_distance(self):
        assert SimHash.hamming_distance(0b1011, 0b0001) == 2


class TestSimHashIndex:
    def test_finds_within_threshold(self):
        index = SimHashIndex(threshold=3)
        index.add(0xFFFF_0000_FFFF_0000)
        assert index.find(0xFFFF_0000_FFFF_0007) == 0xFFFF_0000_FFFF_0000

    def test_misses_beyond_threshold(self):
        index = SimHashIndex(threshold=3)
        index.add(0)
        assert index.find(0b1111) is None

    def test_bit_flips_in_every_band(self):
        index = SimHashIndex(threshold=3)
        index.add(0)
        # one flipped bit in each of three different bands
        assert index.find((1 << 1) | (1 << 20) | (1 << 40)) == 0

    def test_len(self):
        index = SimHashIndex()
        index.add(1)
        index.add(2)
        assert len(index) == 2

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            SimHashIndex(threshold=64)


class TestNearDuplicateDetector:
    def test_flags_near_copy(self):
        detector = NearDuplicateDetector(threshold=3)
        a = _random_text(1)
        assert detector.is_duplicate(a) is False
        assert detector.is_duplicate(_one_word_changed(a)) is True
        assert detector.is_duplicate(_random_text(2)) is False
        assert detector.get_stats()["near_duplicates"] == 1
