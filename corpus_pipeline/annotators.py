"""
Record-level text filters and document annotators.

Record level (before classification):
    trim_short_edges   - drops short lines before the first / after the last long line
    long_line_ratio_ok - keeps records whose text is mostly in long lines

Document level (after merging):
    DocumentAnnotator  - tags documents as tiny, noisy, header, footer or
                         short_sentences; noisy+tiny documents are dropped
"""

import unicodedata
from typing import Dict, List, Optional, Sequence, Tuple

from common.config import config
from corpus_pipeline.documents import Document


def trim_short_edges(lines: Sequence[Tuple[int, str]], min_chars: int) -> List[Tuple[int, str]]:
    """
    Removes leading and trailing lines shorter than min_chars.

    Short lines between two long ones are kept. Returns an empty list when
    no line reaches min_chars.
    """
    start = 0
    while start < len(lines) and len(lines[start][1]) < min_chars:
        start += 1
    end = len(lines)
    while end > start and len(lines[end - 1][1]) < min_chars:
        end -= 1
    return list(lines[start:end])


def long_line_ratio_ok(lines: Sequence[Tuple[int, str]], min_chars: int, ratio: float) -> bool:
    """True when at least `ratio` of the characters sit in lines of min_chars or more."""
    long_chars = 0
    total = 0
    for _, text in lines:
        count = len(text)
        total += count
        if count >= min_chars:
            long_chars += count
    if total == 0:
        return False
    return long_chars >= ratio * total


def _is_letter(char: str) -> bool:
    return unicodedata.category(char).startswith("L")


class DocumentAnnotator:
    """Adds quality annotations to documents, in a fixed order."""

    TINY = "tiny"
    NOISY = "noisy"
    HEADER = "header"
    FOOTER = "footer"
    SHORT_SENTENCES = "short_sentences"

    def __init__(
        self,
        tiny_min_lines: Optional[int] = None,
        noisy_threshold: Optional[float] = None,
        header_ratio: Optional[float] = None,
        header_short_ratio: Optional[float] = None,
        short_line_chars: Optional[int] = None,
    ):
        self.tiny_min_lines = (
            tiny_min_lines if tiny_min_lines is not None else config.get("annotations.tiny_min_lines")
        )
        self.noisy_threshold = (
            noisy_threshold if noisy_threshold is not None else config.get("annotations.noisy_threshold")
        )
        self.header_ratio = header_ratio if header_ratio is not None else config.get("annotations.header_ratio")
        self.header_short_ratio = (
            header_short_ratio if header_short_ratio is not None
            else config.get("annotations.header_short_ratio")
        )
        self.short_line_chars = (
            short_line_chars if short_line_chars is not None else config.get("annotations.short_line_chars")
        )

        self._stats: Dict[str, int] = {
            self.TINY: 0,
            self.NOISY: 0,
            self.HEADER: 0,
            self.FOOTER: 0,
            self.SHORT_SENTENCES: 0,
        }

    def annotate(self, doc: Document) -> List[str]:
        """Sets and returns doc.annotations."""
        lines = doc.lines
        annotations = []

        if len(lines) < self.tiny_min_lines:
            annotations.append(self.TINY)

        if self._is_noisy(doc.content):
            annotations.append(self.NOISY)

        header, footer = self._header_footer(lines)
        if header:
            annotations.append(self.HEADER)
        if footer:
            annotations.append(self.FOOTER)

        short = sum(1 for line in lines if len(line) < self.short_line_chars)
        if short * 2 > len(lines):
            annotations.append(self.SHORT_SENTENCES)

        for annotation in annotations:
            self._stats[annotation] += 1
        doc.annotations = annotations
        return annotations

    def _is_noisy(self, content: str) -> bool:
        """More than noisy_threshold of the characters are not letters."""
        if not content:
            return False
        limit = int(len(content) * self.noisy_threshold)
        non_letters = 0
        letters = 0
        for char in content:
            if _is_letter(char):
                letters += 1
                if letters > limit:
                    return False
            else:
                non_letters += 1
                if non_letters > limit:
                    return True
        return False

    def _header_footer(self, lines: List[str]) -> Tuple[bool, bool]:
        window = int(len(lines) * self.header_ratio)
        threshold = int(window * self.header_short_ratio)
        if window == 0:
            return False, False

        head_short = sum(1 for line in lines[:window] if len(line) < self.short_line_chars)
        tail_short = sum(1 for line in lines[-window:] if len(line) < self.short_line_chars)
        return head_short > threshold, tail_short > threshold

    @classmethod
    def is_noisy_tiny(cls, annotations: Sequence[str]) -> bool:
        return cls.NOISY in annotations and cls.TINY in annotations

    def get_stats(self) -> Dict[str, int]:
        return self._stats.copy()
