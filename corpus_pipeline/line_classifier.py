"""
Per-line language identification.

Wraps a line oracle and turns its ranked predictions into an explicit
outcome: a line is either Identified (language + confidence) or Unknown.
Lines below the minimum length and predictions below the confidence
threshold are Unknown; so is any line the oracle chokes on.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from common.config import config
from common.logging.logger import get_logger
from corpus_pipeline.oracles import LineOracle

logger = get_logger("line_classifier")


class LabelKind(str, Enum):
    IDENTIFIED = "identified"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class LineLabel:
    """Outcome of classifying one line."""
    kind: LabelKind
    lang: Optional[str] = None
    confidence: float = 0.0

    @classmethod
    def identified(cls, lang: str, confidence: float) -> "LineLabel":
        return cls(LabelKind.IDENTIFIED, lang, confidence)

    @property
    def is_known(self) -> bool:
        return self.kind is LabelKind.IDENTIFIED

    def to_dict(self) -> Optional[Dict]:
        if not self.is_known:
            return None
        return {'label': self.lang, 'prob': round(self.confidence, 4)}


UNKNOWN = LineLabel(LabelKind.UNKNOWN)


class LineClassifier:
    """
    Classifies single trimmed lines.

    The oracle is shared read-only across worker threads; only the
    counters are guarded.
    """

    def __init__(
        self,
        oracle: LineOracle,
        threshold: Optional[float] = None,
        min_chars: Optional[int] = None,
    ):
        if oracle is None:
            raise ValueError("oracle is required")

        self.oracle = oracle
        self.threshold = threshold if threshold is not None else config.get("classifier.threshold")
        self.min_chars = min_chars if min_chars is not None else config.get("classifier.min_line_chars")

        self._lock = threading.Lock()
        self._stats = {
            'classified': 0,
            'identified': 0,
            'too_short': 0,
            'below_threshold': 0,
            'oracle_errors': 0,
        }

    def classify(self, line: str) -> LineLabel:
        """
        Returns the line's language label.

        Args:
            line: non-empty text, already trimmed

        Returns:
            LineLabel (identified) or UNKNOWN
        """
        if line is None:
            raise ValueError("line is required")

        # fastText aborts on NUL characters
        text = line.replace("\x00", "")
        if len(text) < self.min_chars:
            self._count('too_short')
            return UNKNOWN

        try:
            ranked = self.oracle.predict(text, k=1)
        except Exception as e:
            logger.debug(f"Identification failed for line {text[:40]!r}: {e}")
            self._count('oracle_errors')
            return UNKNOWN

        if not ranked:
            self._count('below_threshold')
            return UNKNOWN

        lang, prob = ranked[0]
        if prob < self.threshold:
            self._count('below_threshold')
            return UNKNOWN

        self._count('identified')
        return LineLabel.identified(lang, float(prob))

    def _count(self, key: str):
        with self._lock:
            self._stats['classified'] += 1
            self._stats[key] += 1

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return self._stats.copy()
