"""
Quality and domain filter for document candidates.

evaluate() applies, in order:
1. Domain check against the category blocklist (reject on any match)
2. Minimum document size
3. Document language confidence
4. Optional per-language statistical score, rejected outside the
   configured range; languages without a model are accepted unscored
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Set

from common.config import config
from common.logging.logger import get_logger
from corpus_pipeline.blocklist import DomainBlocklist
from corpus_pipeline.documents import Document
from corpus_pipeline.oracles import QualityScorer

logger = get_logger("quality_filter")

REASON_BLOCKLISTED = "blocklisted"
REASON_TOO_SHORT = "too_short"
REASON_LOW_CONFIDENCE = "low_confidence"
REASON_QUALITY = "quality_out_of_range"


class Verdict(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


@dataclass(frozen=True)
class FilterDecision:
    """Accept (with an optional score) or Reject (with a reason)."""
    verdict: Verdict
    score: Optional[float] = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls, score: Optional[float] = None) -> "FilterDecision":
        return cls(Verdict.ACCEPT, score=score)

    @classmethod
    def reject(cls, reason: str) -> "FilterDecision":
        return cls(Verdict.REJECT, reason=reason)

    @property
    def accepted(self) -> bool:
        return self.verdict is Verdict.ACCEPT

    @property
    def reason_kind(self) -> Optional[str]:
        """Reason without its detail suffix (``blocklisted:adult`` -> ``blocklisted``)."""
        return self.reason.split(":", 1)[0] if self.reason else None


class QualityFilter:
    """
    Shared, read-only filter. The blocklist and scorers are loaded before
    construction; only the counters are mutated, under a lock.
    """

    def __init__(
        self,
        blocklist: DomainBlocklist,
        scorers: Optional[Dict[str, QualityScorer]] = None,
        quality_enabled: Optional[bool] = None,
        min_score: Optional[float] = None,
        max_score: Optional[float] = None,
        min_document_chars: Optional[int] = None,
        doc_threshold: Optional[float] = None,
    ):
        if blocklist is None:
            raise ValueError("blocklist is required")

        self.blocklist = blocklist
        self.scorers = dict(scorers or {})
        self.quality_enabled = (
            quality_enabled if quality_enabled is not None else config.get("quality.enabled")
        )
        self.min_score = min_score if min_score is not None else config.get("quality.min_score")
        self.max_score = max_score if max_score is not None else config.get("quality.max_score")
        self.min_document_chars = (
            min_document_chars if min_document_chars is not None
            else config.get("filter.min_document_chars")
        )
        self.doc_threshold = (
            doc_threshold if doc_threshold is not None else config.get("merge.doc_threshold")
        )

        self._lock = threading.Lock()
        self._missing_models: Set[str] = set()
        self._stats = {
            'evaluated': 0,
            'accepted': 0,
            'scored': 0,
            REASON_BLOCKLISTED: 0,
            REASON_TOO_SHORT: 0,
            REASON_LOW_CONFIDENCE: 0,
            REASON_QUALITY: 0,
        }

        if self.quality_enabled and not self.scorers:
            logger.warning("Quality check enabled but no quality models are loaded")

    def check_domain(self, url: str) -> Optional[FilterDecision]:
        """Returns a Reject decision when the URL is blocklisted, else None."""
        category = self.blocklist.match(url)
        if category is None:
            return None
        return FilterDecision.reject(f"{REASON_BLOCKLISTED}:{category}")

    def evaluate(self, doc: Document, source_url: str) -> FilterDecision:
        """
        Decides whether a document candidate is kept.

        Args:
            doc: document candidate (language and confidence already set)
            source_url: URL of the record the document came from

        Returns:
            FilterDecision
        """
        if doc is None:
            raise ValueError("doc is required")

        decision = self._decide(doc, source_url)
        with self._lock:
            self._stats['evaluated'] += 1
            if decision.accepted:
                self._stats['accepted'] += 1
                if decision.score is not None:
                    self._stats['scored'] += 1
            else:
                self._stats[decision.reason_kind] += 1
        return decision

    def _decide(self, doc: Document, source_url: str) -> FilterDecision:
        blocked = self.check_domain(source_url)
        if blocked is not None:
            return blocked

        if len(doc.content) <= self.min_document_chars:
            return FilterDecision.reject(REASON_TOO_SHORT)

        if doc.confidence < self.doc_threshold:
            return FilterDecision.reject(REASON_LOW_CONFIDENCE)

        if not self.quality_enabled:
            return FilterDecision.accept()

        scorer = self.scorers.get(doc.lang)
        if scorer is None:
            self._warn_missing_model(doc.lang)
            return FilterDecision.accept()

        score = scorer.score(doc.content)
        if not self.score_in_range(score):
            return FilterDecision.reject(f"{REASON_QUALITY}:{score}")
        return FilterDecision.accept(score)

    def score_in_range(self, score: float) -> bool:
        if self.min_score is not None and score < self.min_score:
            return False
        if self.max_score is not None and score > self.max_score:
            return False
        return True

    def _warn_missing_model(self, lang: str):
        with self._lock:
            if lang in self._missing_models:
                return
            self._missing_models.add(lang)
        logger.warning(f"No quality model for '{lang}', accepting its documents unscored")

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return self._stats.copy()
