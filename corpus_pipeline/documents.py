"""
Documents and line-run merging.

A record body is split into lines, each line is labelled by the
LineClassifier, and adjacent lines with the same label form runs. Short
runs sandwiched between two runs of the same language are absorbed into
that language, then every labelled run becomes a document candidate.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from corpus_pipeline.line_classifier import LineLabel


@dataclass
class Line:
    """A non-empty trimmed line and its position in the record body."""
    index: int
    text: str
    label: LineLabel

    @property
    def byte_length(self) -> int:
        return len(self.text.encode("utf-8"))


@dataclass
class LineRun:
    """Adjacent lines that share a language (None for unknown)."""
    lang: Optional[str]
    lines: List[Line]

    @property
    def byte_length(self) -> int:
        return sum(line.byte_length for line in self.lines)

    @property
    def absorbed(self) -> int:
        """Number of lines not individually identified as this run's language."""
        return sum(1 for line in self.lines if line.label.lang != self.lang)


@dataclass
class Location:
    """Where a document came from; line bounds are inclusive body line indices."""
    shard_id: str
    record_id: str
    loc_in_shard: int
    line_start: int
    line_end: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'shard_id': self.shard_id,
            'record_id': self.record_id,
            'loc_in_shard': self.loc_in_shard,
            'line_start': self.line_start,
            'line_end': self.line_end,
        }


@dataclass
class Document:
    """Language-tagged output unit built from one run of one record."""
    content: str
    url: str
    lang: str
    confidence: float
    line_identifications: List[Optional[Dict[str, Any]]]
    location: Location
    warc_headers: Dict[str, str] = field(default_factory=dict)
    quality_score: Optional[float] = None
    annotations: List[str] = field(default_factory=list)

    @property
    def byte_length(self) -> int:
        return len(self.content.encode("utf-8"))

    @property
    def lines(self) -> List[str]:
        return self.content.split("\n")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'content': self.content,
            'warc_headers': self.warc_headers,
            'metadata': {
                'url': self.url,
                'identification': {'label': self.lang, 'prob': round(self.confidence, 4)},
                'sentence_identifications': self.line_identifications,
                'annotation': list(self.annotations) or None,
                'quality_score': self.quality_score,
                'byte_length': self.byte_length,
            },
            'location': self.location.to_dict(),
        }


def split_lines(body: str, min_chars: int) -> List[tuple]:
    """
    Splits a record body into (index, text) pairs.

    Lines are trimmed; blank lines and lines shorter than min_chars are
    dropped, but indices keep counting so they point into the raw body.
    """
    lines = []
    for index, raw in enumerate(body.splitlines()):
        text = raw.strip()
        if text and len(text) >= min_chars:
            lines.append((index, text))
    return lines


def group_runs(lines: List[Line]) -> List[LineRun]:
    """Groups adjacent lines with the same label language."""
    runs: List[LineRun] = []
    for line in lines:
        lang = line.label.lang if line.label.is_known else None
        if runs and runs[-1].lang == lang:
            runs[-1].lines.append(line)
        else:
            runs.append(LineRun(lang, [line]))
    return runs


def merge_runs(runs: List[LineRun], fragmentation_threshold: int) -> List[LineRun]:
    """
    Absorbs short minority runs into the surrounding language.

    Runs between two runs of language L are absorbed into L when none of
    them is L and their combined size is below fragmentation_threshold
    bytes. Merging repeats from the grown run, so a long document with
    several short interruptions collapses into one run.
    """
    runs = list(runs)
    i = 0
    while i < len(runs):
        lang = runs[i].lang
        if lang is None:
            i += 1
            continue

        gap = 0
        j = i + 1
        while j < len(runs) and runs[j].lang != lang:
            gap += runs[j].byte_length
            if gap >= fragmentation_threshold:
                break
            j += 1

        if j < len(runs) and runs[j].lang == lang and gap < fragmentation_threshold:
            merged_lines = [line for run in runs[i:j + 1] for line in run.lines]
            runs[i:j + 1] = [LineRun(lang, merged_lines)]
            continue
        i += 1
    return runs


def run_confidence(run: LineRun) -> float:
    """Share of the run's bytes identified as its language, weighted by probability."""
    total = run.byte_length
    if total == 0 or run.lang is None:
        return 0.0
    weighted = sum(
        line.byte_length * line.label.confidence
        for line in run.lines
        if line.label.lang == run.lang
    )
    return weighted / total
