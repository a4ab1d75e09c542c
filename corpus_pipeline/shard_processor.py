"""
Shard processor: one raw WET shard -> one Intermediate Output Set per language.

Output layout under ``output_dir``::

    <shard_id>/
        _SHARD.json                   shard summary
        <lang>/
            part_00000.jsonl.zst      documents, in record order
            part_00001.jsonl.zst
            _COMPLETE.json            completion marker (parts, counts, digests)

Everything is first written under ``.partial/<shard_id>/`` and renamed into
place once all parts and markers are on disk, so a shard directory that
exists is always complete. Processing the same shard twice produces
byte-identical files.
"""

import hashlib
import json
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional

from common.config import config
from common.errors import ShardError
from common.logging.logger import get_logger
from corpus_pipeline.annotators import DocumentAnnotator, long_line_ratio_ok, trim_short_edges
from corpus_pipeline.codec import compress, dumps_jsonl, extension_for, fsync_dir, write_durable
from corpus_pipeline.documents import (
    Document,
    Line,
    Location,
    group_runs,
    merge_runs,
    run_confidence,
    split_lines,
)
from corpus_pipeline.line_classifier import LineClassifier
from corpus_pipeline.quality_filter import QualityFilter
from corpus_pipeline.wet_reader import WetRecord, WetShardReader

logger = get_logger("shard_processor")

PARTIAL_DIR = ".partial"
SHARD_MARKER = "_SHARD.json"
COMPLETE_MARKER = "_COMPLETE.json"
REJECT_NOISY_TINY = "noisy_tiny"
# Rejection bucket for records dropped before any line was classified
UNCLASSIFIED = "unclassified"


def shard_output_dir(output_dir: Path, shard_id: str) -> Path:
    return Path(output_dir) / shard_id


def language_output_dir(output_dir: Path, shard_id: str, lang: str) -> Path:
    return Path(output_dir) / shard_id / lang


def remove_shard_output(output_dir: Path, shard_id: str) -> bool:
    """Deletes a shard's intermediate outputs (complete or partial)."""
    removed = False
    for path in (shard_output_dir(output_dir, shard_id), Path(output_dir) / PARTIAL_DIR / shard_id):
        if path.exists():
            shutil.rmtree(path)
            removed = True
    return removed


@dataclass
class ShardResult:
    """What one shard produced."""
    shard_id: str
    documents: Dict[str, int] = field(default_factory=dict)
    bytes: Dict[str, int] = field(default_factory=dict)
    rejected: Dict[str, Dict[str, int]] = field(default_factory=dict)
    records: int = 0
    malformed: int = 0
    elapsed_seconds: float = 0.0

    @property
    def total_documents(self) -> int:
        return sum(self.documents.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'shard_id': self.shard_id,
            'documents': dict(sorted(self.documents.items())),
            'bytes': dict(sorted(self.bytes.items())),
            'rejected': {lang: dict(sorted(reasons.items())) for lang, reasons in sorted(self.rejected.items())},
            'records': self.records,
            'malformed': self.malformed,
        }


class _LanguageBuffers:
    """Per-language document buffers of one shard, flushed as numbered parts."""

    def __init__(self, work_dir: Path, codec: str, level: int):
        self.work_dir = work_dir
        self.codec = codec
        self.level = level
        self.extension = extension_for(codec)

        self._buffers: Dict[str, List[Dict[str, Any]]] = {}
        self._buffered_bytes = 0
        self._parts: Dict[str, List[Dict[str, Any]]] = {}

    def append(self, doc: Document):
        self._buffers.setdefault(doc.lang, []).append(doc.to_dict())
        self._buffered_bytes += doc.byte_length

    def should_flush(self, lang: str, max_bytes: int, max_documents: int) -> bool:
        if max_bytes and self._buffered_bytes >= max_bytes:
            return True
        return bool(max_documents) and len(self._buffers.get(lang, ())) >= max_documents

    def flush(self):
        for lang in sorted(self._buffers):
            records = self._buffers[lang]
            if not records:
                continue
            lang_dir = self.work_dir / lang
            lang_dir.mkdir(parents=True, exist_ok=True)

            parts = self._parts.setdefault(lang, [])
            name = f"part_{len(parts):05d}{self.extension}"
            payload = compress(dumps_jsonl(records), self.codec, self.level)
            write_durable(lang_dir / name, payload)

            parts.append({
                'name': name,
                'documents': len(records),
                'bytes': sum(r['metadata']['byte_length'] for r in records),
                'sha256': hashlib.sha256(payload).hexdigest(),
            })
            logger.debug(f"Flushed {len(records)} '{lang}' documents to {lang_dir / name}")

        self._buffers = {}
        self._buffered_bytes = 0

    def write_markers(self, shard_id: str):
        for lang, parts in sorted(self._parts.items()):
            marker = {
                'shard_id': shard_id,
                'language': lang,
                'codec': self.codec,
                'documents': sum(p['documents'] for p in parts),
                'bytes': sum(p['bytes'] for p in parts),
                'parts': parts,
            }
            write_durable(
                self.work_dir / lang / COMPLETE_MARKER,
                json.dumps(marker, indent=2, sort_keys=True).encode("utf-8"),
            )


class ShardProcessor:
    """
    Turns one shard into per-language intermediate outputs.

    The classifier and quality filter are shared, read-only handles; a
    processor instance itself belongs to a single worker.
    """

    def __init__(
        self,
        classifier: LineClassifier,
        quality_filter: QualityFilter,
        output_dir: str,
        annotator: Optional[DocumentAnnotator] = None,
        split_size_mb: Optional[float] = None,
        split_max_documents: Optional[int] = None,
        codec: Optional[str] = None,
        compression_level: Optional[int] = None,
        min_line_chars: Optional[int] = None,
        trim_edges: Optional[bool] = None,
        edge_min_chars: Optional[int] = None,
        long_line_ratio: Optional[float] = None,
        fragmentation_threshold: Optional[int] = None,
        annotate: Optional[bool] = None,
        drop_noisy_tiny: Optional[bool] = None,
    ):
        if classifier is None:
            raise ValueError("classifier is required")
        if quality_filter is None:
            raise ValueError("quality_filter is required")
        if output_dir is None:
            raise ValueError("output_dir is required")

        self.classifier = classifier
        self.quality_filter = quality_filter
        self.output_dir = Path(output_dir)

        split_size_mb = split_size_mb if split_size_mb is not None else config.get("shard.split_size_mb")
        self.split_bytes = int(split_size_mb * 1024 * 1024)
        self.split_max_documents = (
            split_max_documents if split_max_documents is not None
            else config.get("shard.split_max_documents")
        )
        self.codec = codec or config.get("shard.codec")
        self.compression_level = compression_level or config.get("shard.compression_level")
        extension_for(self.codec)

        self.min_line_chars = min_line_chars if min_line_chars is not None else config.get("lines.min_chars")
        self.trim_edges = trim_edges if trim_edges is not None else config.get("lines.trim_short_edges")
        self.edge_min_chars = edge_min_chars if edge_min_chars is not None else config.get("lines.edge_min_chars")
        self.long_line_ratio = (
            long_line_ratio if long_line_ratio is not None else config.get("lines.long_line_ratio")
        )
        self.fragmentation_threshold = (
            fragmentation_threshold if fragmentation_threshold is not None
            else config.get("merge.fragmentation_threshold")
        )
        self.annotate = annotate if annotate is not None else config.get("annotations.enabled")
        self.drop_noisy_tiny = (
            drop_noisy_tiny if drop_noisy_tiny is not None else config.get("annotations.drop_noisy_tiny")
        )
        self.annotator = annotator or DocumentAnnotator()

        self._stats = {
            'shards': 0,
            'records': 0,
            'records_blocklisted': 0,
            'records_no_lines': 0,
            'records_short_lines': 0,
            'documents': 0,
        }

    def process(self, shard_id: str, stream: BinaryIO) -> ShardResult:
        """
        Processes one shard stream end to end.

        Raises:
            ShardError: the shard cannot be read, or output cannot be written
        """
        if shard_id is None:
            raise ValueError("shard_id is required")
        if stream is None:
            raise ValueError("stream is required")

        start = time.time()
        work_dir = self.output_dir / PARTIAL_DIR / shard_id
        if work_dir.exists():
            shutil.rmtree(work_dir)
        work_dir.mkdir(parents=True)

        result = ShardResult(shard_id=shard_id)
        buffers = _LanguageBuffers(work_dir, self.codec, self.compression_level)
        reader = WetShardReader(stream, shard_id)

        try:
            for record in reader:
                result.records += 1
                for doc in self._process_record(shard_id, record, result):
                    buffers.append(doc)
                    result.documents[doc.lang] = result.documents.get(doc.lang, 0) + 1
                    result.bytes[doc.lang] = result.bytes.get(doc.lang, 0) + doc.byte_length
                    if buffers.should_flush(doc.lang, self.split_bytes, self.split_max_documents):
                        buffers.flush()

            buffers.flush()
            buffers.write_markers(shard_id)

            read_stats = reader.get_stats()
            result.malformed = (
                read_stats['malformed'] + read_stats['undecodable'] + read_stats['truncated']
            )
            write_durable(
                work_dir / SHARD_MARKER,
                json.dumps(result.to_dict(), indent=2, sort_keys=True).encode("utf-8"),
            )
            self._publish(shard_id, work_dir)
        except ShardError:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise
        except OSError as e:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise ShardError(shard_id, f"output error: {e}") from e
        except Exception as e:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise ShardError(shard_id, f"processing error: {e}") from e

        result.elapsed_seconds = time.time() - start
        self._stats['shards'] += 1
        self._stats['documents'] += result.total_documents
        logger.info(
            f"Shard {shard_id}: {result.records} records -> {result.total_documents} documents "
            f"in {len(result.documents)} languages ({result.malformed} malformed) "
            f"in {result.elapsed_seconds:.1f}s"
        )
        return result

    def _publish(self, shard_id: str, work_dir: Path):
        """Atomically swaps the finished work dir into its final location."""
        final_dir = shard_output_dir(self.output_dir, shard_id)
        if final_dir.exists():
            shutil.rmtree(final_dir)
        work_dir.rename(final_dir)
        fsync_dir(self.output_dir)

    def _process_record(self, shard_id: str, record: WetRecord, result: ShardResult) -> List[Document]:
        self._stats['records'] += 1

        # Blocklisted URLs never reach the classifier
        blocked = self.quality_filter.check_domain(record.url)
        if blocked is not None:
            self._stats['records_blocklisted'] += 1
            self._count_reject(result, UNCLASSIFIED, blocked.reason_kind)
            return []

        raw_lines = split_lines(record.body, self.min_line_chars)
        if self.trim_edges:
            raw_lines = trim_short_edges(raw_lines, self.edge_min_chars)
        if not raw_lines:
            self._stats['records_no_lines'] += 1
            return []
        if self.long_line_ratio and not long_line_ratio_ok(raw_lines, self.edge_min_chars, self.long_line_ratio):
            self._stats['records_short_lines'] += 1
            return []

        lines = [Line(index, text, self.classifier.classify(text)) for index, text in raw_lines]
        runs = merge_runs(group_runs(lines), self.fragmentation_threshold)

        documents = []
        for run in runs:
            if run.lang is None:
                continue

            doc = Document(
                content="\n".join(line.text for line in run.lines),
                url=record.url,
                lang=run.lang,
                confidence=run_confidence(run),
                line_identifications=[line.label.to_dict() for line in run.lines],
                location=Location(
                    shard_id=shard_id,
                    record_id=record.record_id,
                    loc_in_shard=record.index,
                    line_start=run.lines[0].index,
                    line_end=run.lines[-1].index,
                ),
                warc_headers=record.headers,
            )

            decision = self.quality_filter.evaluate(doc, record.url)
            if not decision.accepted:
                self._count_reject(result, doc.lang, decision.reason_kind)
                continue
            doc.quality_score = decision.score

            if self.annotate:
                annotations = self.annotator.annotate(doc)
                if self.drop_noisy_tiny and DocumentAnnotator.is_noisy_tiny(annotations):
                    self._count_reject(result, doc.lang, REJECT_NOISY_TINY)
                    continue

            documents.append(doc)
        return documents

    @staticmethod
    def _count_reject(result: ShardResult, lang: str, reason: str):
        reasons = result.rejected.setdefault(lang, {})
        reasons[reason] = reasons.get(reason, 0) + 1

    def get_stats(self) -> Dict[str, int]:
        return self._stats.copy()
