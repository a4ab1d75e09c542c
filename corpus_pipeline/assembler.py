"""
Corpus assembler (rebuild): done shards' intermediate outputs -> one Final Corpus.

For a target language, every `done` shard is visited in shard-identifier
order and its parts are read in part order. Documents whose normalized body
was already emitted are dropped, so the first occurrence (earliest shard,
earliest record) wins. Optional post-filters act on stored metadata only;
nothing is re-classified.

Output layout under ``output_dir``::

    <lang>/
        <lang>_part_1.jsonl.zst       documents, at most assembler.part_size_mb each
        <lang>_part_2.jsonl.zst
        <lang>_manifest.json          counts, content digest, file checksums
        <lang>_sha384.txt             `sha384sum -c` compatible

The corpus is built in ``.<lang>.partial`` and renamed into place, so a
reader never sees a half-written corpus.
"""

import hashlib
import json
import os
import shutil
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import zstandard as zstd

from common.config import config
from common.errors import AssemblyError
from common.logging.logger import get_logger
from common.repositories import CheckpointRepository
from corpus_pipeline.codec import extension_for, fsync_dir, open_writer, read_jsonl, write_durable
from corpus_pipeline.deduplication import ExactDeduplicator, NearDuplicateDetector
from corpus_pipeline.shard_processor import COMPLETE_MARKER, language_output_dir
from corpus_pipeline.wet_reader import shard_sort_key

logger = get_logger("assembler")

_HASH_CHUNK = 1024 * 1024


@dataclass
class PostFilter:
    """Filters on stored values: quality score range and excluded annotations."""
    min_score: Optional[float] = None
    max_score: Optional[float] = None
    exclude_annotations: List[str] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.min_score is not None or self.max_score is not None or bool(self.exclude_annotations)

    def reason(self, record: Dict[str, Any]) -> Optional[str]:
        """Why the record is filtered out, or None to keep it.

        Documents without a stored score are kept by the score bounds.
        """
        metadata = record.get('metadata') or {}

        score = metadata.get('quality_score')
        if score is not None:
            if self.min_score is not None and score < self.min_score:
                return "score_below_min"
            if self.max_score is not None and score > self.max_score:
                return "score_above_max"

        annotations = metadata.get('annotation') or []
        for annotation in self.exclude_annotations:
            if annotation in annotations:
                return f"annotation:{annotation}"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'min_score': self.min_score,
            'max_score': self.max_score,
            'exclude_annotations': sorted(self.exclude_annotations),
        }


@dataclass
class AssemblyManifest:
    """Summary of one Final Corpus, written next to its parts."""
    language: str
    codec: str
    documents: int = 0
    bytes: int = 0
    duplicates: int = 0
    near_duplicates: int = 0
    filtered: Dict[str, int] = field(default_factory=dict)
    shards: List[str] = field(default_factory=list)
    shards_considered: int = 0
    digest: str = ""
    files: List[Dict[str, Any]] = field(default_factory=list)
    post_filter: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'language': self.language,
            'codec': self.codec,
            'documents': self.documents,
            'bytes': self.bytes,
            'duplicates': self.duplicates,
            'near_duplicates': self.near_duplicates,
            'filtered': dict(sorted(self.filtered.items())),
            'shards': self.shards,
            'shards_considered': self.shards_considered,
            'digest': self.digest,
            'files': self.files,
            'post_filter': self.post_filter,
        }


class _PartWriter:
    """Rolls the corpus over into numbered parts at a size limit (uncompressed bytes)."""

    def __init__(self, work_dir: Path, lang: str, codec: str, level: int, max_bytes: int):
        self.work_dir = work_dir
        self.lang = lang
        self.codec = codec
        self.level = level
        self.max_bytes = max_bytes
        self.extension = extension_for(codec)

        self.parts: List[Dict[str, Any]] = []
        self._stack: Optional[ExitStack] = None
        self._writer = None
        self._current: Optional[Dict[str, Any]] = None

    def write(self, line: bytes):
        if self._writer is None or (
            self.max_bytes and self._current['bytes'] and self._current['bytes'] + len(line) > self.max_bytes
        ):
            self._roll()
        self._writer.write(line)
        self._current['documents'] += 1
        self._current['bytes'] += len(line)

    def _roll(self):
        self._close_current()
        name = f"{self.lang}_part_{len(self.parts) + 1}{self.extension}"
        self._stack = ExitStack()
        self._writer = self._stack.enter_context(open_writer(self.work_dir / name, self.codec, self.level))
        self._current = {'name': name, 'documents': 0, 'bytes': 0}
        self.parts.append(self._current)

    def _close_current(self):
        if self._stack is not None:
            self._stack.close()
            self._stack = None
            self._writer = None

    def close(self):
        self._close_current()
        for part in self.parts:
            part['sha384'] = _file_sha384(self.work_dir / part['name'])

    def abort(self):
        if self._stack is not None:
            # The work dir is deleted right after
            try:
                self._stack.close()
            except OSError as e:
                logger.warning(f"Failed to close part writer: {e}")
            self._stack = None
            self._writer = None


def _file_sha384(path: Path) -> str:
    digest = hashlib.sha384()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


class CorpusAssembler:
    """
    Builds per-language Final Corpora from the checkpoint's done shards.

    Example:
        assembler = CorpusAssembler(checkpoint)
        manifest = assembler.assemble("fr", PostFilter(min_score=10.0))
    """

    def __init__(
        self,
        checkpoint: CheckpointRepository,
        intermediate_dir: Optional[str] = None,
        output_dir: Optional[str] = None,
        codec: Optional[str] = None,
        compression_level: Optional[int] = None,
        part_size_mb: Optional[float] = None,
        near_duplicates: Optional[bool] = None,
        simhash_threshold: Optional[int] = None,
        verify_parts: bool = True,
    ):
        if checkpoint is None:
            raise ValueError("checkpoint is required")

        self.checkpoint = checkpoint
        self.intermediate_dir = Path(intermediate_dir or config.get("paths.intermediate_dir"))
        self.output_dir = Path(output_dir or config.get("paths.corpus_dir"))
        self.codec = codec or config.get("assembler.codec")
        self.compression_level = compression_level or config.get("shard.compression_level")
        extension_for(self.codec)

        part_size_mb = part_size_mb if part_size_mb is not None else config.get("assembler.part_size_mb")
        self.part_bytes = int(part_size_mb * 1024 * 1024)
        self.near_duplicates = (
            near_duplicates if near_duplicates is not None else config.get("assembler.near_duplicates")
        )
        self.simhash_threshold = (
            simhash_threshold if simhash_threshold is not None else config.get("assembler.simhash_threshold")
        )
        self.verify_parts = verify_parts

    def assemble(self, lang: str, post_filter: Optional[PostFilter] = None) -> AssemblyManifest:
        """
        Assembles one language.

        Raises:
            AssemblyError: no done shards, corrupt intermediate output, or
                another rebuild of the same language holds the lock
        """
        if not lang:
            raise ValueError("lang is required")
        post_filter = post_filter or PostFilter()

        shard_ids = sorted(self.checkpoint.done_shards(), key=shard_sort_key)
        if not shard_ids:
            raise AssemblyError(lang, "no done shards in checkpoint")

        self.output_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.output_dir / f".{lang}.lock"
        try:
            lock_fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise AssemblyError(lang, f"output locked by another rebuild (remove {lock_path} if none is running)")

        try:
            os.write(lock_fd, str(os.getpid()).encode("ascii"))
            os.close(lock_fd)
            return self._assemble(lang, shard_ids, post_filter)
        finally:
            lock_path.unlink()

    def _assemble(self, lang: str, shard_ids: List[str], post_filter: PostFilter) -> AssemblyManifest:
        start = time.time()
        work_dir = self.output_dir / f".{lang}.partial"
        if work_dir.exists():
            shutil.rmtree(work_dir)
        work_dir.mkdir(parents=True)

        manifest = AssemblyManifest(
            language=lang,
            codec=self.codec,
            shards_considered=len(shard_ids),
            post_filter=post_filter.to_dict(),
        )
        exact = ExactDeduplicator()
        near = NearDuplicateDetector(self.simhash_threshold) if self.near_duplicates else None
        writer = _PartWriter(work_dir, lang, self.codec, self.compression_level, self.part_bytes)
        content_digest = hashlib.sha256()

        logger.info(f"Assembling '{lang}' from {len(shard_ids)} done shards")
        try:
            for shard_id in shard_ids:
                contributed = False
                for record in self._iter_shard(shard_id, lang):
                    reason = post_filter.reason(record) if post_filter.active else None
                    if reason is not None:
                        manifest.filtered[reason] = manifest.filtered.get(reason, 0) + 1
                        continue

                    content = record['content']
                    if exact.is_duplicate(content):
                        manifest.duplicates += 1
                        continue
                    if near is not None and near.is_duplicate(content):
                        manifest.near_duplicates += 1
                        continue

                    line = json.dumps(record, ensure_ascii=False).encode("utf-8") + b"\n"
                    writer.write(line)
                    content_digest.update(line)
                    manifest.documents += 1
                    manifest.bytes += len(content.encode("utf-8"))
                    contributed = True

                if contributed:
                    manifest.shards.append(shard_id)

            writer.close()
        except AssemblyError:
            writer.abort()
            shutil.rmtree(work_dir, ignore_errors=True)
            raise
        except OSError as e:
            writer.abort()
            shutil.rmtree(work_dir, ignore_errors=True)
            raise AssemblyError(lang, f"output error: {e}") from e

        manifest.digest = content_digest.hexdigest()
        manifest.files = writer.parts

        if manifest.documents == 0:
            logger.warning(f"No '{lang}' documents in {len(shard_ids)} done shards; corpus is empty")

        try:
            write_durable(
                work_dir / f"{lang}_sha384.txt",
                "".join(f"{p['sha384']}  {p['name']}\n" for p in manifest.files).encode("utf-8"),
            )
            write_durable(
                work_dir / f"{lang}_manifest.json",
                json.dumps(manifest.to_dict(), indent=2, sort_keys=True).encode("utf-8"),
            )
            self._publish(lang, work_dir)
        except OSError as e:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise AssemblyError(lang, f"output error: {e}") from e

        logger.info(
            f"Assembled '{lang}': {manifest.documents} documents, {manifest.duplicates} duplicates, "
            f"{manifest.near_duplicates} near-duplicates, {sum(manifest.filtered.values())} filtered, "
            f"{len(manifest.files)} parts in {time.time() - start:.1f}s"
        )
        return manifest

    def _iter_shard(self, shard_id: str, lang: str):
        """Yields the shard's stored documents for `lang`; nothing if it has none."""
        lang_dir = language_output_dir(self.intermediate_dir, shard_id, lang)
        if not lang_dir.is_dir():
            return

        marker_path = lang_dir / COMPLETE_MARKER
        try:
            marker = json.loads(marker_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise AssemblyError(lang, f"shard {shard_id} has no completion marker")
        except json.JSONDecodeError as e:
            raise AssemblyError(lang, f"shard {shard_id} has a corrupt completion marker: {e}")

        for part in marker.get('parts', []):
            path = lang_dir / part['name']
            if not path.exists():
                raise AssemblyError(lang, f"shard {shard_id} is missing {part['name']}")
            if self.verify_parts and part.get('sha256') and _file_sha256(path) != part['sha256']:
                raise AssemblyError(lang, f"shard {shard_id} part {part['name']} fails its checksum")
            try:
                yield from read_jsonl(path)
            except (ValueError, EOFError, OSError, zstd.ZstdError) as e:
                raise AssemblyError(lang, f"shard {shard_id} part {part['name']} is unreadable: {e}")

    def _publish(self, lang: str, work_dir: Path):
        final_dir = self.output_dir / lang
        if final_dir.exists():
            shutil.rmtree(final_dir)
        work_dir.rename(final_dir)
        fsync_dir(self.output_dir)
