"""
WET shard access and record parsing.

A shard is a multi-member gzip WARC file of ``conversion`` records, one
per captured page, whose payload is the page's extracted plain text.

- ShardSource: the acquisition seam, listing shard ids and opening one
  shard's byte stream on demand
- WetShardReader: lazy record iterator over a single shard; it never holds
  more than one record in memory
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, Generator, List, Optional

from warcio.archiveiterator import ArchiveIterator

from common.config import config
from common.errors import ShardError
from common.logging.logger import get_logger

logger = get_logger("wet_reader")

# Longest first, so "x.warc.wet.gz" does not stop at ".gz"
SHARD_SUFFIXES = (".warc.wet.gz", ".wet.gz", ".txt.gz", ".warc.gz", ".gz")

CONVERSION = "conversion"


class _ShardArchiveIterator(ArchiveIterator):
    """ArchiveIterator that remembers whether the stream ended inside a gzip member."""

    ended_mid_member = False

    def close(self):
        decompressor = self.reader.decompressor if self.reader else None
        if decompressor is not None and not getattr(decompressor, "eof", True):
            self.ended_mid_member = True
        super().close()


def shard_id_from_path(path: Path) -> str:
    name = Path(path).name
    for suffix in SHARD_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return Path(path).stem


def shard_sort_key(shard_id: str):
    """Numeric ids sort numerically and before any other id."""
    return (0, int(shard_id), "") if shard_id.isdigit() else (1, 0, shard_id)


@dataclass
class WetRecord:
    """One captured page from a shard."""
    index: int
    record_id: str
    url: str
    body: str
    headers: Dict[str, str] = field(default_factory=dict)


class ShardSource(ABC):
    """Supplies shard byte streams on demand."""

    @abstractmethod
    def list_shards(self) -> List[str]:
        """Returns every candidate shard id for a run."""
        raise NotImplementedError("Subclasses must implement list_shards()")

    @abstractmethod
    def open(self, shard_id: str) -> BinaryIO:
        """Opens the raw (compressed) byte stream of a shard."""
        raise NotImplementedError("Subclasses must implement open()")


class DirectoryShardSource(ShardSource):
    """Shards stored as files in a local directory (e.g. ``12345.txt.gz``)."""

    def __init__(self, root: str, pattern: Optional[str] = None):
        if root is None:
            raise ValueError("root is required")

        self.root = Path(root)
        self.pattern = pattern or config.get("shard.pattern")
        self._paths: Optional[Dict[str, Path]] = None

    def _index(self) -> Dict[str, Path]:
        if self._paths is None:
            if not self.root.is_dir():
                raise FileNotFoundError(f"Shard directory not found: {self.root}")
            paths: Dict[str, Path] = {}
            for path in sorted(self.root.glob(self.pattern)):
                if path.is_file():
                    paths[shard_id_from_path(path)] = path
            self._paths = paths
            logger.info(f"Found {len(paths)} shards in {self.root}")
        return self._paths

    def list_shards(self) -> List[str]:
        return sorted(self._index(), key=shard_sort_key)

    def open(self, shard_id: str) -> BinaryIO:
        path = self._index().get(shard_id)
        if path is None:
            raise FileNotFoundError(f"Shard '{shard_id}' not found in {self.root}")
        return open(path, "rb")


def read_shard_list(path: str) -> List[str]:
    """Reads shard ids (or shard file names) from a text file, one per line."""
    shard_ids = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                shard_ids.append(shard_id_from_path(Path(line)))
    return shard_ids


class WetShardReader:
    """
    Lazily yields WetRecords from one shard stream.

    A shard that cannot be read at all raises ShardError. Once at least one
    record has been read, later problems are per-record: malformed records
    are skipped and counted. A truncated tail (a cut payload, or a stream
    that ends inside a gzip member) ends iteration and is counted too.
    """

    def __init__(self, stream: BinaryIO, shard_id: str):
        if stream is None:
            raise ValueError("stream is required")
        if shard_id is None:
            raise ValueError("shard_id is required")

        self.stream = stream
        self.shard_id = shard_id
        self._stats = {
            'records': 0,
            'yielded': 0,
            'skipped_type': 0,
            'malformed': 0,
            'undecodable': 0,
            'truncated': 0,
        }
        self._last_cut = False

    def __iter__(self) -> Generator[WetRecord, None, None]:
        try:
            archive = _ShardArchiveIterator(self.stream)
            records = iter(archive)
        except Exception as e:
            raise ShardError(self.shard_id, f"decompression error: {e}") from e

        index = 0
        while True:
            try:
                record = next(records)
            except StopIteration:
                break
            except Exception as e:
                if self._stats['records'] == 0:
                    raise ShardError(self.shard_id, f"decompression error: {e}") from e
                logger.warning(
                    f"Shard {self.shard_id}: stopped after {self._stats['records']} records, "
                    f"truncated archive: {e}"
                )
                self._stats['truncated'] += 1
                break

            self._stats['records'] += 1
            self._last_cut = False
            position = index
            index += 1

            if record.rec_type != CONVERSION:
                self._stats['skipped_type'] += 1
                continue

            parsed = self._parse(record, position)
            if parsed is not None:
                self._stats['yielded'] += 1
                yield parsed

        if self._stats['records'] == 0:
            raise ShardError(self.shard_id, "decompression error: shard contains no records")

        # A cut inside the last record's payload was already counted by _parse
        if archive.ended_mid_member and not self._last_cut:
            logger.warning(
                f"Shard {self.shard_id}: stopped after {self._stats['records']} records, "
                f"archive ends inside a compressed member"
            )
            self._stats['truncated'] += 1

    def _parse(self, record, position: int) -> Optional[WetRecord]:
        """Turns a warcio record into a WetRecord, or None if malformed."""
        headers = record.rec_headers
        url = headers.get_header("WARC-Target-URI")
        record_id = headers.get_header("WARC-Record-ID")
        if not url or not record_id:
            self._stats['malformed'] += 1
            return None

        try:
            payload = record.content_stream().read()
        except Exception as e:
            logger.debug(f"Shard {self.shard_id}: unreadable record {record_id}: {e}")
            self._stats['malformed'] += 1
            return None

        declared = _declared_length(headers)
        if declared is None:
            self._stats['malformed'] += 1
            return None
        if len(payload) < declared:
            logger.warning(
                f"Shard {self.shard_id}: record {record_id} truncated "
                f"({len(payload)} of {declared} bytes)"
            )
            self._stats['truncated'] += 1
            self._last_cut = True
            return None

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            self._stats['undecodable'] += 1
            return None

        return WetRecord(
            index=position,
            record_id=record_id,
            url=url,
            body=body,
            headers={name: value for name, value in headers.headers},
        )

    def get_stats(self) -> Dict[str, int]:
        return self._stats.copy()


def _declared_length(headers) -> Optional[int]:
    value = headers.get_header("Content-Length")
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None
