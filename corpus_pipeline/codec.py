"""
Compressed JSONL I/O for intermediate parts and final corpus files.

Codecs: ``zstd`` (default), ``gzip`` and ``none``. Output is deterministic
for identical input (gzip headers carry no timestamp), which keeps
reprocessed shards byte-identical.
"""

import gzip
import io
import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterator, List

import zstandard as zstd

from common.logging.logger import get_logger

logger = get_logger("codec")

CODEC_EXTENSIONS = {
    "zstd": ".jsonl.zst",
    "gzip": ".jsonl.gz",
    "none": ".jsonl",
}


def extension_for(codec: str) -> str:
    try:
        return CODEC_EXTENSIONS[codec]
    except KeyError:
        raise ValueError(f"Unknown codec '{codec}', expected one of {sorted(CODEC_EXTENSIONS)}")


def codec_for(path: Path) -> str:
    name = Path(path).name
    if name.endswith(".zst"):
        return "zstd"
    if name.endswith(".gz"):
        return "gzip"
    return "none"


def dumps_jsonl(records: List[Dict[str, Any]]) -> bytes:
    """Serializes records as UTF-8 JSON lines."""
    return b"".join(
        json.dumps(record, ensure_ascii=False).encode("utf-8") + b"\n"
        for record in records
    )


def compress(data: bytes, codec: str, level: int = 3) -> bytes:
    if codec == "zstd":
        return zstd.ZstdCompressor(level=level).compress(data)
    if codec == "gzip":
        return gzip.compress(data, compresslevel=min(max(level, 1), 9), mtime=0)
    if codec == "none":
        return data
    raise ValueError(f"Unknown codec '{codec}'")


def fsync_dir(path: Path):
    """Makes a rename or file creation inside `path` durable."""
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_durable(path: Path, data: bytes):
    """Writes bytes through a temp file, fsyncs, then renames into place."""
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    fsync_dir(path.parent)


@contextmanager
def open_writer(path: Path, codec: str, level: int = 3) -> Iterator[BinaryIO]:
    """
    Streams compressed bytes to `path`; the file is fsynced on exit.

    Used for final corpus parts, which are too large to compress in memory.
    """
    with open(path, "wb") as raw:
        if codec == "zstd":
            cctx = zstd.ZstdCompressor(level=level)
            with cctx.stream_writer(raw, closefd=False) as writer:
                yield writer
        elif codec == "gzip":
            with gzip.GzipFile(fileobj=raw, mode="wb", compresslevel=min(max(level, 1), 9), mtime=0) as writer:
                yield writer
        elif codec == "none":
            yield raw
        else:
            raise ValueError(f"Unknown codec '{codec}'")
        raw.flush()
        os.fsync(raw.fileno())


@contextmanager
def open_text_reader(path: Path) -> Iterator[io.TextIOBase]:
    """Opens a (possibly compressed) JSONL file as decoded text."""
    codec = codec_for(path)
    with open(path, "rb") as raw:
        if codec == "zstd":
            dctx = zstd.ZstdDecompressor()
            with dctx.stream_reader(raw, read_across_frames=True) as reader:
                yield io.TextIOWrapper(reader, encoding="utf-8")
        elif codec == "gzip":
            with gzip.GzipFile(fileobj=raw, mode="rb") as reader:
                yield io.TextIOWrapper(reader, encoding="utf-8")
        else:
            yield io.TextIOWrapper(raw, encoding="utf-8")


def read_jsonl(path: Path) -> Iterator[Dict[str, Any]]:
    """Yields records from a (possibly compressed) JSONL file."""
    with open_text_reader(path) as reader:
        for line in reader:
            line = line.strip()
            if line:
                yield json.loads(line)
