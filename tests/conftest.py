"""
Shared pytest fixtures for corpus pipeline tests.

Uses DI to inject temp-file SQLite checkpoints and deterministic fake
oracles, so no model file or network access is needed.

The conftest patches the Config singleton at import time so that a
config.json in the working directory cannot leak into the tests, and
points log files at a temp directory.
"""

import os
import random
import re
import sys
import tempfile
from io import BytesIO
from pathlib import Path
from typing import List, Sequence, Tuple, Union

# Ensure project root is on sys.path so imports work from tests/
sys.path.insert(0, str(Path(__file__).parent.parent))

os.environ.setdefault("CORPUS_LOG_DIR", os.path.join(tempfile.gettempdir(), "corpus_test_logs"))

# Patch Config BEFORE anything else reads it
from common.config import Config

# The singleton already exists (common.config builds it on import); replace
# whatever it loaded from the working directory.
Config()._config = {
    "checkpoint": {"sqlite_path": os.path.join(tempfile.gettempdir(), "corpus_test_singleton.db")},
    "orchestrator": {"put_timeout_seconds": 0.1, "progress_interval": 60.0},
}

# Now it's safe to import database and repos
import pytest
from warcio.warcwriter import WARCWriter

from common.database import Database
from common.repositories import CheckpointRepository, RunRepository
from corpus_pipeline.blocklist import DomainBlocklist
from corpus_pipeline.line_classifier import LineClassifier
from corpus_pipeline.quality_filter import QualityFilter
from corpus_pipeline.shard_processor import ShardProcessor


FRENCH_WORDS = {"le", "la", "les", "des", "et", "est", "une", "dans", "pour", "qui", "chaque", "ville"}
ENGLISH_WORDS = {"the", "and", "is", "of", "to", "in", "who", "every", "town", "click", "here", "read"}


class FakeOracle:
    """Vocabulary-count identification: 'fr' or 'en' at a fixed probability."""

    def __init__(self, prob: float = 0.95):
        self.prob = prob
        self.seen: List[str] = []

    def predict(self, text, k=1):
        self.seen.append(text)
        words = re.findall(r"\w+", text.lower())
        fr = sum(1 for w in words if w in FRENCH_WORDS)
        en = sum(1 for w in words if w in ENGLISH_WORDS)
        if fr == 0 and en == 0:
            return [("de", 0.3)]
        return [("fr" if fr > en else "en", self.prob)][:k]


class FakeScorer:
    """Quality scorer returning a fixed score."""

    def __init__(self, value: float):
        self.value = value

    def score(self, text):
        return self.value


def french_line(i: int) -> str:
    return (
        f"Le marché numéro {i} de la ville est ouvert pour les habitants et les visiteurs "
        f"qui viennent dans la région chaque semaine."
    )


def english_line(i: int) -> str:
    return (
        f"The market number {i} in the town is open to residents and visitors who come "
        f"to the region every single week of the year."
    )


def french_body(count: int = 5, start: int = 0) -> str:
    return "\n".join(french_line(i) for i in range(start, start + count))


def english_body(count: int = 5, start: int = 0) -> str:
    return "\n".join(english_line(i) for i in range(start, start + count))


def write_wet(
    path: Path,
    records: Sequence[Tuple[str, Union[str, bytes]]],
    warcinfo: bool = True,
    gzip: bool = True,
) -> Path:
    """Writes a WET shard of conversion records (url, body), one gzip member per record."""
    with open(path, "wb") as out:
        writer = WARCWriter(out, gzip=gzip)
        if warcinfo:
            writer.write_record(writer.create_warcinfo_record(path.name, {"software": "tests"}))
        for url, body in records:
            payload = body if isinstance(body, bytes) else body.encode("utf-8")
            record = writer.create_warc_record(
                url,
                "conversion",
                payload=BytesIO(payload),
                length=len(payload),
                warc_content_type="text/plain",
            )
            writer.write_record(record)
    return path


def random_body(seed: int, lines: int = 40) -> str:
    """Poorly compressible text, so a record's gzip member is mostly payload."""
    rng = random.Random(seed)
    return "\n".join(
        " ".join(f"mot{rng.randrange(100_000)}" for _ in range(15)) for _ in range(lines)
    )


def write_cut_wet(path: Path, records: Sequence[Tuple[str, Union[str, bytes]]]) -> Path:
    """Writes a gzipped shard whose last member stops halfway through."""
    head = write_wet(path.with_name(path.name + ".head"), records[:-1])
    boundary = head.stat().st_size
    head.unlink()

    write_wet(path, records)
    data = path.read_bytes()
    path.write_bytes(data[:boundary + (len(data) - boundary) // 2])
    return path


@pytest.fixture
def memory_db(tmp_path):
    """Provides a fresh file-backed SQLite database with full schema."""
    return Database(db_path=str(tmp_path / "checkpoint.db"))


@pytest.fixture
def checkpoint(memory_db):
    return CheckpointRepository(memory_db)


@pytest.fixture
def runs(memory_db):
    return RunRepository(memory_db)


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def classifier(oracle):
    return LineClassifier(oracle, threshold=0.8, min_chars=10)


@pytest.fixture
def blocklist_dir(tmp_path):
    root = tmp_path / "blocklist"
    (root / "adult").mkdir(parents=True)
    (root / "adult" / "domains").write_text("blocked.example\n# comment\nnaughty.test\n", encoding="utf-8")
    (root / "phishing").mkdir()
    (root / "phishing" / "domains").write_text("phish.example\n", encoding="utf-8")
    return root


@pytest.fixture
def blocklist(blocklist_dir):
    return DomainBlocklist.load(str(blocklist_dir))


@pytest.fixture
def intermediate_dir(tmp_path):
    return tmp_path / "intermediate"


@pytest.fixture
def make_processor(classifier, blocklist, intermediate_dir):
    """Factory for processors sharing one classifier and blocklist."""

    def factory(output_dir=None, quality_filter=None, **kwargs):
        return ShardProcessor(
            classifier,
            quality_filter or QualityFilter(blocklist, quality_enabled=False),
            str(output_dir or intermediate_dir),
            **kwargs,
        )

    return factory


@pytest.fixture
def shards_dir(tmp_path):
    path = tmp_path / "shards"
    path.mkdir()
    return path
