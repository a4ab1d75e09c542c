"""
Model adapters consumed by the classifier and the quality filter.

The pipeline treats every model as an opaque, read-only oracle:

- line identification: ``predict(text, k) -> [(lang, prob), ...]`` ranked
  by probability, labels without the ``__label__`` prefix
- quality scoring: ``score(text) -> float`` (lower perplexity is better)

Models are loaded once, before any shard is dispatched, and shared by all
workers. Failing to load the identification model is fatal; quality
models are optional per language.
"""

from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from langdetect import DetectorFactory, detect_langs

from common.errors import ModelLoadError
from common.logging.logger import get_logger

logger = get_logger("oracles")

FASTTEXT_LABEL_PREFIX = "__label__"
QUALITY_MODEL_SUFFIXES = (".binary", ".arpa", ".bin")


@runtime_checkable
class LineOracle(Protocol):
    """Anything that ranks language labels for a single line of text."""

    def predict(self, text: str, k: int = 1) -> List[Tuple[str, float]]:
        ...


@runtime_checkable
class QualityScorer(Protocol):
    """Anything that maps a document body to a numeric quality score."""

    def score(self, text: str) -> float:
        ...


class FastTextOracle:
    """
    fastText language identification model (e.g. ``lid.176.bin``).

    fastText refuses input containing newlines, and the classifier only ever
    hands it single trimmed lines.
    """

    def __init__(self, model_path: str):
        if model_path is None:
            raise ValueError("model_path is required")

        path = Path(model_path)
        if not path.exists():
            raise ModelLoadError(str(path), "model file not found")

        try:
            import fasttext
        except ImportError as e:
            raise ModelLoadError(str(path), "fasttext is not installed (pip install '.[lid]')") from e

        try:
            self._model = fasttext.load_model(str(path))
        except Exception as e:
            raise ModelLoadError(str(path), str(e)) from e

        self.model_path = str(path)
        logger.info(f"Loaded fastText identification model from {path}")

    def predict(self, text: str, k: int = 1) -> List[Tuple[str, float]]:
        labels, probs = self._model.predict(text, k=k)
        return [
            (label[len(FASTTEXT_LABEL_PREFIX):] if label.startswith(FASTTEXT_LABEL_PREFIX) else label,
             float(prob))
            for label, prob in zip(labels, probs)
        ]


class LangdetectOracle:
    """
    langdetect-backed identification, for runs without a fastText model.

    The detector factory is seeded so repeated runs over the same shard
    produce identical labels.
    """

    def __init__(self, seed: int = 0):
        DetectorFactory.seed = seed
        self._detect_langs = detect_langs
        # Load language profiles now, not lazily inside a worker thread
        try:
            self._detect_langs("language profiles warm-up sentence")
        except Exception as e:
            raise ModelLoadError("langdetect", str(e)) from e
        logger.info("Loaded langdetect identification profiles")

    def predict(self, text: str, k: int = 1) -> List[Tuple[str, float]]:
        ranked = self._detect_langs(text)
        return [(item.lang, float(item.prob)) for item in ranked[:k]]


def load_line_oracle(backend: str, model_path: Optional[str] = None) -> LineOracle:
    """Builds the identification oracle for a run. Raises ModelLoadError on failure."""
    if backend is None:
        raise ValueError("backend is required")

    backend = backend.lower()
    if backend == "fasttext":
        return FastTextOracle(model_path)
    if backend == "langdetect":
        return LangdetectOracle()
    raise ModelLoadError(backend, f"unknown identification backend '{backend}'")


class KenLMScorer:
    """
    Per-language KenLM model; scores a document by its perplexity.

    Perplexity is computed over the whole document from the summed per-line
    log10 probabilities, counting one end-of-sentence token per line.
    """

    def __init__(self, language: str, model_path: str):
        if language is None:
            raise ValueError("language is required")
        if model_path is None:
            raise ValueError("model_path is required")

        try:
            import kenlm
        except ImportError as e:
            raise ModelLoadError(model_path, "kenlm is not installed (pip install '.[quality]')") from e

        try:
            self._model = kenlm.Model(str(model_path))
        except Exception as e:
            raise ModelLoadError(model_path, str(e)) from e

        self.language = language
        self.model_path = str(model_path)

    def score(self, text: str) -> float:
        log_score = 0.0
        length = 0
        for line in text.split("\n"):
            line = line.strip()
            if not line:
                continue
            log_score += self._model.score(line, bos=True, eos=True)
            length += len(line.split()) + 1

        if length == 0:
            return float("inf")
        return round(10.0 ** (-log_score / length), 1)


def load_quality_scorers(models_dir: Optional[str]) -> Dict[str, QualityScorer]:
    """
    Loads every ``<lang>.binary`` / ``<lang>.arpa`` model found in models_dir.

    A missing directory or an unloadable model only disables the quality
    check for the affected languages.
    """
    scorers: Dict[str, QualityScorer] = {}
    if not models_dir:
        return scorers

    directory = Path(models_dir)
    if not directory.is_dir():
        logger.warning(f"Quality models directory {directory} not found, quality check disabled")
        return scorers

    for path in sorted(directory.iterdir()):
        if path.suffix not in QUALITY_MODEL_SUFFIXES:
            continue
        language = path.name.split(".")[0]
        if language in scorers:
            continue
        try:
            scorers[language] = KenLMScorer(language, str(path))
        except ModelLoadError as e:
            logger.warning(f"Quality check disabled for '{language}': {e}")
            continue

    logger.info(f"Loaded {len(scorers)} quality models: {sorted(scorers)}")
    return scorers
