import json
import os
from pathlib import Path
from typing import Dict, Any

from common.errors import CorpusConfigError
from common.logging.logger import get_logger

logger = get_logger("config")

# Centralized default values for all config keys used across the codebase.
# Each entry: (type, default_value)
# Types: str, int, float, bool, list, None (any)
CONFIG_SCHEMA: Dict[str, tuple] = {
    # Paths
    "paths.shards_dir":                 (str,   "data/shards"),
    "paths.intermediate_dir":           (str,   "data/intermediate"),
    "paths.corpus_dir":                 (str,   "data/corpus"),

    # Checkpoint
    "checkpoint.sqlite_path":           (str,   "data/checkpoint.db"),
    "checkpoint.busy_timeout_seconds":  (float, 30.0),

    # Line classifier
    "classifier.backend":               (str,   "fasttext"),
    "classifier.model_path":            (str,   "lid.176.bin"),
    "classifier.threshold":             (float, 0.8),
    "classifier.min_line_chars":        (int,   10),

    # Line splitting and record-level filters
    "lines.min_chars":                  (int,   3),
    "lines.trim_short_edges":           (bool,  True),
    "lines.edge_min_chars":             (int,   100),
    "lines.long_line_ratio":            (float, 0.6),

    # Run merging
    "merge.fragmentation_threshold":    (int,   100),
    "merge.doc_threshold":              (float, 0.6),

    # Domain and length filter
    "filter.blocklist_dir":             (str,   None),
    "filter.blocklist_categories":      (list,  None),
    "filter.min_document_chars":        (int,   100),

    # Statistical quality check
    "quality.enabled":                  (bool,  False),
    "quality.models_dir":               (str,   None),
    "quality.min_score":                (float, None),
    "quality.max_score":                (float, None),

    # Annotations
    "annotations.enabled":              (bool,  True),
    "annotations.tiny_min_lines":       (int,   5),
    "annotations.noisy_threshold":      (float, 0.5),
    "annotations.header_ratio":         (float, 0.2),
    "annotations.header_short_ratio":   (float, 0.5),
    "annotations.short_line_chars":     (int,   100),
    "annotations.drop_noisy_tiny":      (bool,  True),

    # Shard processing
    "shard.pattern":                    (str,   "*.gz"),
    "shard.split_size_mb":              (float, 64.0),
    "shard.split_max_documents":        (int,   50_000),
    "shard.codec":                      (str,   "zstd"),
    "shard.compression_level":          (int,   3),

    # Orchestrator
    "orchestrator.workers":             (int,   4),
    "orchestrator.queue_size":          (int,   None),
    "orchestrator.progress_interval":   (float, 30.0),
    "orchestrator.put_timeout_seconds": (float, 1.0),

    # Corpus assembler
    "assembler.part_size_mb":           (float, 500.0),
    "assembler.codec":                  (str,   "zstd"),
    "assembler.near_duplicates":        (bool,  False),
    "assembler.simhash_threshold":      (int,   3),

    # Resource limits
    "resource_limits.max_rss_gb":              (float, None),
    "resource_limits.check_interval_seconds": (float, 5.0),
}


class Config:
    _instance = None
    _config: Dict[str, Any] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Config, cls).__new__(cls)
            cls._instance._load_config()
        return cls._instance

    def _load_config(self):
        config_path = Path(os.environ.get("CORPUS_CONFIG", "config.json"))
        if not config_path.exists():
            self._config = {}
            return

        with open(config_path, "r", encoding="utf-8") as f:
            self._config = json.load(f)

        logger.info(f"Loaded configuration from {config_path}")
        self._ensure_dirs()

    def _ensure_dirs(self):
        paths = self._config.get("paths", {})
        for path in paths.values():
            if isinstance(path, str) and not path.endswith(('db', 'json', 'txt')):
                try:
                    Path(path).mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    logger.warning(f"Could not create directory {path}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Gets a config value by dot-separated key.

        Lookup order:
        1. Value from config.json (if present and not None)
        2. Caller-provided default (if not None)
        3. Schema default from CONFIG_SCHEMA
        4. None
        """
        value = self._get_raw(key)
        if value is not None:
            return value

        if default is not None:
            return default

        schema_entry = CONFIG_SCHEMA.get(key)
        if schema_entry is not None:
            return schema_entry[1]

        return None

    def validate(self) -> list:
        """
        Validates the loaded config against CONFIG_SCHEMA.

        Returns a list of warning strings for type mismatches.
        Does NOT raise -- config.json values always take precedence.
        """
        warnings = []
        for key, (expected_type, _default) in CONFIG_SCHEMA.items():
            if expected_type is None:
                continue
            value = self._get_raw(key)
            if value is None:
                continue
            # ints are acceptable where floats are expected
            if expected_type is float and isinstance(value, int) and not isinstance(value, bool):
                continue
            if not isinstance(value, expected_type):
                warnings.append(
                    f"Config '{key}': expected {expected_type.__name__}, "
                    f"got {type(value).__name__} ({value!r})"
                )
        for w in warnings:
            logger.warning(w)
        return warnings

    def _get_raw(self, key: str) -> Any:
        """Gets value from config.json without schema fallback."""
        value = self._config
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return None
            if value is None:
                return None
        return value

    def require(self, key: str) -> Any:
        """
        Requires a config value to be explicitly set in config.json.

        Raises CorpusConfigError if missing.
        """
        value = self._get_raw(key)
        if value is None:
            logger.error(f"Missing required config key: {key}")
            raise CorpusConfigError(key)
        return value


# Global accessor
config = Config()
