"""
Custom exception hierarchy for the corpus pipeline.

Startup failures (models, blocklist, configuration) raise subclasses of
CorpusError and abort a run before any shard is dispatched. Shard-level
failures raise ShardError, which the orchestrator records in the
checkpoint instead of propagating.
"""


class CorpusError(Exception):
    """Base exception for all corpus pipeline errors."""


class CorpusConfigError(CorpusError):
    """Raised when a required configuration key is missing or invalid."""

    def __init__(self, key: str, reason: str = "missing or None"):
        self.key = key
        super().__init__(f"Configuration error for '{key}': {reason}")


class ModelLoadError(CorpusError):
    """Raised when the identification model or a quality model cannot be loaded."""

    def __init__(self, model: str, detail: str):
        self.model = model
        super().__init__(f"Failed to load model '{model}': {detail}")


class BlocklistError(CorpusError):
    """Raised when the domain blocklist is missing or unreadable."""

    def __init__(self, path: str, detail: str):
        self.path = path
        super().__init__(f"Blocklist error [{path}]: {detail}")


class ShardError(CorpusError):
    """Raised when a whole shard cannot be decompressed or parsed."""

    def __init__(self, shard_id: str, detail: str):
        self.shard_id = shard_id
        self.detail = detail
        super().__init__(f"Shard '{shard_id}' failed: {detail}")


class CheckpointError(CorpusError):
    """Raised on an invalid checkpoint transition or store failure."""

    def __init__(self, detail: str):
        super().__init__(f"Checkpoint error: {detail}")


class AssemblyError(CorpusError):
    """Raised when a corpus rebuild cannot proceed."""

    def __init__(self, language: str, detail: str):
        self.language = language
        super().__init__(f"Assembly of '{language}' failed: {detail}")
