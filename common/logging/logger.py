import logging
import os
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
import json

# Fields that callers attach through `extra=` and that should survive into the JSON line
CONTEXT_FIELDS = ("shard_id", "language", "worker", "run_id")


class JsonFormatter(logging.Formatter):
    """
    Formatter that outputs JSON strings after parsing the LogRecord.
    """
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "thread": record.threadName,
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, ensure_ascii=False)


def setup_logger(name: str, log_dir: str = "logs", level: int = logging.INFO, console_output: bool = True) -> logging.Logger:
    """
    Sets up a logger with both file and console handlers.

    Args:
        name: Name of the logger
        log_dir: Directory to store log files
        level: Logging level
        console_output: Whether to output to console

    Returns:
        Configured logger instance
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    # File Handler - JSON formatted
    file_handler = RotatingFileHandler(
        log_path / f"{name}.jsonl",
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(JsonFormatter())
    logger.addHandler(file_handler)

    # Console Handler - Human readable
    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - [%(threadName)s] %(levelname)s - %(message)s'
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Convenience function to get a logger with default settings.

    CORPUS_LOG_DIR and CORPUS_LOG_LEVEL override the defaults; they are read
    from the environment because the config module itself logs through here.
    """
    log_dir = os.environ.get("CORPUS_LOG_DIR", "logs")
    level_name = os.environ.get("CORPUS_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    return setup_logger(name, log_dir=log_dir, level=level)
