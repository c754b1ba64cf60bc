"""Logging configuration for the node rotator."""

import logging
import sys
from pathlib import Path

FIELD_ORDER = ("cluster", "group", "node")


def setup_logging(level: str = "INFO", log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        verbose: If True, set level to DEBUG
    """
    if verbose:
        level = "DEBUG"

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    # Rotations are long running, so progress goes to the console at INFO
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO if not verbose else logging.DEBUG)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logging.warning(f"Failed to create log file handler: {e}")

    # Set levels for noisy libraries
    for name in ("urllib3", "kubernetes", "botocore", "boto3"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class FieldLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter carrying per-operation fields (cluster, group, node).

    Fields are rendered as a message prefix and passed to handlers in the
    record's ``extra`` so they survive any formatter.
    """

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        ordered = [k for k in FIELD_ORDER if k in self.extra]
        ordered += sorted(k for k in self.extra if k not in FIELD_ORDER)
        if not ordered:
            return msg, kwargs
        prefix = " ".join(f"{k}={self.extra[k]}" for k in ordered)
        return f"[{prefix}] {msg}", kwargs


def bind_logger(logger: logging.Logger | logging.LoggerAdapter, **fields) -> FieldLoggerAdapter:
    """Return a logger that tags every record with the given fields.

    Binding an adapter returned by this function merges the new fields into
    the existing ones instead of nesting prefixes.

    Args:
        logger: Base logger or a previously bound adapter
        **fields: Field values, e.g. ``cluster="abc"``, ``node="ip-10-0-0-1"``

    Returns:
        Logger adapter with the merged fields
    """
    if isinstance(logger, FieldLoggerAdapter):
        merged = {**logger.extra, **fields}
        return FieldLoggerAdapter(logger.logger, merged)
    return FieldLoggerAdapter(logger, dict(fields))
