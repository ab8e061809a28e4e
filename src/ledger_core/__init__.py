import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


LOG_DIR_ENV = "LEDGER_CORE_LOG_DIR"
LOG_DIR_NAME = ".logs"
LOG_FILE_NAME = "ledger_core.log"

_FORMATTER = logging.Formatter(
    fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _file_handler(directory: Path) -> Optional[RotatingFileHandler]:
    log_file = directory / LOG_FILE_NAME
    try:
        directory.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_file,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        print(
            f"Warning: unable to initialize ledger log file at '{log_file}': {exc}",
            file=sys.stderr,
        )
        return None
    handler.setLevel(logging.INFO)
    handler.setFormatter(_FORMATTER)
    return handler


def use_log_directory(directory: Path) -> None:
    """Write the package log file under ``directory``.

    Called once the configuration file is located, with ``<config dir>/.logs``.
    Does nothing while ``LEDGER_CORE_LOG_DIR`` pins the location.
    """
    if os.environ.get(LOG_DIR_ENV):
        return

    target = Path(directory).expanduser().resolve()
    current = [handler for handler in log.handlers if isinstance(handler, RotatingFileHandler)]
    if any(Path(handler.baseFilename).parent == target for handler in current):
        return

    handler = _file_handler(target)
    if handler is None:
        return
    for stale in current:
        log.removeHandler(stale)
        stale.close()
    log.addHandler(handler)
    log.debug("Logging to '%s'", handler.baseFilename)


def _configure_logging() -> logging.Logger:
    """Configure package-wide logging.

    Warnings and errors always reach stderr. The rotating log file starts
    under ``LEDGER_CORE_LOG_DIR`` when set; otherwise it is attached by
    :func:`use_log_directory` once a configuration file is loaded.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)

    override = os.environ.get(LOG_DIR_ENV)
    if override:
        file_handler = _file_handler(Path(override).expanduser())
        if file_handler is not None:
            logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'ledger_core' package.")
