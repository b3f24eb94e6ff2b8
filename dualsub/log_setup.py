"""Logging configuration for DualSub."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional, TextIO

from tqdm import tqdm

from .utils import ensure_dir_exists

DEFAULT_LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(name)s:%(lineno)d] - %(message)s'
CONSOLE_LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
DEFAULT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# SDK request logs would flood the console with every retry and continuation
NOISY_LOGGERS = ("httpx", "httpcore", "google_genai", "openai", "urllib3")


class TqdmConsoleHandler(logging.StreamHandler):
    """Console handler that prints through ``tqdm.write`` so open progress bars are redrawn below the message."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            tqdm.write(self.format(record), file=self.stream)
            self.flush()
        except Exception:
            self.handleError(record)


def setup_logging(
    log_level: int = logging.INFO,
    log_dir: str = "logs",
    log_file: str = "dualsub.log",
    max_bytes: int = 10 * 1024 * 1024, # 10 MB
    backup_count: int = 5,
    console_stream: Optional[TextIO] = None,
    progress_bars: bool = False,
) -> None:
    """
    Configures the root logger with a console handler and a rotating file.

    Calling it again replaces the previously installed handlers, so the CLI can
    log config errors first and re-configure once the log location is known.

    Args:
        log_level: The minimum logging level (e.g., logging.INFO, logging.DEBUG).
        log_dir: The directory to store log files.
        log_file: The name of the log file.
        max_bytes: Maximum size of a log file before rotation.
        backup_count: Number of backup log files to keep.
        console_stream: Stream for console output (defaults to stdout).
        progress_bars: Route console output through tqdm while bars are shown.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(log_level)

    stream = console_stream or sys.stdout
    console = TqdmConsoleHandler(stream) if progress_bars else logging.StreamHandler(stream)
    console.setFormatter(logging.Formatter(CONSOLE_LOG_FORMAT, datefmt=DEFAULT_DATE_FORMAT))
    console.setLevel(log_level)
    root.addHandler(console)

    try:
        ensure_dir_exists(log_dir)
        log_path = os.path.join(log_dir, log_file)
        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8')
        # the file keeps module and line for post-mortems of failed chunks
        file_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT, datefmt=DEFAULT_DATE_FORMAT))
        root.addHandler(file_handler)
        root.debug(f"Logging initialized. Log file: {log_path}")
    except Exception as e:
        root.error(f"Failed to set up file logging at {log_dir}/{log_file}, console only: {e}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
