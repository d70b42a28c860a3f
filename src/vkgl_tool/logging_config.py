"""Logging configuration and progress reporting."""

import logging
import logging.handlers
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name on a terminal."""
    
    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
        'RESET': '\033[0m'
    }
    
    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and sys.stderr.isatty()
    
    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if self.use_colors and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class ProgressLogger:
    """Throttled progress messages for long batch loops.
    
    A message is emitted at most once per ``interval`` seconds and only when
    the percentage (one decimal) changed, so cron mail stays short.
    """
    
    def __init__(self,
                 logger: logging.Logger,
                 total: int,
                 operation: str = "Processing",
                 interval: float = 5.0,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize progress logger.
        
        Args:
            logger: Logger instance to use
            total: Total number of items
            operation: Operation description
            interval: Minimum number of seconds between two messages
            clock: Time source, replaceable in tests
        """
        self.logger = logger
        self.total = total
        self.operation = operation
        self.interval = interval
        self.clock = clock
        self.processed = 0
        self.failed = 0
        self.start_time = clock()
        self._last_report = self.start_time
        self._last_permille = -1
        self.reports_emitted = 0
    
    @property
    def percentage(self) -> float:
        return (self.processed * 100.0 / self.total) if self.total > 0 else 100.0
    
    def update(self, success: bool = True) -> bool:
        """Count one item; returns True when a message was emitted."""
        self.processed += 1
        if not success:
            self.failed += 1
        
        now = self.clock()
        permille = int(self.processed * 1000 / self.total) if self.total > 0 else 1000
        if (now - self._last_report) < self.interval or permille == self._last_permille \
                or self.processed == self.total:
            return False
        
        self._last_report = now
        self._last_permille = permille
        self.reports_emitted += 1
        self.logger.info(
            f"[{permille / 10:5.1f}%] {self.operation}: {self.processed}/{self.total}"
            f" ({self.failed} failed)"
        )
        return True
    
    def complete(self) -> None:
        elapsed = self.clock() - self.start_time
        self.logger.info(
            f"[100.0%] {self.operation} complete: {self.processed} items in {elapsed:.1f}s"
            f" ({self.failed} failed)"
        )


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_dir: Optional[str] = ".vkgl_logs",
    console: bool = True,
    colors: bool = True,
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    quiet: bool = False
) -> Dict[str, logging.Logger]:
    """
    Setup logging for a run.
    
    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Custom log file name
        log_dir: Directory for log files, None disables the file log
        console: Enable console output (stderr)
        colors: Enable colored console output
        max_bytes: Maximum log file size before rotation
        backup_count: Number of rotated files to keep
        quiet: Only errors reach the console
    
    Returns:
        Dictionary of configured loggers
    """
    level = getattr(logging, log_level.upper())
    
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.DEBUG)
    
    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        if log_file is None:
            log_file = f"vkgl_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.handlers.RotatingFileHandler(
            log_path / log_file,
            maxBytes=max_bytes,
            backupCount=backup_count
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root_logger.addHandler(file_handler)
    
    if console:
        # stderr, so stdout stays usable for command output.
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.ERROR if quiet else level)
        console_handler.setFormatter(ColoredFormatter(
            '%(asctime)s %(levelname)s - %(message)s',
            datefmt='%H:%M:%S',
            use_colors=colors
        ))
        root_logger.addHandler(console_handler)
    
    loggers = {
        'main': logging.getLogger('vkgl_tool'),
        'cache': logging.getLogger('vkgl_tool.cache'),
        'oracle': logging.getLogger('vkgl_tool.oracle'),
        'sync': logging.getLogger('vkgl_tool.sync'),
        'performance': logging.getLogger('vkgl_tool.performance'),
    }
    loggers['main'].debug(f"Logging initialized - Level: {log_level}")
    return loggers


def get_logger(name: str) -> logging.Logger:
    """Get a logger below the package logger."""
    return logging.getLogger(f"vkgl_tool.{name}")


class LogTimer:
    """Context manager that logs how long an operation took."""
    
    def __init__(self, operation: str, logger: Optional[logging.Logger] = None):
        self.operation = operation
        self.logger = logger or logging.getLogger('vkgl_tool.performance')
        self.start_time: Optional[float] = None
        self.elapsed = 0.0
    
    def __enter__(self):
        self.start_time = time.monotonic()
        return self
    
    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed = time.monotonic() - self.start_time
        if exc_type is None:
            self.logger.debug(f"{self.operation} completed in {self.elapsed:.2f}s")
        else:
            self.logger.debug(f"{self.operation} failed after {self.elapsed:.2f}s")
