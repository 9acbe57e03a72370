"""Structured logging for pipeline execution."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for console output."""

    def __init__(self, fmt: str, datefmt: str, colors: dict):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        levelname = record.levelname
        color = self.colors.get(levelname, self.colors["RESET"])
        reset = self.colors["RESET"]
        record.levelname = f"{color}{levelname}{reset}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class PipelineLogger:
    """File and console logging for a pipeline run.

    The file log is detailed and persistent; the console log is colored
    and concise. Stage events carry the sample id so interleaved
    per-sample runs stay readable.

    Parameters
    ----------
    log_dir : str
        Directory for log files
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str, optional
        Logger name. Default: "singlecell_refinery"
    console : bool
        Also log to stdout

    Example
    -------
    >>> logger = PipelineLogger("logs/", log_level="INFO")
    >>> logger.setup()
    >>> logger.log_stage_start("B", "Cell QC", sample_id="donor1")
    >>> logger.log_stage_complete("B", 12.4, sample_id="donor1")
    """

    COLORS = {
        "DEBUG": "\033[0;36m",  # Cyan
        "INFO": "\033[0;34m",  # Blue
        "WARNING": "\033[1;33m",  # Yellow
        "ERROR": "\033[0;31m",  # Red
        "CRITICAL": "\033[1;31m",  # Bold Red
        "RESET": "\033[0m",
    }

    def __init__(
        self,
        log_dir: str,
        log_level: str = "INFO",
        log_name: str = "singlecell_refinery",
        console: bool = True,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = self.log_dir / f"pipeline_{timestamp}.log"

        self.log_level = getattr(logging, log_level.upper())
        self.console = console
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

    def setup(self) -> None:
        """Attach the file handler and, if enabled, the colored console handler."""
        file_handler = logging.FileHandler(self.log_file, mode="w")
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(self._get_file_formatter())
        self.logger.addHandler(file_handler)

        if self.console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(self._get_console_formatter())
            self.logger.addHandler(console_handler)

    def close(self) -> None:
        """Detach and close all handlers."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

    def _get_file_formatter(self) -> logging.Formatter:
        return logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def _get_console_formatter(self) -> logging.Formatter:
        return ColoredFormatter(
            fmt="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
            colors=self.COLORS,
        )

    @staticmethod
    def _tag(stage_id: str, sample_id: Optional[str]) -> str:
        return f"[{sample_id}] Stage {stage_id}" if sample_id else f"Stage {stage_id}"

    def log_stage_start(self, stage_id: str, stage_name: str, sample_id: Optional[str] = None) -> None:
        separator = "=" * 80
        self.logger.info(separator)
        self.logger.info("Starting %s: %s", self._tag(stage_id, sample_id), stage_name)
        self.logger.info(separator)

    def log_stage_complete(self, stage_id: str, duration: float, sample_id: Optional[str] = None) -> None:
        self.logger.info(
            "%s completed successfully in %s",
            self._tag(stage_id, sample_id),
            self.format_duration(duration),
        )

    def log_stage_error(self, stage_id: str, error: str, sample_id: Optional[str] = None) -> None:
        self.logger.error("%s failed: %s", self._tag(stage_id, sample_id), error)

    def log_info(self, message: str) -> None:
        self.logger.info(message)

    def log_warning(self, message: str) -> None:
        self.logger.warning(message)

    def log_error(self, message: str) -> None:
        self.logger.error(message)

    def log_debug(self, message: str) -> None:
        self.logger.debug(message)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format duration in seconds to human-readable string.

        Returns
        -------
        str
            Formatted string (e.g., "45.2s", "1m 23s", "2h 15m")
        """
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = int(seconds % 60)
            return f"{mins}m {secs}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            return f"{hours}h {mins}m"
