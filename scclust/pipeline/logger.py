"""Structured logging for pipeline runs."""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from ..io.logging import DATE_FORMAT, LOG_FORMAT, log_json, log_yaml, run_log_path


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for terminal output."""

    def __init__(self, fmt: str, datefmt: str, colors: dict):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        original = record.levelname
        color = self.colors.get(original, self.colors["RESET"])
        record.levelname = f"{color}{original}{self.colors['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class PipelineLogger:
    """Console and file logging for a pipeline run.

    The logger is named ``scclust`` by default, so records from every
    engine's module logger (``scclust.core...``) reach its handlers.
    Stage summaries are also appended as JSON lines next to the log file.

    Parameters
    ----------
    log_dir : str or Path, optional
        Directory for log files; None logs to the console only
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str
        Logger name. Default: "scclust"
    console : bool
        Attach a colored stdout handler

    Example
    -------
    >>> logger = PipelineLogger("logs/", log_level="INFO")
    >>> logger.setup()
    >>> logger.log_stage_start("qc", "Quality control")
    >>> logger.log_stage_complete("qc", 1.2)
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
        log_dir: Optional[str] = None,
        log_level: str = "INFO",
        log_name: str = "scclust",
        console: bool = True,
    ):
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.log_file: Optional[Path] = None
        self.records_file: Optional[Path] = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.log_file = run_log_path(self.log_dir)
            self.records_file = self.log_file.with_suffix(".stages.jsonl")

        level = getattr(logging, log_level.upper(), None)
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {log_level}")
        self.log_level = level
        self.console = console
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)

    def setup(self) -> None:
        """Replace the logger's handlers with file and console handlers."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        if self.log_file is not None:
            file_handler = logging.FileHandler(self.log_file, mode="w", encoding="utf-8")
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(self._get_file_formatter())
            self.logger.addHandler(file_handler)

        if self.console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(self._get_console_formatter())
            self.logger.addHandler(console_handler)

    def _get_file_formatter(self) -> logging.Formatter:
        return logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    def _get_console_formatter(self) -> logging.Formatter:
        return ColoredFormatter(
            fmt="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
            colors=self.COLORS,
        )

    def log_stage_start(self, stage_id: str, stage_name: str) -> None:
        self.logger.info("=" * 60)
        self.logger.info("Starting stage %s: %s", stage_id, stage_name)

    def log_stage_complete(
        self,
        stage_id: str,
        duration: float,
        summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log a committed stage and append its summary record.

        Parameters
        ----------
        stage_id : str
            Stage identifier
        duration : float
            Execution time in seconds
        summary : dict, optional
            Stage-specific numbers (cells kept, clusters found, ...)
        """
        self.logger.info(
            "Stage %s committed in %s", stage_id, self.format_duration(duration)
        )
        if self.records_file is not None:
            log_json(
                self.records_file,
                {"stage": stage_id, "duration": round(duration, 3), **(summary or {})},
            )

    def log_config(self, config: Dict[str, Any]) -> None:
        """Write the resolved run configuration to the log as YAML."""
        log_yaml(self.log_file, config, logger=self.logger)

    def log_stage_error(self, stage_id: str, error: str) -> None:
        self.logger.error("Stage %s failed: %s", stage_id, error)

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
        """Format a duration, e.g. "45.2s", "1m 23s", "2h 15m"."""
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
