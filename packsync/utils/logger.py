"""
Logger Mixin - Unified log handling for the install/update engine
Every message goes to the module logger and, if set, to the user's log stream
"""

import logging
from typing import Callable, Optional


class LoggerMixin:
    """
    Mixin that provides logging functionality for engine components

    Usage:
        class MyComponent(LoggerMixin):
            def __init__(self, log_callback=None):
                self.logger = logging.getLogger(__name__)
                self.log_callback = log_callback
    """

    # Log type -> logging level
    LOG_LEVELS = {
        "normal": logging.INFO,
        "info": logging.INFO,
        "success": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    # Prefixes used in the human-readable stream
    LOG_MARKERS = {
        "normal": "",
        "info": "",
        "success": "[OK] ",
        "warning": "⚠ ",
        "error": "✗ ",
    }

    logger: logging.Logger = logging.getLogger("packsync")
    log_callback: Optional[Callable[[str], None]] = None

    def _log(self, message: str, log_type: str = "normal"):
        """
        Adds a message to the log with the appropriate level

        Args:
            message: The message to add
            log_type: Log type (normal, info, success, warning, error)
        """
        if log_type not in self.LOG_LEVELS:
            log_type = "normal"

        self.logger.log(self.LOG_LEVELS[log_type], message)

        if self.log_callback:
            self.log_callback(f"{self.LOG_MARKERS[log_type]}{message}\n")

    def _log_step(self, step: int, total: int, title: str):
        """Adds a "Step x/y" header to the log"""
        self._log(f"Step {step}/{total}: {title}", "info")


def configure_logging(verbose: bool = False):
    """Configures root logging for command line use"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    # Per-logger tweaks (reduce noise)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
