"""Shared logging for the review store, coordinator and CLI.

- Everything goes to stderr so stdout stays clean for `--json` output
- Debug messages only with --verbose
- Colored output when stderr is a terminal
"""

import sys
import traceback
from typing import Any


class Logger:
    """Simple stderr logger.

    Attributes:
        verbose: If True, DEBUG messages are printed
        use_colors: If True, use ANSI color codes
        quiet: If True, INFO messages are suppressed (library default)
    """

    def __init__(self, verbose: bool = False, use_colors: bool = True, quiet: bool = False) -> None:
        self.verbose = verbose
        self.use_colors = use_colors and sys.stderr.isatty()
        self.quiet = quiet

    def _colorize(self, text: str, color_code: str) -> str:
        """Wrap text in an ANSI color code when colors are enabled."""
        if not self.use_colors:
            return text
        return f"\033[{color_code}m{text}\033[0m"

    def _emit(self, text: str) -> None:
        print(text, file=sys.stderr)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message (only if verbose enabled).

        Args:
            message: Message to log
            **kwargs: Additional key-value pairs to include
        """
        if not self.verbose:
            return

        formatted = self._colorize(f"DEBUG: {message}", "36")  # Cyan
        if kwargs:
            details = " ".join(f"{k}={v!r}" for k, v in kwargs.items())
            formatted += f" ({details})"

        self._emit(formatted)

    def info(self, message: str) -> None:
        if self.quiet:
            return
        self._emit(self._colorize(message, "37"))  # White

    def warning(self, message: str) -> None:
        self._emit(self._colorize(f"Warning: {message}", "33"))  # Yellow

    def error(self, message: str, suggestion: str | None = None) -> None:
        """Log error message with optional suggestion.

        Args:
            message: Error message to log
            suggestion: Optional suggestion for fixing the error
        """
        self._emit(self._colorize(f"Error: {message}", "31"))  # Red

        if suggestion:
            self._emit(self._colorize(f"  -> {suggestion}", "33"))

    def exception(self, message: str, exc: BaseException) -> None:
        """Log exception, with traceback in verbose mode.

        Args:
            message: Context message
            exc: Exception to log
        """
        self.error(f"{message}: {exc}")

        if self.verbose:
            tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            self._emit(self._colorize(tb, "90"))  # Gray


# Process-wide logger (configured by the CLI)
_logger: Logger | None = None


def init_logger(verbose: bool = False, use_colors: bool = True) -> Logger:
    """Initialize the global logger.

    Args:
        verbose: Enable debug output
        use_colors: Enable ANSI color codes

    Returns:
        Logger instance
    """
    global _logger
    _logger = Logger(verbose=verbose, use_colors=use_colors)
    return _logger


def get_logger() -> Logger:
    """Get the global logger, creating a quiet default when none is configured.

    Library callers (tests, editor integrations) never call init_logger, so
    warnings and errors still reach stderr while info and debug stay silent.
    """
    global _logger
    if _logger is None:
        _logger = Logger(quiet=True)
    return _logger
