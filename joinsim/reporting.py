"""User-visible progress reporting with an always-on diagnostic log."""

from __future__ import annotations

import logging
import sys
from typing import Callable, TextIO

logger = logging.getLogger("joinsim.report")

# ANSI colors
GREEN = '\033[0;32m'
YELLOW = '\033[1;33m'
RED = '\033[0;31m'
BLUE = '\033[0;34m'
NC = '\033[0m'


class Reporter:
    """Routes progress, warnings and errors to the user channel and the log.

    Progress, warning and error messages reach the user channel only in
    verbose mode; summaries always do. Everything is mirrored to the
    ``joinsim.report`` logger regardless of verbosity.
    """

    def __init__(
        self,
        verbose: bool = False,
        emit: Callable[[str], None] | None = None,
        stream: TextIO | None = None,
        color: bool | None = None,
    ):
        self.verbose = verbose
        self._stream = stream or sys.stdout
        if color is None:
            color = emit is None and self._stream.isatty()
        self._color = color
        self._emit = emit or self._print

    def for_run(self, verbose: bool) -> "Reporter":
        """A reporter with its own verbosity, writing to the same channel."""
        return Reporter(verbose=verbose, emit=self._emit, stream=self._stream, color=self._color)

    def _print(self, message: str) -> None:
        print(message, file=self._stream, flush=True)

    def _format(self, color: str, message: str) -> str:
        if self._color:
            return f"{color}[joinsim]{NC} {message}"
        return f"[joinsim] {message}"

    def progress(self, message: str) -> None:
        logger.info("progress verbose=%s message=%s", self.verbose, message)
        if self.verbose:
            self._emit(self._format(GREEN, message))

    def warn(self, message: str) -> None:
        logger.warning("warning verbose=%s message=%s", self.verbose, message)
        if self.verbose:
            self._emit(self._format(YELLOW, message))

    def error(self, message: str, exc: BaseException | None = None) -> None:
        if exc is not None:
            logger.error("error message=%s exception=%s: %s", message, type(exc).__name__, exc)
        else:
            logger.error("error message=%s", message)
        if self.verbose:
            self._emit(self._format(RED, message))

    def summary(self, message: str) -> None:
        """Always shown, whatever the verbosity."""
        logger.info("summary message=%s", message)
        self._emit(self._format(BLUE, message))
