from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional, Tuple


class ReportKind(Enum):
    PER_ITERATION = "per_iteration"
    PER_INNER_ITERATION = "per_inner_iteration"


_LEVELS = {
    ReportKind.PER_ITERATION: logging.INFO,
    ReportKind.PER_INNER_ITERATION: logging.DEBUG,
}


class Reporter:
    """
    Buffers formatted progress lines and emits them through `logging` on flush.

    Per-inner-iteration lines go out at DEBUG, per-iteration lines at INFO.
    Everything that was flushed is kept in `lines`.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("nsopt")
        self._buffer: List[Tuple[ReportKind, str]] = []
        self.lines: List[str] = []

    def report(self, kind: ReportKind, fmt: str, *args) -> None:
        self._buffer.append((kind, fmt % args if args else fmt))

    def flush_buffer(self) -> None:
        for kind, line in self._buffer:
            self.logger.log(_LEVELS[kind], line)
            self.lines.append(line)
        self._buffer.clear()

    @property
    def pending(self) -> int:
        return len(self._buffer)
