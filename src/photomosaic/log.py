from __future__ import annotations

import logging
import os
import time
from pathlib import Path

from rich.logging import RichHandler


LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

# Third-party loggers that are chatty at INFO/DEBUG.
_NOISY = ("matplotlib", "PIL", "astropy")


def _resolve_level(level: str | None) -> str:
    if level is None:
        level = os.environ.get("PHOTOMOSAIC_LOG_LEVEL", "INFO")
    level = str(level).upper().strip()
    return level if level in LEVELS else "INFO"


def setup_logging(level: str | None = None, *, log_file: str | Path | None = None) -> None:
    """Console logging through RichHandler, optionally mirrored to a file.

    ``level`` falls back to ``PHOTOMOSAIC_LOG_LEVEL``, then INFO. Calling it
    again replaces the handlers, it never stacks them.
    """

    level = _resolve_level(level)
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        if isinstance(h, logging.FileHandler):
            h.close()

    handlers: list[logging.Handler] = [
        RichHandler(
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            show_path=False,
            omit_repeated_times=False,
        )
    ]
    if log_file is not None:
        p = Path(log_file)
        p.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(p, encoding="utf-8")
        fh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        handlers.append(fh)

    logging.basicConfig(level=level, format="%(message)s", datefmt="[%H:%M:%S]", handlers=handlers)
    for name in _NOISY:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))


class timer:
    """Context timer for pipeline stages; ``elapsed`` holds seconds afterwards.

    Example:
        with timer("fit channel 0"):
            ...
    """

    def __init__(self, name: str, logger: logging.Logger | None = None, level: int = logging.INFO):
        self.name = name
        self.logger = logger or logging.getLogger("photomosaic")
        self.level = level
        self.t0 = 0.0
        self.elapsed = 0.0

    def __enter__(self):
        self.t0 = time.perf_counter()
        self.logger.log(self.level, "▶ %s…", self.name)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed = time.perf_counter() - self.t0
        if exc is None:
            self.logger.log(self.level, "✓ %s (%.2f s)", self.name, self.elapsed)
            return False
        self.logger.error("✗ %s FAILED (%.2f s): %s", self.name, self.elapsed, exc)
        return False
