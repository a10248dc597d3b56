import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.highlighter import ReprHighlighter
from rich.logging import RichHandler
from rich.text import Text

from muscle_redundancy.config import LOGGING

SESSION_START_BANNER = "―" * 20 + " NEW SESSION STARTED " + "―" * 20


def _remove_handlers(logger: logging.Logger, *, predicate) -> None:
    """Remove and close all handlers on `logger` for which `predicate(handler)` is True."""
    for h in list(logger.handlers):
        if predicate(h):
            logger.removeHandler(h)
            h.close()


def _make_rotating_handler(path: Path, level: int, fmt: logging.Formatter) -> RotatingFileHandler:
    """Create a RotatingFileHandler writing to `path` at `level` with `fmt`."""
    fh = RotatingFileHandler(
        filename=str(path),
        maxBytes=LOGGING.max_bytes,
        backupCount=LOGGING.backup_count,
        encoding="utf-8",
    )
    fh.setLevel(level)
    fh.setFormatter(fmt)
    return fh


def _console_handler_pred(h: logging.Handler) -> bool:
    return isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)


class BacktickPathHighlighter(ReprHighlighter):
    # Detect a backtick-delimited chunk
    _DELIM = re.compile(r"`(?P<body>[^`]+)`")
    # What "looks like a path" inside the delimiter
    _PATH = re.compile(r"^(?:~|/|[A-Za-z]:\\)[\w.\- /\\]+$")

    def highlight(self, text: Text) -> None:
        super().highlight(text)

        s = text.plain
        for m in self._DELIM.finditer(s):
            body = m.group("body").strip()
            if self._PATH.match(body):
                # style only the inner content (no bleed)
                text.stylize("repr.path", m.start("body"), m.end("body"))


class _DropFileOnlyOnConsole(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return not getattr(record, "file_only", False)


def enable_logging_handlers(
    file_level: Optional[int] = None,
    console_level: Optional[int] = None,
    pkg_console_levels: Optional[dict[str, int]] = None,
    logs_dir: Optional[str | Path] = None,
) -> Path:
    """Attach a rich console handler and a rotating file handler to the root logger.

    Returns the path of the log file.
    """
    file_lvl: int = file_level or LOGGING.file_level
    console_lvl: int = console_level or LOGGING.console_level
    pkg_ns = getattr(LOGGING, "pkg_console_levels", None)
    pkg_console_lvls = pkg_console_levels or (vars(pkg_ns) if pkg_ns is not None else {})
    console_fmt = logging.Formatter(LOGGING.console_format_str)
    file_fmt = logging.Formatter(LOGGING.file_format_str)

    logs_dir = Path(logs_dir or LOGGING.logs_dir).resolve()
    logs_dir.mkdir(parents=True, exist_ok=True)
    root_log = logs_dir / "muscle_redundancy.log"

    root = logging.getLogger()
    root.setLevel(min(file_lvl, console_lvl))

    # Replace any handler writing to the same file, e.g. from an earlier call
    _remove_handlers(
        root,
        predicate=lambda h: isinstance(h, RotatingFileHandler)
        and Path(h.baseFilename).resolve() == root_log,
    )
    root.addHandler(_make_rotating_handler(root_log, file_lvl, file_fmt))
    root.info(SESSION_START_BANNER, extra={"file_only": True})

    _remove_handlers(root, predicate=_console_handler_pred)
    console_h = RichHandler(level=console_lvl, highlighter=BacktickPathHighlighter())
    console_h.setFormatter(console_fmt)
    console_h.addFilter(_DropFileOnlyOnConsole())
    root.addHandler(console_h)

    # Per-package levels, e.g. to quieten jax
    for pkg, lvl in pkg_console_lvls.items():
        logging.getLogger(pkg).setLevel(lvl)

    root.info("Logging to `%s`", root_log)

    logging.captureWarnings(True)

    return root_log
