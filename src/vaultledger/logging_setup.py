from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()

_NOISY = ("httpx", "httpcore", "hpack", "uvicorn.access")


def configure_logging(level: str | int = "INFO") -> None:
    """Route stdlib logging through rich. Safe to call more than once."""
    root = logging.getLogger()
    for h in list(root.handlers):
        if isinstance(h, RichHandler):
            root.removeHandler(h)
    handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False,
                          log_time_format="[%X]")
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(level if isinstance(level, int) else level.upper())
    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)
