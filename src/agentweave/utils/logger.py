from __future__ import annotations

import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """Configure the ``agentweave`` logger tree. Safe to call more than once."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger("agentweave")
    root.setLevel(numeric_level)

    if not any(getattr(h, "_agentweave", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        handler._agentweave = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("filelock").setLevel(logging.WARNING)
