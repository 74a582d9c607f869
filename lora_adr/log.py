"""
Controller logging. Lines carry a [CTRL] tag; per-message detail is emitted at
DEBUG level and only shown when ADR_DEBUG=1 or --debug is given.
"""
from __future__ import annotations
from typing import Optional
import logging
import os
import sys

LOG_FORMAT = "[%(asctime)s] %(levelname)s [CTRL] %(name)s: %(message)s"


def debug_enabled() -> bool:
    return os.environ.get("ADR_DEBUG", "0") == "1"


def setup_logging(debug: Optional[bool] = None, log_file: Optional[str] = None) -> None:
    if debug is None:
        debug = debug_enabled()
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO,
                        format=LOG_FORMAT, handlers=handlers, force=True)
