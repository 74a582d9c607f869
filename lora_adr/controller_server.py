#!/usr/bin/env python3
"""
Bandit ADR controller server.
The ns-3 LoRaWAN scenario connects over TCP and, for every uplink of every
end device, sends the outcome of the previously applied (SF, TP) pair; the
controller learns from it and answers with the next action id.

  python -m lora_adr.controller_server --port 5557 --policy exp3 --gamma 0.1
"""
from __future__ import annotations
from typing import Optional, Sequence
import atexit
import json
import logging
import signal
import sys

from .config import ControllerConfig, load_config
from .errors import StartupError
from .log import setup_logging
from .server import ControllerServer

logger = logging.getLogger("lora_adr.controller")


def _install_signal_handlers() -> None:
    """Log termination signals and turn them into a clean SystemExit."""
    def _handler(signum, _frame):
        logger.info("[CTRL] Received signal %d. Preparing to shut down.", signum)
        raise SystemExit(128 + signum)
    for name in ("SIGTERM", "SIGINT", "SIGHUP"):
        sig = getattr(signal, name, None)
        if sig is not None:
            signal.signal(sig, _handler)
    atexit.register(lambda: logger.info("[CTRL] Controller exiting."))


def run_server(cfg: ControllerConfig) -> int:
    try:
        server = ControllerServer(cfg)
    except ValueError as exc:
        raise StartupError(f"cannot build controller: {exc}") from exc
    try:
        server.bind()
    except StartupError:
        server.dispatcher.shutdown()
        raise
    logger.debug("[CTRL] config %s", json.dumps(cfg.to_dict()))
    try:
        server.serve_forever()
    finally:
        server.stop()
        server.dispatcher.log_summary()
        server.dispatcher.shutdown()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        cfg = load_config(argv)
    except StartupError as exc:
        setup_logging()
        logger.error("[CTRL] %s", exc)
        return 1
    setup_logging(cfg.debug, cfg.log_file)
    _install_signal_handlers()
    try:
        return run_server(cfg)
    except StartupError as exc:
        logger.error("[CTRL] startup failed: %s", exc)
        return 1
    except (KeyboardInterrupt, SystemExit):
        logger.info("[CTRL] stopped.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
