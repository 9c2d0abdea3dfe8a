from __future__ import annotations

import logging
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

from er_core.bootstrap.startup import initialize_database
from er_core.config import DB_FILE, LOG_DIR, ensure_runtime_dirs, settings
from er_core.container import build_container

PACKAGE_DIR = Path(__file__).resolve().parent


def _setup_logging() -> Path:
    log_path = LOG_DIR / "er_core.log"
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    file_handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(stream_handler)
    # a broken handler must never break a request
    logging.raiseExceptions = False
    return log_path


def _install_exception_hook() -> None:
    def _handle_exception(exc_type, exc, tb) -> None:
        logging.getLogger(__name__).error("Unhandled exception", exc_info=(exc_type, exc, tb))
        sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = _handle_exception


def _wait_for_shutdown() -> None:
    stop = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logging.getLogger(__name__).info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    while not stop.wait(1.0):
        pass


def main() -> int:
    ensure_runtime_dirs()
    log_path = _setup_logging()
    _install_exception_hook()
    logger = logging.getLogger(__name__)
    logger.info("er-core starting; log file %s", log_path)

    if not initialize_database(
        root_dir=PACKAGE_DIR,
        db_file=DB_FILE,
        database_url=settings.database_url,
        log_dir=LOG_DIR,
    ):
        return 1

    container = build_container()
    container.start_background()
    try:
        _wait_for_shutdown()
    finally:
        container.stop_background()
    logger.info("er-core stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
