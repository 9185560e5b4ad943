"""
Per-workflow run logs and operator status lines.

Each workflow appends to its own file (``paw-core.log`` or
``paw-sessionhost.log``) with lines of the form
``<timestamp> [<level>] <message>``.  Files are opened in append mode and
never rotated or truncated here.
"""
from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

LOG_DIR = Path(os.environ.get("PAW_LOG_DIR", "logs"))
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
WORKFLOW_LOG_FILES = {
    "core": "paw-core.log",
    "sessionhost": "paw-sessionhost.log",
}

logger = logging.getLogger("paw")

_print_lock = threading.Lock()
_handler: logging.FileHandler | None = None


def configure_run_logging(workflow: str, log_dir: Path | str | None = None) -> Path:
    """Route log records to the file of *workflow*, replacing any earlier run file."""
    global _handler

    directory = Path(log_dir or LOG_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / WORKFLOW_LOG_FILES[workflow]

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
        _handler.close()

    _handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    _handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(_handler)
    root.setLevel(logging.INFO)

    # Azure SDK request logging is noise at INFO
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("azure.identity").setLevel(logging.WARNING)

    return log_path


def status(tag: str, message: str, level: int = logging.INFO) -> None:
    """Print a ``[TAG] message`` line for the operator and record it in the run log.

    Printing is serialized so lines from concurrent host provisioning do not
    interleave.
    """
    with _print_lock:
        print(f"[{tag}] {message}", flush=True)
    logger.log(level, message)
