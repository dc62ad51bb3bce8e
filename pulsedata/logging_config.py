"""Logging setup for the pipeline and loader CLIs.

Adapters run in worker threads named ``adapter_N``, so the thread name is part
of every line. ``configure_logging()`` is idempotent: if the root logger
already has handlers, it does nothing.
"""

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "data-collection.log"

# Per-request connection chatter from requests' transport
NOISY_LOGGERS = ("urllib3",)


def configure_logging(level: int = logging.INFO, log_dir: Optional[str] = None) -> None:
    """Attach a console handler and, when possible, a file handler to the root logger.

    The log directory defaults to ``PULSEDATA_LOG_DIR`` or ``logs``.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    log_dir = log_dir or os.environ.get("PULSEDATA_LOG_DIR", "logs")
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, LOG_FILE_NAME), mode="a")
    except OSError as e:
        root.warning(f"File logging disabled, cannot write to {log_dir}: {e}")
        return
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
