from __future__ import annotations

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def init_logger(name: str = "extem", level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach console (and optional file) handlers to `name` once.
    Child loggers such as "extem.em" propagate here.
    """
    log = logging.getLogger(name)
    lvl = getattr(logging, level.upper(), logging.INFO)
    log.setLevel(lvl)
    # Avoid adding multiple handlers on repeated runs
    if not log.handlers:
        fmt = logging.Formatter(LOG_FORMAT)
        ch = logging.StreamHandler()
        ch.setLevel(lvl)
        ch.setFormatter(fmt)
        log.addHandler(ch)
        if log_file:
            fh = logging.FileHandler(log_file)
            fh.setLevel(lvl)
            fh.setFormatter(fmt)
            log.addHandler(fh)
    return log
