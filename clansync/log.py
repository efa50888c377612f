# clansync/log.py

import logging
from typing import Optional

from clansync.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None, verbose: bool = False) -> None:
    """Configure root logging for CLI and web entry points."""
    if verbose:
        resolved = logging.DEBUG
    else:
        name = (level or get_settings().log_level or "INFO").upper()
        resolved = getattr(logging, name, None)
        if not isinstance(resolved, int):
            resolved = logging.INFO
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
