import datetime
import logging
import os
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# index is the --log-level number
LOG_LEVELS = (logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL)


def log_level(verbosity: int) -> int:
    """Logging level for a --log-level number; anything out of range means INFO."""
    if 0 <= verbosity < len(LOG_LEVELS):
        return LOG_LEVELS[verbosity]
    return logging.INFO


def archive_previous_log(log_file: str) -> Optional[str]:
    """
    Move the log of an earlier poller run out of the way.

    The archived name carries the time the old log was last written, so
    one file per run is kept. Returns the archived path, or None if there
    was nothing to move.
    """
    if not os.path.isfile(log_file):
        return None
    stamp = datetime.datetime.fromtimestamp(os.path.getmtime(log_file)).strftime("%Y%m%d-%H%M%S")
    base, ext = os.path.splitext(log_file)
    target = f"{base}.{stamp}{ext}"
    suffix = 1
    while os.path.exists(target):
        target = f"{base}.{stamp}.{suffix}{ext}"
        suffix += 1
    os.replace(log_file, target)
    return target


def setup_logging(log_file: Optional[str] = None, level: int = 1) -> Optional[str]:
    """Configure the root logger for a poller run; asyncua is kept at WARNING."""
    archived = None
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        archived = archive_previous_log(log_file)
        logging.basicConfig(filename=log_file, format=LOG_FORMAT, level=log_level(level), force=True)
    else:
        logging.basicConfig(format=LOG_FORMAT, level=log_level(level), force=True)
    logging.getLogger('asyncua').setLevel(logging.WARNING)
    if archived:
        logging.info(f"setup_logging: Previous log moved to {archived}")
    return archived
