"""
Logging helpers shared by the compositing pipeline.

Library modules only create loggers with ``logging.getLogger(__name__)``; applications
call ``setup_logging`` once to get timestamped console output.
"""

import logging
import time
from contextlib import contextmanager

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(level=logging.INFO):
    """
    Configures root logging with a timestamped format.

    Args:
        level (int or str): logging level (defaults to logging.INFO).

    Returns:
        logging.Logger: the LTGEEToolbox package logger.
    """
    logging.basicConfig(level=level, format=LOG_FORMAT)
    return logging.getLogger("LTGEEToolbox")


@contextmanager
def timer(task_name, log=None):
    """
    Context manager that logs the elapsed time of a block at INFO level.

    Args:
        task_name (str): descriptive name of the timed task (e.g. "Annual series 1990-2020").
        log (logging.Logger, optional): logger to use. Defaults to this module's logger.

    Example:
        >>> with timer("Medoid composites"):
        ...     series = build_series(...)
    """
    log = log or logger
    start_time = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start_time
        log.info(f"{task_name} completed in {elapsed:.2f} seconds")
