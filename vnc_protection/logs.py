import logging
import os
import sys

from concurrent_log_handler import ConcurrentRotatingFileHandler

PACKAGE_LOGGER = "vnc_protection"
AUDIT_LOGGER = "vnc_protection.audit"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 10


def _reset_handlers(logger):
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _rotating_handler(path):
    log_dir = os.path.dirname(path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    return ConcurrentRotatingFileHandler(
        path,
        "a",
        LOG_MAX_BYTES,
        LOG_BACKUPS,
        encoding="utf-8"
    )


def setup_logging(logfile, debug_print=False, level="INFO"):
    logger = logging.getLogger(PACKAGE_LOGGER)
    _reset_handlers(logger)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    formatter = logging.Formatter(
        "[%(asctime)s] [%(process)d] %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    if logfile:
        handler = _rotating_handler(logfile)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    if debug_print:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        logger.addHandler(stream)
    logger.propagate = False
    return logger


def setup_audit_log(path):
    """
    The audit trail records every ban, unban, allow-list change and
    sub-threshold failure, one timestamped line each. It is separate from
    the protected service's own authentication log.
    """
    logger = logging.getLogger(AUDIT_LOGGER)
    _reset_handlers(logger)
    logger.setLevel(logging.INFO)
    if path:
        handler = _rotating_handler(path)
        handler.setFormatter(logging.Formatter("%(asctime)s: %(message)s", datefmt="%a %b %d %H:%M:%S %Y"))
        logger.addHandler(handler)
    logger.propagate = True
    return logger
