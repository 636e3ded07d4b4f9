"""Logging setup shared by the serverconf command line tools."""
import logging
import sys

#: Ordinal log levels used by the settings model (public.yml ``log_level``).
LEVEL_ORDINALS = {
    "debug": 0,
    "info": 1,
    "warn": 2,
    "warning": 2,
    "error": 3,
}
DEFAULT_LEVEL_NAME = "info"

_ORDINAL_TO_LEVEL = {
    0: logging.DEBUG,
    1: logging.INFO,
    2: logging.WARNING,
    3: logging.ERROR,
}


def level_from_ordinal(ordinal: int) -> int:
    """Map a settings ordinal (0-3) to a stdlib logging level."""
    return _ORDINAL_TO_LEVEL.get(ordinal, logging.INFO)


def setup_logging(level: int = logging.INFO, name: str = "serverconf") -> logging.Logger:
    """Attach a single stderr handler to the serverconf logger tree."""
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        formatter = logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
