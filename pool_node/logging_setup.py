import logging
from typing import Optional

import coloredlogs

LOG_FORMAT = "%(asctime)s %(name)s[%(process)d] %(levelname)s %(message)s"
DEFAULT_LEVEL = logging.INFO

# Third-party loggers held above DEBUG; the template wait loop makes
# aiosqlite very chatty
QUIET_LOGGERS = {
    "aiosqlite": logging.INFO,
    "asyncio": logging.INFO,
    "aiohttp.access": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def resolve_level(value) -> Optional[int]:
    """
    Turn a configured log level into a logging constant.

    Accepts a level name in any case, a numeric level, or a bool
    (the VERBOSE flag: True is DEBUG). Returns None for anything else.
    """
    if isinstance(value, bool):
        return logging.DEBUG if value else DEFAULT_LEVEL
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).strip().upper())
    return level if isinstance(level, int) else None


def setup_logging(log_level="INFO", quiet_loggers=QUIET_LOGGERS) -> logging.Logger:
    level = resolve_level(log_level)
    invalid = level is None
    if invalid:
        level = DEFAULT_LEVEL

    coloredlogs.install(level=level, fmt=LOG_FORMAT, milliseconds=True)
    logging.getLogger().setLevel(level)
    for name, floor in quiet_loggers.items():
        logging.getLogger(name).setLevel(max(floor, level))

    logger = logging.getLogger("Pool-Node")
    if invalid:
        logger.warning("Unknown log level %r, using INFO", log_level)
    return logger
