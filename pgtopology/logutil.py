"""
pgtopology - logging formats and utility functions

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Final

import logging

LOG_FORMAT: Final[str] = "%(asctime)s\t%(name)s\t%(levelname)s\t%(message)s"
LOG_FORMAT_SHORT: Final[str] = "%(levelname)s\t%(message)s"
LOG_FORMAT_SYSLOG: Final[str] = "%(name)s %(levelname)s: %(message)s"


def set_syslog_handler(address: str, facility: str | int, logger: logging.Logger) -> SysLogHandler:
    if isinstance(facility, str):
        facility_id: int = SysLogHandler.facility_names.get(facility, SysLogHandler.LOG_LOCAL0)
    else:
        facility_id = facility
    syslog_handler = SysLogHandler(address=address, facility=facility_id)
    logger.addHandler(syslog_handler)
    formatter = logging.Formatter(LOG_FORMAT_SYSLOG)
    syslog_handler.setFormatter(formatter)
    return syslog_handler


def set_file_handler(path: Path, logger: logging.Logger) -> logging.FileHandler:
    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)
    return file_handler


def configure_logging(level: int = logging.WARNING, short_log: bool = True) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT_SHORT if short_log else LOG_FORMAT)


def effective_level(level: int, verbose: bool) -> int:
    """``--verbose`` makes sure at least INFO messages are shown."""
    if verbose:
        return min(level, logging.INFO)
    return level
