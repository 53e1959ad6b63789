"""
pgtopology - common utility functions

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

import re


def convert_xlog_location_to_offset(wal_location: str) -> int:
    log_id, offset = wal_location.split("/")
    return int(log_id, 16) << 32 | int(offset, 16)


APPLY_DELAY_RE: Final[re.Pattern[str]] = re.compile(r"^(?P<value>\d+)(?P<unit>ms|s|min|h|d)?$")


def validate_apply_delay(value: str) -> str:
    """Check a recovery apply delay such as ``5min`` and return it unchanged."""
    if not APPLY_DELAY_RE.match(value):
        raise ValueError(f"Invalid apply delay {value!r}, expected an integer with an optional ms, s, min, h or d unit")
    return value


def is_path_inside(path: str, directory: str) -> bool:
    """True if ``path`` is ``directory`` itself or located below it."""
    child = PurePosixPath(path)
    parent = PurePosixPath(directory)
    return child == parent or parent in child.parents


def version_epoch(server_version_num: int) -> int:
    # 90401 -> 904, 120005 -> 1200
    return server_version_num // 100
