"""
pgtopology - upstream server compatibility checks

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pgtopology.common import version_epoch
from pgtopology.default import (
    MIN_SUPPORTED_VERSION,
    MIN_SUPPORTED_VERSION_NUM,
    REPLICATION_SLOTS_VERSION_NUM,
    TABLESPACE_MAPPING_VERSION_NUM,
    WAL_KEEP_SIZE_VERSION_NUM,
    WAL_SEGMENT_SIZE_MB,
)
from pgtopology.errors import ConfigError, VersionError
from pgtopology.pgutil import Connection, fetch_one, get_server_version, guc_in, guc_set, query_errors
from typing import Callable, Final

log = getLogger("Upstream")

STANDBY_WAL_LEVELS: Final[list[str]] = ["hot_standby", "replica", "logical"]
ARCHIVE_MODES: Final[list[str]] = ["on", "always"]


def format_version(server_version_num: int) -> str:
    """``90401`` -> ``9.4.1``, ``120005`` -> ``12.5``"""
    if server_version_num >= 100000:
        return f"{server_version_num // 10000}.{server_version_num % 10000}"
    major, rest = divmod(server_version_num, 10000)
    minor, patch = divmod(rest, 100)
    return f"{major}.{minor}.{patch}"


def check_server_version(conn: Connection, server_type: str, strict: bool = True) -> int:
    """Return the server version number, or -1 when it is older than supported.

    With ``strict`` an unsupported server raises :class:`VersionError` instead.
    """
    with query_errors(f"Unable to determine the {server_type} server version"):
        server_version_num, server_version = get_server_version(conn)
    if server_version_num < MIN_SUPPORTED_VERSION_NUM:
        message = f"pgtopology needs {server_type} to be PostgreSQL {MIN_SUPPORTED_VERSION} or better"
        if server_version_num > 0:
            message += f", found {server_version}"
        if strict:
            raise VersionError(message)
        log.error(message)
        return -1
    log.debug("%s server version is %s (%d)", server_type, server_version, server_version_num)
    return server_version_num


def check_versions_compatible(primary_version_num: int, standby_version_num: int) -> bool:
    # only the major version has to match, 9.4.1 can stream from 9.4.2
    return version_epoch(primary_version_num) == version_epoch(standby_version_num)


def require_matching_versions(primary_version_num: int, standby_version_num: int) -> None:
    if not check_versions_compatible(primary_version_num, standby_version_num):
        raise VersionError(
            f"pgtopology needs versions of both primary ({format_version(primary_version_num)}) "
            f"and standby ({format_version(standby_version_num)}) to match"
        )


def check_upstream_config(
    conn: Connection,
    server_version_num: int,
    *,
    use_replication_slots: bool = False,
    wal_keep_segments: str,
    strict: bool = True,
) -> bool:
    """Check that the upstream server's settings allow a standby to replicate from it.

    Every problem is logged. With ``strict`` the first problem raises
    :class:`ConfigError`, otherwise all checks run and the result tells
    whether all of them passed.
    """
    checks: list[tuple[str, Callable[[], bool | None]]] = [
        (
            "pgtopology needs parameter 'wal_level' to be set to 'hot_standby' or 'replica'",
            lambda: guc_in(conn, "wal_level", STANDBY_WAL_LEVELS),
        ),
    ]

    if use_replication_slots:
        if server_version_num < REPLICATION_SLOTS_VERSION_NUM:
            checks.append(("Server version must be 9.4 or later to enable replication slots", lambda: False))
        else:
            checks.append(
                (
                    "pgtopology needs parameter 'max_replication_slots' to be set to at least 1 "
                    "to enable replication slots",
                    lambda: guc_set(conn, "max_replication_slots", ">", "0", "integer"),
                )
            )
    elif server_version_num >= WAL_KEEP_SIZE_VERSION_NUM:
        wal_keep_size = str(int(wal_keep_segments) * WAL_SEGMENT_SIZE_MB)
        checks.append(
            (
                f"pgtopology needs parameter 'wal_keep_size' to be set to {wal_keep_size}MB or greater "
                "(see the '-w' option or edit the postgresql.conf of the upstream server)",
                lambda: guc_set(conn, "wal_keep_size", ">=", wal_keep_size, "integer"),
            )
        )
    else:
        checks.append(
            (
                f"pgtopology needs parameter 'wal_keep_segments' to be set to {wal_keep_segments} or greater "
                "(see the '-w' option or edit the postgresql.conf of the upstream server)",
                lambda: guc_set(conn, "wal_keep_segments", ">=", wal_keep_segments, "integer"),
            )
        )

    checks.extend(
        [
            (
                "pgtopology needs parameter 'archive_mode' to be set to 'on'",
                lambda: guc_in(conn, "archive_mode", ARCHIVE_MODES),
            ),
            (
                "pgtopology needs parameter 'hot_standby' to be set to 'on'",
                lambda: guc_set(conn, "hot_standby", "=", "on"),
            ),
            (
                "pgtopology needs parameter 'max_wal_senders' to be set to at least 1",
                lambda: guc_set(conn, "max_wal_senders", ">", "0", "integer"),
            ),
        ]
    )

    config_ok = True
    for message, check in checks:
        if check():
            continue
        if "wal_keep" in message and server_version_num >= REPLICATION_SLOTS_VERSION_NUM:
            log.info(
                "HINT: in PostgreSQL 9.4 and later, replication slots can be used, which do not require "
                "'wal_keep_segments' to be set to a high value (set 'use_replication_slots' in the configuration file)"
            )
        if strict:
            raise ConfigError(message)
        log.error(message)
        config_ok = False
    return config_ok


def check_tablespace_mappings(conn: Connection, server_version_num: int, tablespace_mapping: dict[str, str]) -> None:
    """Verify every mapped tablespace directory is known to the primary before taking a snapshot."""
    if not tablespace_mapping:
        return
    if server_version_num < TABLESPACE_MAPPING_VERSION_NUM:
        raise ConfigError("Configuration option 'tablespace_mapping' requires PostgreSQL 9.4 or later")
    for old_dir in tablespace_mapping:
        with query_errors("Unable to execute tablespace query"):
            row = fetch_one(
                conn,
                "SELECT spcname FROM pg_catalog.pg_tablespace WHERE pg_catalog.pg_tablespace_location(oid) = %s",
                (old_dir,),
            )
        if not row:
            raise ConfigError(f"No tablespace matching path {old_dir!r} found")
        log.debug("Tablespace %r at %r will be remapped", row["spcname"], old_dir)
