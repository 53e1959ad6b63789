"""
pgtopology - replication lag history

Samples are written by an external monitoring process, this module only
offers the insert helper it can use, the status view reader and pruning.

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pgtopology.common import convert_xlog_location_to_offset
from pgtopology.common_types import MonitorSample
from pgtopology.pgutil import Connection, execute, fetch_all, query_errors
from psycopg2 import sql
from typing import Any

log = getLogger("Monitor")


def insert_sample(conn: Connection, schema: str, sample: MonitorSample) -> MonitorSample:
    """Append one lag sample, deriving byte lags from the WAL locations if needed."""
    row = MonitorSample(**sample)  # type: ignore[typeddict-item]
    primary_offset = convert_xlog_location_to_offset(row["last_wal_primary_location"])
    standby_location = row.get("last_wal_standby_location")
    standby_offset = convert_xlog_location_to_offset(standby_location) if standby_location else primary_offset
    row.setdefault("replication_lag", max(primary_offset - standby_offset, 0))
    row.setdefault("apply_lag", 0)
    row.setdefault("last_apply_time", None)
    row.setdefault("last_wal_standby_location", None)

    query = sql.SQL(
        "INSERT INTO {schema}.repl_monitor (primary_node, standby_node, last_monitor_time, last_apply_time, "
        "last_wal_primary_location, last_wal_standby_location, replication_lag, apply_lag) "
        "VALUES (%(primary_node)s, %(standby_node)s, %(last_monitor_time)s, %(last_apply_time)s, "
        "%(last_wal_primary_location)s, %(last_wal_standby_location)s, %(replication_lag)s, %(apply_lag)s)"
    ).format(schema=sql.Identifier(schema))
    with query_errors("Cannot insert monitoring sample"):
        execute(conn, query, row)
    return row


def get_status(conn: Connection, schema: str) -> list[dict[str, Any]]:
    query = sql.SQL("SELECT * FROM {schema}.repl_status ORDER BY standby_node").format(schema=sql.Identifier(schema))
    with query_errors("Can't read replication status"):
        return fetch_all(conn, query)


def prune_history(conn: Connection, schema: str, keep_days: int | None) -> int:
    """Delete samples older than ``keep_days`` days, or all of them without a retention.

    Returns the number of deleted rows, -1 when the table was truncated.
    """
    if keep_days and keep_days > 0:
        query = sql.SQL(
            "DELETE FROM {schema}.repl_monitor WHERE pg_catalog.age(pg_catalog.now(), last_monitor_time) >= %s::interval"
        ).format(schema=sql.Identifier(schema))
        with query_errors("Couldn't clean history"):
            deleted = execute(conn, query, (f"{keep_days} days",))
        log.info("Deleted %d monitoring samples older than %d days", deleted, keep_days)
    else:
        with query_errors("Couldn't clean history"):
            execute(conn, sql.SQL("TRUNCATE TABLE {schema}.repl_monitor").format(schema=sql.Identifier(schema)))
        log.info("Truncated monitoring history")
        deleted = -1

    # vacuum now rather than have autovacuum kick in at an unexpected hour
    with query_errors("Couldn't vacuum monitoring history"):
        execute(conn, sql.SQL("VACUUM {schema}.repl_monitor").format(schema=sql.Identifier(schema)))
    return deleted
