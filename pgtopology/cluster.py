"""
pgtopology - cluster wide commands

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pgtopology.common_types import ServerState
from pgtopology.context import CommandContext
from pgtopology.default import WAL_KEEP_SEGMENTS
from pgtopology.errors import DBConnectionError
from pgtopology.monitor import prune_history
from pgtopology.pgutil import close_connection
from pgtopology.registry import get_node_records
from pgtopology.topology import is_standby, locate_primary
from pgtopology.upstream import check_server_version, check_upstream_config
from typing import TextIO

import sys

log = getLogger("Cluster")

ROLE_LABELS: dict[ServerState, str] = {
    ServerState.PRIMARY: "* primary",
    ServerState.STANDBY: "  standby",
    ServerState.UNREACHABLE: "  FAILED",
}


def cluster_show(ctx: CommandContext, out: TextIO | None = None) -> list[tuple[str, str]]:
    """Print the role every registered node reports right now."""
    out = out or sys.stdout
    conn = ctx.connect_local(required=True)
    assert conn is not None
    try:
        records = get_node_records(conn, ctx.schema, ctx.cluster_name)
    finally:
        close_connection(conn)

    rows = []
    print("Role      | Connection String", file=out)
    for record in records:
        node_conn = ctx.connect(record["conninfo"], required=False)
        try:
            if node_conn is None:
                role = ROLE_LABELS[ServerState.UNREACHABLE]
            elif record["type"] == "witness":
                role = "  witness"
            else:
                role = ROLE_LABELS[is_standby(node_conn)]
        finally:
            close_connection(node_conn)
        print(f"{role:<10}| {record['conninfo']}", file=out)
        rows.append((role, record["conninfo"]))
    return rows


def cluster_cleanup(ctx: CommandContext) -> int:
    """Prune the monitoring history on the current primary."""
    conn = ctx.connect_local(required=True)
    assert conn is not None
    try:
        log.info("Connecting to primary database")
        found = locate_primary(ctx, conn)
    finally:
        close_connection(conn)
    if found is None:
        raise DBConnectionError("cluster cleanup: cannot connect to primary")

    primary_conn, _ = found
    try:
        return prune_history(primary_conn, ctx.schema, ctx.options.get("keep_history", 0))
    finally:
        close_connection(primary_conn)


def check_upstream(ctx: CommandContext, out: TextIO | None = None) -> bool:
    """Report every configuration problem of the upstream server given on the command line."""
    out = out or sys.stdout
    log.info("Connecting to upstream server")
    conn = ctx.connect_upstream(required=True)
    assert conn is not None
    try:
        log.info("Connected to upstream server, checking its state")
        server_version_num = check_server_version(conn, "upstream server", strict=False)
        config_ok = check_upstream_config(
            conn,
            server_version_num,
            use_replication_slots=bool(ctx.config.get("use_replication_slots")),
            wal_keep_segments=ctx.options.get("wal_keep_segments") or WAL_KEEP_SEGMENTS,
            strict=False,
        )
    finally:
        close_connection(conn)

    if config_ok and server_version_num > 0:
        print("No configuration problems found with the upstream server", file=out)
        return True
    return False
