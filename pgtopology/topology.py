"""
pgtopology - topology discovery

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pgtopology.common_types import NodeRecord, ServerState
from pgtopology.context import CommandContext
from pgtopology.errors import SplitBrainError
from pgtopology.pgutil import close_connection, Connection, describe_connection, fetch_one
from pgtopology.registry import get_node_records

import psycopg2

log = getLogger("Topology")


def is_standby(conn: Connection | None) -> ServerState:
    """Ask the server whether it is in recovery.

    A lost or failing connection is reported as ``UNREACHABLE`` instead of
    raising, callers decide whether to retry or to give up.
    """
    if conn is None or conn.closed:
        return ServerState.UNREACHABLE
    try:
        row = fetch_one(conn, "SELECT pg_catalog.pg_is_in_recovery() AS in_recovery")
    except psycopg2.Error as ex:
        log.warning("%s (%s) checking recovery state", ex.__class__.__name__, str(ex).strip())
        return ServerState.UNREACHABLE
    if row is None:
        return ServerState.UNREACHABLE
    return ServerState.STANDBY if row["in_recovery"] else ServerState.PRIMARY


def locate_primary(
    ctx: CommandContext, conn: Connection, exclude_node_id: int | None = None
) -> tuple[Connection, NodeRecord] | None:
    """Probe every active registered node and return a connection to the primary.

    The registry is read through ``conn``. Every node is probed so that two
    nodes claiming to be primary are detected, in which case
    :class:`SplitBrainError` is raised and no connection is left open.
    ``exclude_node_id`` leaves one node, usually the caller itself, unprobed.
    """
    records = [
        record
        for record in get_node_records(conn, ctx.schema, ctx.cluster_name, include_witness=False)
        if record["active"] and record["id"] != exclude_node_id
    ]
    primaries: list[tuple[Connection, NodeRecord]] = []
    for record in records:
        log.info("Checking role of cluster node %r (%s)", record["id"], describe_connection(record["conninfo"]))
        node_conn = ctx.connect(record["conninfo"], required=False)
        state = is_standby(node_conn)
        if state is ServerState.PRIMARY and node_conn is not None:
            primaries.append((node_conn, record))
            continue
        if state is ServerState.UNREACHABLE:
            log.info("Node %r is unreachable, skipping it", record["id"])
        close_connection(node_conn)

    if len(primaries) > 1:
        for node_conn, _ in primaries:
            close_connection(node_conn)
        raise SplitBrainError([record["id"] for _, record in primaries])
    if not primaries:
        log.info("No reachable primary found in cluster %r", ctx.cluster_name)
        return None

    primary_conn, primary_record = primaries[0]
    log.info("Node %r is the current primary", primary_record["id"])
    return primary_conn, primary_record
