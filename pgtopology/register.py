"""
pgtopology - node registration

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pgtopology.common_types import NO_UPSTREAM_NODE, NodeRecord, ServerState
from pgtopology.context import CommandContext
from pgtopology.errors import ConfigError, DBConnectionError, SchemaExistsError
from pgtopology.pgutil import close_connection, Connection, mask_connection_info
from pgtopology.registry import check_cluster_schema, create_node_record, create_schema, delete_node_record
from pgtopology.topology import is_standby, locate_primary
from pgtopology.upstream import check_server_version, require_matching_versions

log = getLogger("Register")


def _require_state(conn: Connection, expected: ServerState, message: str) -> None:
    state = is_standby(conn)
    if state is ServerState.UNREACHABLE:
        raise DBConnectionError("Connection to node lost")
    if state is not expected:
        raise ConfigError(message)


def master_register(ctx: CommandContext) -> NodeRecord:
    """Register the local node as the cluster's primary, creating the registry schema if needed.

    An existing schema is only touched with ``--force``: the node's own record
    is replaced, provided no other node is primary.
    """
    conn = ctx.connect_local(required=True)
    assert conn is not None
    try:
        log.info("Connected to primary, checking its state")
        check_server_version(conn, "primary", strict=True)
        _require_state(conn, ServerState.PRIMARY, "Trying to register a standby node as a primary")

        if not check_cluster_schema(conn, ctx.schema):
            create_schema(conn, ctx.schema, ctx.config.get("shared_library", ""))
        elif not ctx.force:
            raise SchemaExistsError(f"Schema {ctx.schema!r} already exists")
        else:
            found = locate_primary(ctx, conn, exclude_node_id=ctx.node_id)
            if found is not None:
                other_conn, other_record = found
                close_connection(other_conn)
                raise ConfigError(
                    f"There is a primary already in cluster {ctx.cluster_name!r} (node {other_record['id']})"
                )
            delete_node_record(conn, ctx.schema, ctx.node_id)

        record = create_node_record(
            conn,
            ctx.schema,
            node_id=ctx.node_id,
            node_type="primary",
            upstream_node_id=NO_UPSTREAM_NODE,
            cluster=ctx.cluster_name,
            name=ctx.node_name,
            conninfo=ctx.conninfo,
            priority=ctx.config.get("priority", 0),
            action="master register",
        )
    finally:
        close_connection(conn)

    log.info(
        "Primary node correctly registered for cluster %r with id %d (conninfo: %s)",
        ctx.cluster_name,
        ctx.node_id,
        mask_connection_info(ctx.conninfo),
    )
    return record


def standby_register(ctx: CommandContext) -> NodeRecord:
    """Register the local standby in the primary's registry."""
    log.info("Connecting to standby database")
    conn = ctx.connect_local(required=True)
    assert conn is not None
    primary_conn = None
    try:
        standby_version_num = check_server_version(conn, "standby", strict=True)
        _require_state(conn, ServerState.STANDBY, f"This node should be a standby ({mask_connection_info(ctx.conninfo)})")

        if not check_cluster_schema(conn, ctx.schema):
            raise ConfigError(f"Schema {ctx.schema!r} doesn't exist")

        log.info("Connecting to primary database")
        found = locate_primary(ctx, conn)
        if found is None:
            raise ConfigError("A primary must be defined before configuring a standby")
        primary_conn, _ = found

        primary_version_num = check_server_version(primary_conn, "primary", strict=True)
        require_matching_versions(primary_version_num, standby_version_num)

        log.info("Registering the standby")
        if ctx.force:
            delete_node_record(primary_conn, ctx.schema, ctx.node_id)
        record = create_node_record(
            primary_conn,
            ctx.schema,
            node_id=ctx.node_id,
            node_type="standby",
            upstream_node_id=ctx.config.get("upstream_node", NO_UPSTREAM_NODE),
            cluster=ctx.cluster_name,
            name=ctx.node_name,
            conninfo=ctx.conninfo,
            priority=ctx.config.get("priority", 0),
            slot_name=ctx.slot_name,
            action="standby register",
        )
    finally:
        close_connection(primary_conn)
        close_connection(conn)

    log.info(
        "Standby node correctly registered for cluster %r with id %d (conninfo: %s)",
        ctx.cluster_name,
        ctx.node_id,
        mask_connection_info(ctx.conninfo),
    )
    return record
