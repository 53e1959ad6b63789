"""
pgtopology - point a standby at the current primary

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pgtopology.common_types import NodeRecord, ServerState
from pgtopology.context import CommandContext
from pgtopology.default import MASTER_RESPONSE_TIMEOUT, PRIMARY_WAIT_INTERVAL
from pgtopology.errors import ConfigError, DBConnectionError, ERR_NO_RESTART, ExternalCommandError
from pgtopology.pgutil import close_connection, get_pg_setting, is_pgup
from pgtopology.recovery import create_recovery_file
from pgtopology.registry import update_upstream_node
from pgtopology.topology import is_standby, locate_primary
from pgtopology.upstream import check_server_version, require_matching_versions

import time

log = getLogger("Follow")


def standby_follow(ctx: CommandContext) -> NodeRecord:
    """Re-point the local standby at the current primary and restart it."""
    log.info("Connecting to standby database")
    conn = ctx.connect_local(required=True)
    assert conn is not None
    primary_conn = None
    try:
        standby_version_num = check_server_version(conn, "standby", strict=True)
        state = is_standby(conn)
        if state is ServerState.PRIMARY:
            raise ConfigError("The command should be executed in a standby node")
        if state is ServerState.UNREACHABLE:
            raise DBConnectionError("Connection to node lost")

        wait = bool(ctx.options.get("wait"))
        response_timeout = float(ctx.config.get("master_response_timeout", MASTER_RESPONSE_TIMEOUT))
        wait_interval = float(ctx.config.get("primary_wait_interval", PRIMARY_WAIT_INTERVAL))
        log.info("Discovering the current primary")
        while True:
            if not is_pgup(conn, response_timeout):
                close_connection(conn)
                conn = ctx.connect_local(required=True)
                assert conn is not None
            found = locate_primary(ctx, conn)
            if found is not None or not wait:
                break
            log.info("No primary available yet, retrying in %.1f seconds", wait_interval)
            time.sleep(wait_interval)
        if found is None:
            raise ConfigError("There isn't a primary to follow in this cluster")
        primary_conn, primary_record = found

        state = is_standby(primary_conn)
        if state is ServerState.STANDBY:
            raise ConfigError(f"The node to follow ({primary_record['name']!r}) should be a primary")
        if state is ServerState.UNREACHABLE:
            raise DBConnectionError(f"Connection to the primary ({primary_record['name']!r}) lost")

        primary_version_num = check_server_version(primary_conn, "primary", strict=True)
        require_matching_versions(primary_version_num, standby_version_num)

        # the live connection knows where the primary really is, the registry may be stale
        host = primary_conn.info.host or ""
        port = str(primary_conn.info.port or "")
        user = primary_conn.info.user or ""

        update_upstream_node(primary_conn, ctx.schema, ctx.node_id, primary_record["id"])

        data_dir = get_pg_setting(conn, "data_directory")
        if not data_dir:
            raise ConfigError("Unable to determine data directory")
    finally:
        close_connection(primary_conn)
        close_connection(conn)

    log.info("Changing the standby's primary to node %r (%s:%s)", primary_record["id"], host, port)
    create_recovery_file(ctx, data_dir, host=host, port=port, user=user, server_version_num=standby_version_num)

    log.info("Restarting server in %r", data_dir)
    if ctx.tools.service.restart(data_dir) != 0:
        raise ExternalCommandError("Can't restart server", ERR_NO_RESTART)
    return primary_record
