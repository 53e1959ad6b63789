"""
pgtopology - standby promotion

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pgtopology.common_types import PromoteOutcome, ServerState
from pgtopology.context import CommandContext
from pgtopology.default import PROMOTE_CHECK_INTERVAL, PROMOTE_CHECK_TIMEOUT
from pgtopology.errors import ConfigError, DBConnectionError, ERR_NO_RESTART, ExternalCommandError, PromotionRefused
from pgtopology.pgutil import close_connection, get_pg_setting
from pgtopology.topology import is_standby, locate_primary
from pgtopology.upstream import check_server_version

import time

log = getLogger("Promote")


def wait_for_promotion(ctx: CommandContext, timeout: int, interval: int) -> PromoteOutcome:
    """Poll the local node until it reports itself as primary or ``timeout`` runs out.

    At most ``timeout / interval`` probes are made. A lost connection is
    reopened on the next probe, the outcome reflects the last observation.
    """
    if interval <= 0:
        raise ConfigError(f"promote_check_interval must be positive, got {interval!r}")

    log.info("Reconnecting to the promoted server")
    conn = ctx.connect_local(required=False)
    state = ServerState.UNREACHABLE
    probes = max(timeout // interval, 1)
    try:
        for probe in range(probes):
            if probe:
                time.sleep(interval)
            if conn is None or conn.closed:
                close_connection(conn)
                conn = ctx.connect_local(required=False)
            state = is_standby(conn)
            log.debug("Node state after %d seconds: %s", probe * interval, state.value)
            if state is ServerState.PRIMARY:
                return PromoteOutcome.PROMOTED
    finally:
        close_connection(conn)

    if state is ServerState.STANDBY:
        return PromoteOutcome.STILL_STANDBY
    return PromoteOutcome.UNREACHABLE


def standby_promote(ctx: CommandContext) -> PromoteOutcome:
    """Promote the local standby once no other registered node is primary."""
    log.info("Connecting to standby database")
    conn = ctx.connect_local(required=True)
    assert conn is not None
    try:
        check_server_version(conn, "standby", strict=True)
        state = is_standby(conn)
        if state is ServerState.PRIMARY:
            raise PromotionRefused("The command should be executed on a standby node")
        if state is ServerState.UNREACHABLE:
            raise DBConnectionError("Connection to node lost")

        found = locate_primary(ctx, conn)
        if found is not None:
            primary_conn, primary_record = found
            close_connection(primary_conn)
            raise PromotionRefused(
                "This cluster already has an active primary server "
                f"(node {primary_record['id']}, {primary_record['name']!r})"
            )

        data_dir = get_pg_setting(conn, "data_directory")
        if not data_dir:
            raise ConfigError("Unable to determine data directory")
    finally:
        close_connection(conn)

    log.info("Promoting standby in %r", data_dir)
    if ctx.tools.service.promote(data_dir) != 0:
        raise ExternalCommandError("Unable to promote server from standby to primary", ERR_NO_RESTART)

    outcome = wait_for_promotion(
        ctx,
        int(ctx.config.get("promote_check_timeout", PROMOTE_CHECK_TIMEOUT)),
        int(ctx.config.get("promote_check_interval", PROMOTE_CHECK_INTERVAL)),
    )
    if outcome is PromoteOutcome.PROMOTED:
        log.info("STANDBY PROMOTE successful. You should REINDEX any hash indexes you have.")
    elif outcome is PromoteOutcome.STILL_STANDBY:
        log.error("STANDBY PROMOTE failed, this is still a standby node")
    else:
        log.error("STANDBY PROMOTE not confirmed, connection to node lost")
    return outcome
