"""
pgtopology - witness server creation

A witness is a standalone instance that never replicates, it only keeps a
copy of the primary's node registry.

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pathlib import Path
from pgtopology.clone import create_pg_dir
from pgtopology.common_types import NO_UPSTREAM_NODE, NodeRecord, ServerState
from pgtopology.context import CommandContext
from pgtopology.default import APPLICATION_NAME, DEFAULT_DBNAME, WITNESS_PORT, WITNESS_SUPERUSER
from pgtopology.errors import ConfigError, DBConnectionError, ERR_BAD_SSH, ExternalCommandError, QueryError
from pgtopology.pgutil import close_connection, Connection, create_connection_string, execute, get_pg_setting, query_errors
from pgtopology.registry import copy_node_records, create_node_record, create_schema
from pgtopology.topology import is_standby
from pgtopology.upstream import check_server_version
from psycopg2 import sql

log = getLogger("Witness")


def append_witness_config(data_dir: str | Path, port: str, shared_library: str = "") -> None:
    lines = ["", f"# Configuration added by {APPLICATION_NAME}", f"port = {port}"]
    if shared_library:
        lines.append(f"shared_preload_libraries = '{shared_library}'")
    lines.append("listen_addresses = '*'")
    conf_path = Path(data_dir) / "postgresql.conf"
    try:
        with conf_path.open("a") as fp:
            fp.write("\n".join(lines) + "\n")
    except OSError as ex:
        raise ConfigError(f"Could not open {str(conf_path)!r} for adding extra config: {ex}") from ex


def create_witness_role(conn: Connection, username: str) -> None:
    # superuser until the schema and its functions exist, dropped at the end
    log.info("Creating role %r for the witness database", username)
    with query_errors(f"Can't create user {username!r} for witness server"):
        execute(conn, sql.SQL("CREATE ROLE {} SUPERUSER LOGIN").format(sql.Identifier(username)))


def create_witness_database(conn: Connection, dbname: str, owner: str) -> None:
    log.info("Creating database %r owned by %r for the witness", dbname, owner)
    with query_errors(f"Can't create database {dbname!r} for witness server"):
        execute(
            conn,
            sql.SQL("CREATE DATABASE {} OWNER {}").format(sql.Identifier(dbname), sql.Identifier(owner)),
        )


def witness_create(ctx: CommandContext) -> NodeRecord:
    """Initialize, start and register a witness server, then mirror the registry into it."""
    dest_dir = ctx.options.get("dest_dir", "")
    if not dest_dir:
        raise ConfigError("WITNESS CREATE needs a destination directory (-D)")
    superuser = ctx.options.get("superuser") or WITNESS_SUPERUSER
    local_port = ctx.options.get("local_port") or WITNESS_PORT
    username = ctx.options.get("username", "")
    dbname = ctx.options.get("dbname", "")
    host = ctx.upstream_host
    remote_user = ctx.options.get("remote_user") or None
    shared_library = ctx.config.get("shared_library", "")
    service = ctx.tools.service

    primary_conn = ctx.connect_upstream(required=True)
    assert primary_conn is not None
    admin_conn = None
    witness_conn = None
    try:
        check_server_version(primary_conn, "primary", strict=True)
        state = is_standby(primary_conn)
        if state is ServerState.STANDBY:
            raise ConfigError("The command should not run on a standby node")
        if state is ServerState.UNREACHABLE:
            raise DBConnectionError("Connection to node lost")
        log.info("Successfully connected to primary")

        if not ctx.tools.probe.is_reachable(host, remote_user):
            raise ExternalCommandError(f"Aborting, remote host {host} is not reachable", ERR_BAD_SSH)

        create_pg_dir(dest_dir, ctx.force)

        log.info("Initializing cluster for witness in %r", dest_dir)
        if service.init(dest_dir, superuser, password_prompt=not ctx.options.get("initdb_no_pwprompt", False)) != 0:
            raise ExternalCommandError("Can't initialize cluster for witness server")
        append_witness_config(dest_dir, local_port, shared_library)
        if service.start(dest_dir) != 0:
            raise ExternalCommandError("Can't start cluster for witness server")

        create_role = bool(username) and username != superuser
        if create_role or (dbname and dbname != DEFAULT_DBNAME):
            admin_conn = ctx.connect(
                create_connection_string({"port": local_port, "user": superuser, "dbname": DEFAULT_DBNAME}),
                required=True,
            )
            assert admin_conn is not None
            if create_role:
                create_witness_role(admin_conn, username)
            if dbname and dbname != DEFAULT_DBNAME:
                create_witness_database(admin_conn, dbname, username or superuser)
            close_connection(admin_conn)

        hba_file = get_pg_setting(primary_conn, "hba_file")
        if not hba_file:
            raise QueryError("Can't get info about pg_hba.conf")
        if ctx.tools.secure_copy.copy(host, remote_user, hba_file, dest_dir, delete=ctx.force) != 0:
            raise ExternalCommandError("Can't rsync the pg_hba.conf file from primary", ERR_BAD_SSH)
        if service.reload(dest_dir) != 0:
            raise ExternalCommandError("Can't reload cluster for witness server")

        record = create_node_record(
            primary_conn,
            ctx.schema,
            node_id=ctx.node_id,
            node_type="witness",
            upstream_node_id=NO_UPSTREAM_NODE,
            cluster=ctx.cluster_name,
            name=ctx.node_name,
            conninfo=ctx.conninfo,
            priority=ctx.config.get("priority", 0),
            action="witness create",
        )

        witness_conn = ctx.connect_local(required=True)
        assert witness_conn is not None
        log.info("Starting copy of configuration from primary")
        create_schema(witness_conn, ctx.schema, shared_library)
        copy_node_records(primary_conn, witness_conn, ctx.schema, ctx.cluster_name)

        if create_role:
            log.info("Dropping superuser powers of role %r on the witness", username)
            with query_errors("Cannot alter user privileges"):
                execute(witness_conn, sql.SQL("ALTER ROLE {} NOSUPERUSER").format(sql.Identifier(username)))
    finally:
        close_connection(admin_conn)
        close_connection(witness_conn)
        close_connection(primary_conn)

    log.info("Configuration has been successfully copied to the witness")
    return record
