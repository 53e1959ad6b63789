"""
pgtopology - node registry

The registry lives in a per-cluster schema on the current primary. Mutating
operations must be given a connection to the primary, a witness only ever
receives a full copy through :func:`copy_node_records`.

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pgtopology.common_types import NO_UPSTREAM_NODE, NodeRecord, NodeType
from pgtopology.default import SCHEMA_PREFIX
from pgtopology.errors import ConfigError
from pgtopology.pgutil import Connection, execute, fetch_all, fetch_one, query_errors
from psycopg2 import sql
from typing import cast, Final

log = getLogger("Registry")

CREATE_NODES_TABLE: Final[str] = """
CREATE TABLE {schema}.repl_nodes (
  id               INTEGER PRIMARY KEY,
  type             TEXT    NOT NULL CHECK (type IN ('primary', 'standby', 'witness')),
  upstream_node_id INTEGER NULL REFERENCES {schema}.repl_nodes (id),
  cluster          TEXT    NOT NULL,
  name             TEXT    NOT NULL,
  conninfo         TEXT    NOT NULL,
  slot_name        TEXT    NULL,
  priority         INTEGER NOT NULL,
  active           BOOLEAN NOT NULL DEFAULT TRUE
)
"""

CREATE_MONITOR_TABLE: Final[str] = """
CREATE TABLE {schema}.repl_monitor (
  primary_node                   INTEGER NOT NULL,
  standby_node                   INTEGER NOT NULL,
  last_monitor_time              TIMESTAMP WITH TIME ZONE NOT NULL,
  last_apply_time                TIMESTAMP WITH TIME ZONE,
  last_wal_primary_location      TEXT NOT NULL,
  last_wal_standby_location      TEXT,
  replication_lag                BIGINT NOT NULL,
  apply_lag                      BIGINT NOT NULL
)
"""

CREATE_MONITOR_INDEX: Final[str] = """
CREATE INDEX idx_repl_status_sort ON {schema}.repl_monitor (last_monitor_time, standby_node)
"""

CREATE_STATUS_VIEW: Final[str] = """
CREATE VIEW {schema}.repl_status AS
  SELECT m.primary_node, m.standby_node, n.name AS standby_name,
         n.type AS node_type, n.active, m.last_monitor_time,
         CASE WHEN n.type = 'standby' THEN m.last_wal_primary_location ELSE NULL END AS last_wal_primary_location,
         m.last_wal_standby_location,
         CASE WHEN n.type = 'standby' THEN pg_catalog.pg_size_pretty(m.replication_lag) ELSE NULL END AS replication_lag,
         CASE WHEN n.type = 'standby' THEN pg_catalog.age(pg_catalog.now(), m.last_apply_time) ELSE NULL END
           AS replication_time_lag,
         CASE WHEN n.type = 'standby' THEN pg_catalog.pg_size_pretty(m.apply_lag) ELSE NULL END AS apply_lag,
         pg_catalog.age(pg_catalog.now(),
                        CASE WHEN pg_catalog.pg_is_in_recovery() THEN {schema}.get_last_updated()
                             ELSE m.last_monitor_time END) AS communication_time_lag
    FROM {schema}.repl_monitor m
    JOIN {schema}.repl_nodes n ON m.standby_node = n.id
   WHERE (m.standby_node, m.last_monitor_time) IN (
           SELECT m1.standby_node, MAX(m1.last_monitor_time)
             FROM {schema}.repl_monitor m1 GROUP BY 1
         )
"""

# Liveness functions backed by a native library loaded through shared_preload_libraries
NATIVE_FUNCTIONS: Final[tuple[tuple[str, str], ...]] = (
    ("update_last_updated()", "TIMESTAMP WITH TIME ZONE"),
    ("get_last_updated()", "TIMESTAMP WITH TIME ZONE"),
    ("update_standby_location(text)", "BOOLEAN"),
    ("get_last_standby_location()", "TEXT"),
)

CREATE_SQL_LAST_UPDATED: Final[str] = """
CREATE FUNCTION {schema}.get_last_updated() RETURNS TIMESTAMP WITH TIME ZONE
  AS 'SELECT pg_catalog.pg_last_xact_replay_timestamp()'
  LANGUAGE sql STABLE
"""


def schema_name(cluster: str) -> str:
    return f"{SCHEMA_PREFIX}{cluster}"


def _format(statement: str, schema: str) -> sql.Composed:
    return sql.SQL(statement).format(schema=sql.Identifier(schema))


def check_cluster_schema(conn: Connection, schema: str) -> bool:
    with query_errors(f"Unable to check for schema {schema!r}"):
        row = fetch_one(conn, "SELECT 1 AS found FROM pg_catalog.pg_namespace WHERE nspname = %s", (schema,))
    if row:
        log.debug("Schema %r exists", schema)
        return True
    return False


def create_schema(conn: Connection, schema: str, shared_library: str = "") -> None:
    """Create the registry schema, its tables, index, status view and liveness functions."""
    log.info("Creating database objects inside the %r schema", schema)
    with query_errors(f"Cannot create the schema {schema!r}"):
        execute(conn, sql.SQL("CREATE SCHEMA {}").format(sql.Identifier(schema)))

    with query_errors(f"Cannot create the liveness functions in {schema!r}"):
        if shared_library:
            for signature, return_type in NATIVE_FUNCTIONS:
                symbol = signature.split("(", 1)[0]
                execute(
                    conn,
                    sql.SQL("CREATE FUNCTION {schema}.{signature} RETURNS {return_type} AS %s, %s LANGUAGE C STRICT").format(
                        schema=sql.Identifier(schema),
                        signature=sql.SQL(signature),
                        return_type=sql.SQL(return_type),
                    ),
                    (f"$libdir/{shared_library}", symbol),
                )
        else:
            execute(conn, _format(CREATE_SQL_LAST_UPDATED, schema))

    for statement, what in (
        (CREATE_NODES_TABLE, "table repl_nodes"),
        (CREATE_MONITOR_TABLE, "table repl_monitor"),
        (CREATE_STATUS_VIEW, "view repl_status"),
        (CREATE_MONITOR_INDEX, "index on repl_monitor"),
    ):
        log.debug("Creating %s in %r", what, schema)
        with query_errors(f"Cannot create the {what} in {schema!r}"):
            execute(conn, _format(statement, schema))


def get_primary_node_id(conn: Connection, schema: str, cluster: str) -> int | None:
    with query_errors("Unable to look up the primary node id"):
        row = fetch_one(
            conn,
            _format(
                "SELECT id FROM {schema}.repl_nodes WHERE cluster = %s AND type = 'primary' AND active ORDER BY id LIMIT 1",
                schema,
            ),
            (cluster,),
        )
    return int(row["id"]) if row else None


def get_node_records(conn: Connection, schema: str, cluster: str, include_witness: bool = True) -> list[NodeRecord]:
    """Registry rows of ``cluster`` in registry order: active nodes first, then primaries, then by priority and id."""
    query = """
        SELECT id, type, upstream_node_id, cluster, name, conninfo, slot_name, priority, active
          FROM {schema}.repl_nodes
         WHERE cluster = %s
    """
    if not include_witness:
        query += " AND type <> 'witness' "
    query += """
      ORDER BY active DESC,
               CASE type WHEN 'primary' THEN 1 WHEN 'standby' THEN 2 ELSE 3 END,
               priority DESC,
               id
    """
    with query_errors("Can't get nodes information, have you registered them?"):
        rows = fetch_all(conn, _format(query, schema), (cluster,))
    return cast(list[NodeRecord], rows)


def create_node_record(
    conn: Connection,
    schema: str,
    *,
    node_id: int,
    node_type: NodeType,
    upstream_node_id: int | None,
    cluster: str,
    name: str,
    conninfo: str,
    priority: int = 0,
    slot_name: str | None = None,
    active: bool = True,
    action: str = "register",
) -> NodeRecord:
    """Insert a node record.

    A standby registered with ``NO_UPSTREAM_NODE`` gets the cluster's current
    primary as its upstream.
    """
    if upstream_node_id == NO_UPSTREAM_NODE:
        if node_type == "standby":
            upstream_node_id = get_primary_node_id(conn, schema, cluster)
            if upstream_node_id is None:
                raise ConfigError(f"No active primary registered in cluster {cluster!r} to use as upstream node")
        else:
            upstream_node_id = None

    record = NodeRecord(
        id=node_id,
        type=node_type,
        upstream_node_id=upstream_node_id,
        cluster=cluster,
        name=name,
        conninfo=conninfo,
        slot_name=slot_name if node_type == "standby" else None,
        priority=priority,
        active=active,
    )
    query = _format(
        "INSERT INTO {schema}.repl_nodes (id, type, upstream_node_id, cluster, name, conninfo, slot_name, priority, active) "
        "VALUES (%(id)s, %(type)s, %(upstream_node_id)s, %(cluster)s, %(name)s, %(conninfo)s, "
        "%(slot_name)s, %(priority)s, %(active)s)",
        schema,
    )
    log.debug("%s: inserting node record %r", action, record)
    with query_errors("Cannot insert node details"):
        execute(conn, query, record)
    return record


def delete_node_record(conn: Connection, schema: str, node_id: int) -> int:
    with query_errors("Cannot delete node details"):
        deleted = execute(conn, _format("DELETE FROM {schema}.repl_nodes WHERE id = %s", schema), (node_id,))
    log.debug("Deleted %r record(s) for node %r", deleted, node_id)
    return deleted


def update_upstream_node(conn: Connection, schema: str, node_id: int, upstream_node_id: int | None) -> None:
    with query_errors(f"Cannot update upstream node of node {node_id}"):
        execute(
            conn,
            _format("UPDATE {schema}.repl_nodes SET upstream_node_id = %s WHERE id = %s", schema),
            (upstream_node_id, node_id),
        )


def copy_node_records(source: Connection, target: Connection, schema: str, cluster: str) -> list[NodeRecord]:
    """Replace the target's registry with the source's rows for ``cluster``.

    Rows are inserted without upstream links first and linked afterwards so
    the self-reference holds whatever order the rows come in.
    """
    records = get_node_records(source, schema, cluster)
    with query_errors("Cannot clean node details in the target registry"):
        execute(target, _format("TRUNCATE TABLE {schema}.repl_nodes", schema))

    for record in records:
        create_node_record(
            target,
            schema,
            node_id=record["id"],
            node_type=record["type"],
            upstream_node_id=None,
            cluster=record["cluster"],
            name=record["name"],
            conninfo=record["conninfo"],
            priority=record["priority"],
            slot_name=record["slot_name"],
            active=record["active"],
            action="copy registry",
        )
    for record in records:
        if record["upstream_node_id"] is not None:
            update_upstream_node(target, schema, record["id"], record["upstream_node_id"])
    log.info("Copied %d node records of cluster %r", len(records), cluster)
    return records
