# Copied from https://github.com/ohmu/ohmu_common_py ohmu_common_py/pgutil.py version 0.0.1-0-unknown-fa54b44
"""
pgtopology - postgresql utility functions

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from contextlib import contextmanager
from logging import getLogger
from pgtopology.default import APPLICATION_NAME
from pgtopology.errors import DBConnectionError, QueryError
from psycopg2 import sql
from psycopg2.extras import RealDictCursor
from typing import Any, cast, Final, Iterator, Literal, TypedDict
from urllib.parse import parse_qs, urlparse  # pylint: disable=no-name-in-module, import-error

import psycopg2
import psycopg2.extensions

log = getLogger("pgutil")

Connection = psycopg2.extensions.connection

COMPARISON_OPERATORS: Final[frozenset[str]] = frozenset(["=", "<>", ">", ">=", "<", "<="])
SETTING_CASTS: Final[frozenset[str]] = frozenset(["integer", "bigint"])


class ConnectionParameterKeywords(TypedDict, total=False):
    """Parameter Keywords for Connection.

    Only the keywords this tool reads or writes are listed, libpq accepts more.

    See:
        https://www.postgresql.org/docs/current/libpq-connect.html#LIBPQ-PARAMKEYWORDS
    """

    host: str
    hostaddr: str
    port: str
    dbname: str
    user: str
    password: str
    passfile: str
    connect_timeout: str
    application_name: str
    fallback_application_name: str
    sslmode: Literal["disable", "allow", "prefer", "require", "verify-ca", "verify-full"]
    replication: Literal["true", "on", "yes", "1", "database", "false", "off", "no", "0"]
    target_session_attrs: Literal["any", "read-write", "read-only", "primary", "standby", "prefer-standby"]


def create_connection_string(connection_info: ConnectionParameterKeywords | dict[str, Any]) -> str:
    return str(psycopg2.extensions.make_dsn(**connection_info))


def mask_connection_info(info: str) -> str:
    masked_info = get_connection_info(info)
    password = masked_info.pop("password", None)
    connection_string = create_connection_string(masked_info)
    message = "no password" if password is None else "hidden password"
    return f"{connection_string}; {message}"


def get_connection_info(info: str | ConnectionParameterKeywords) -> ConnectionParameterKeywords:
    """Get a normalized connection info dict from a connection string or a dict.

    Supports both the traditional libpq format and the new url format.
    """
    if isinstance(info, dict):
        return parse_connection_string_libpq(create_connection_string(info))
    if info.startswith("postgres://") or info.startswith("postgresql://"):
        return parse_connection_string_url(info)
    return parse_connection_string_libpq(info)


def parse_connection_string_url(url: str) -> ConnectionParameterKeywords:
    # drop scheme from the url as some versions of urlparse don't handle
    # query and path properly for urls with a non-http scheme
    schemeless_url = url.split(":", 1)[1]
    p = urlparse(schemeless_url)
    fields = {}
    if p.hostname:
        fields["host"] = p.hostname
    if p.port:
        fields["port"] = str(p.port)
    if p.username:
        fields["user"] = p.username
    if p.password is not None:
        fields["password"] = p.password
    if p.path and p.path != "/":
        fields["dbname"] = p.path[1:]
    for k, v in parse_qs(p.query).items():
        fields[k] = v[-1]
    return cast(ConnectionParameterKeywords, fields)


def parse_connection_string_libpq(connection_string: str) -> ConnectionParameterKeywords:
    """Parse a postgresql connection string.

    See:
        http://www.postgresql.org/docs/current/static/libpq-connect.html#LIBPQ-CONNSTRING
    """
    fields = {}
    while True:
        connection_string = connection_string.strip()
        if not connection_string:
            break
        if "=" not in connection_string:
            raise ValueError(f"expecting key=value format in connection_string fragment {connection_string!r}")
        key, rem = connection_string.split("=", 1)
        key = key.strip()
        rem = rem.lstrip()
        if rem.startswith("'"):
            asis, value = False, ""
            for i in range(1, len(rem)):
                if asis:
                    value += rem[i]
                    asis = False
                elif rem[i] == "'":
                    break  # end of entry
                elif rem[i] == "\\":
                    asis = True
                else:
                    value += rem[i]
            else:
                raise ValueError(f"invalid connection_string fragment {rem!r}")
            connection_string = rem[i + 1 :]  # pylint: disable=undefined-loop-variable
        else:
            res = rem.split(None, 1)
            if len(res) > 1:
                value, connection_string = res
            else:
                value, connection_string = rem, ""
        fields[key] = value
    return cast(ConnectionParameterKeywords, fields)


def quote_connection_value(value: str) -> str:
    """Quote a single libpq keyword value if it needs it."""
    if value and not any(c in value for c in " '\\\t\n"):
        return value
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def describe_connection(conninfo: str, **params: str) -> str:
    """Masked form of a connection target for log messages, never raises."""
    try:
        return mask_connection_info(psycopg2.extensions.make_dsn(conninfo, **params))
    except (ValueError, psycopg2.Error):
        return params.get("host") or "invalid connection string"


def connect(conninfo: str, *, required: bool = True, **params: str) -> Connection | None:
    """Open an autocommit connection.

    When ``required`` is set a failure raises :class:`DBConnectionError`,
    otherwise it is logged and ``None`` is returned so callers can branch on it.
    A malformed connection string fails the same way as an unreachable server.
    """
    params.setdefault("fallback_application_name", APPLICATION_NAME)
    target = describe_connection(conninfo, **params)
    try:
        log.debug("Connecting to %s", target)
        conn = psycopg2.connect(dsn=conninfo, **params)
    except psycopg2.Error as ex:
        if required:
            raise DBConnectionError(f"Connection to database failed ({target}): {str(ex).strip()}") from ex
        log.warning("%s (%s) connecting to %s", ex.__class__.__name__, str(ex).strip(), target)
        return None
    conn.autocommit = True
    return conn


def close_connection(conn: Connection | None) -> None:
    if conn is not None and not conn.closed:
        conn.close()


def fetch_one(conn: Connection, query: str | sql.Composable, params: Any = None) -> dict[str, Any] | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute(query, params)
        return cursor.fetchone()


def fetch_all(conn: Connection, query: str | sql.Composable, params: Any = None) -> list[dict[str, Any]]:
    with conn.cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute(query, params)
        return list(cursor.fetchall())


def execute(conn: Connection, query: str | sql.Composable, params: Any = None) -> int:
    with conn.cursor() as cursor:
        cursor.execute(query, params)
        return cursor.rowcount


def get_server_version(conn: Connection) -> tuple[int, str]:
    """Return the numeric and the human readable server version, e.g. ``(90401, "9.4.1")``."""
    row = fetch_one(
        conn,
        "SELECT pg_catalog.current_setting('server_version_num') AS server_version_num, "
        "pg_catalog.current_setting('server_version') AS server_version",
    )
    if not row:
        return 0, ""
    return int(row["server_version_num"]), str(row["server_version"])


def get_pg_setting(conn: Connection, name: str) -> str | None:
    try:
        row = fetch_one(conn, "SELECT setting FROM pg_catalog.pg_settings WHERE name = %s", (name,))
    except psycopg2.Error as ex:
        log.error("Unable to read setting %r: %s", name, str(ex).strip())
        return None
    if not row:
        log.error("Setting %r not found", name)
        return None
    return str(row["setting"])


def guc_set(conn: Connection, name: str, op: str, value: str, value_type: str | None = None) -> bool | None:
    """Compare a server setting against ``value``.

    Returns ``None`` when the setting could not be read at all.
    """
    if op not in COMPARISON_OPERATORS:
        raise ValueError(f"Unsupported comparison operator {op!r}")
    if value_type is None:
        query = sql.SQL("SELECT true AS matches FROM pg_catalog.pg_settings WHERE name = %s AND setting {} %s").format(
            sql.SQL(op)
        )
    else:
        if value_type not in SETTING_CASTS:
            raise ValueError(f"Unsupported setting type {value_type!r}")
        query = sql.SQL(
            "SELECT true AS matches FROM pg_catalog.pg_settings WHERE name = %s AND setting::{cast} {op} %s::{cast}"
        ).format(cast=sql.SQL(value_type), op=sql.SQL(op))
    try:
        row = fetch_one(conn, query, (name, value))
    except psycopg2.Error as ex:
        log.error("Unable to check setting %r: %s", name, str(ex).strip())
        return None
    return bool(row and row["matches"])


def guc_in(conn: Connection, name: str, values: list[str]) -> bool | None:
    try:
        row = fetch_one(
            conn,
            "SELECT true AS matches FROM pg_catalog.pg_settings WHERE name = %s AND setting = ANY(%s)",
            (name, values),
        )
    except psycopg2.Error as ex:
        log.error("Unable to check setting %r: %s", name, str(ex).strip())
        return None
    return bool(row and row["matches"])


def is_pgup(conn: Connection | None, timeout: float) -> bool:
    """Check that an existing connection still answers within ``timeout`` seconds."""
    if conn is None or conn.closed:
        return False
    try:
        execute(conn, "SET statement_timeout = %s", (int(timeout * 1000),))
        fetch_one(conn, "SELECT 1 AS alive")
    except psycopg2.Error as ex:
        log.warning("%s (%s) checking that the server is up", ex.__class__.__name__, str(ex).strip())
        return False
    return True


def get_cluster_size(conn: Connection) -> str | None:
    try:
        row = fetch_one(
            conn,
            "SELECT pg_catalog.pg_size_pretty(SUM(pg_catalog.pg_database_size(oid))::bigint) AS cluster_size "
            "FROM pg_catalog.pg_database",
        )
    except psycopg2.Error as ex:
        log.error("Unable to determine the installation size: %s", str(ex).strip())
        return None
    return row["cluster_size"] if row else None


@contextmanager
def query_errors(message: str) -> Iterator[None]:
    """Turn a failing statement into a :class:`QueryError` carrying ``message``."""
    try:
        yield
    except psycopg2.Error as ex:
        raise QueryError(f"{message}: {str(ex).strip()}") from ex
