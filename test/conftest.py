"""
pgtopology - test configuration

Copyright (c) 2016 Ohmu Ltd
See LICENSE for details
"""
# pylint: disable=protected-access
from __future__ import annotations

from pathlib import Path
from pgtopology import logutil
from pgtopology.config import Config, RuntimeOptions
from pgtopology.context import CommandContext
from pgtopology.errors import DBConnectionError
from psycopg2 import sql
from textwrap import dedent
from types import SimpleNamespace
from typing import Any, Callable, Final, Generator
from unittest.mock import Mock, patch

import os
import psycopg2
import pytest
import re
import shutil
import signal
import subprocess
import time

PG_VERSIONS: Final[list[str]] = ["16", "15", "14", "13", "12"]
GUC_COMPARISON_RE: Final[re.Pattern[str]] = re.compile(r"setting(?:::\w+)? (=|<>|>=|<=|>|<) %s")

logutil.configure_logging()


def query_text(query: Any) -> str:
    """Flatten a query composed with ``psycopg2.sql`` without a live connection."""
    if isinstance(query, sql.Composed):
        return "".join(query_text(part) for part in query.seq)
    if isinstance(query, sql.SQL):
        return query.string
    if isinstance(query, sql.Identifier):
        return ".".join(f'"{name}"' for name in query.strings)
    if isinstance(query, sql.Literal):
        return repr(query.wrapped)
    return str(query)


Response = Any  # rows, callable(query, params) -> rows, or an exception to raise


class FakeCursor:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn
        self.rows: list[dict[str, Any]] = []
        self.rowcount = -1

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, *args: Any) -> None:
        pass

    def execute(self, query: Any, params: Any = None) -> None:
        if self.conn.closed:
            raise psycopg2.InterfaceError("connection already closed")
        text = query_text(query)
        self.conn.queries.append((text, params))
        response = self.conn.find_response(text)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(text, params)
        self.rows = list(response or [])
        self.rowcount = len(self.rows)

    def fetchone(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None

    def fetchall(self) -> list[dict[str, Any]]:
        return self.rows


class FakeConnection:
    """Scripted stand-in for a psycopg2 connection.

    Responses are matched by substring against the executed query, the most
    recently added match wins. Unmatched statements return no rows.
    """

    def __init__(self, *, host: str = "", port: int = 5432, user: str = "postgres") -> None:
        self.responses: list[tuple[str, Response]] = []
        self.queries: list[tuple[str, Any]] = []
        self.closed = 0
        self.autocommit = True
        self.info = SimpleNamespace(host=host, port=port, user=user)

    def respond(self, pattern: str, response: Response) -> FakeConnection:
        self.responses.append((pattern, response))
        return self

    def find_response(self, text: str) -> Response:
        for pattern, response in reversed(self.responses):
            if pattern in text:
                return response
        return []

    def cursor(self, cursor_factory: Any = None) -> FakeCursor:  # pylint: disable=unused-argument
        return FakeCursor(self)

    def close(self) -> None:
        self.closed = 1

    def executed(self, pattern: str) -> list[tuple[str, Any]]:
        return [(text, params) for text, params in self.queries if pattern in text]

    def sibling(self) -> FakeConnection:
        """A second session to the same server, sharing its script and query log."""
        other = FakeConnection(host=self.info.host, port=self.info.port, user=self.info.user)
        other.responses = self.responses
        other.queries = self.queries
        return other


def guc_responder(settings: dict[str, str]) -> Callable[[str, Any], list[dict[str, Any]]]:
    def respond(query: str, params: Any) -> list[dict[str, Any]]:
        name, value = params
        if name not in settings:
            return []
        setting = settings[name]
        if "ANY(" in query:
            return [{"matches": True}] if setting in value else []
        match = GUC_COMPARISON_RE.search(query)
        assert match is not None, query
        left: Any = setting
        right: Any = value
        if "::integer" in query or "::bigint" in query:
            left, right = int(setting), int(value)
        matches = {
            "=": left == right,
            "<>": left != right,
            ">": left > right,
            ">=": left >= right,
            "<": left < right,
            "<=": left <= right,
        }[match.group(1)]
        return [{"matches": True}] if matches else []

    return respond


GOOD_UPSTREAM_SETTINGS: Final[dict[str, str]] = {
    "wal_level": "replica",
    "wal_keep_segments": "5000",
    "wal_keep_size": "80000",
    "max_replication_slots": "10",
    "archive_mode": "on",
    "hot_standby": "on",
    "max_wal_senders": "10",
}


def make_server(
    state: str = "primary",
    *,
    version: int = 150002,
    settings: dict[str, str] | None = None,
    host: str = "",
    port: int = 5432,
    user: str = "postgres",
) -> FakeConnection:
    """A fake server that answers recovery state, version and setting queries."""
    all_settings = {"data_directory": "/var/lib/postgresql/data", **GOOD_UPSTREAM_SETTINGS, **(settings or {})}
    conn = FakeConnection(host=host, port=port, user=user)
    if version >= 100000:
        version_string = f"{version // 10000}.{version % 10000}"
    else:
        version_string = f"{version // 10000}.{version // 100 % 100}.{version % 100}"
    conn.respond(
        "server_version_num",
        [{"server_version_num": str(version), "server_version": version_string}],
    )
    conn.respond("AS matches FROM pg_catalog.pg_settings", guc_responder(all_settings))
    conn.respond(
        "SELECT setting FROM pg_catalog.pg_settings",
        lambda query, params: [{"setting": all_settings[params[0]]}] if params[0] in all_settings else [],
    )
    set_state(conn, state)
    return conn


def set_state(conn: FakeConnection, state: str) -> None:
    if state == "unreachable":
        conn.respond("pg_is_in_recovery", psycopg2.OperationalError("server closed the connection unexpectedly"))
    else:
        conn.respond("pg_is_in_recovery", [{"in_recovery": state == "standby"}])


class FakeRegistry:
    """In-memory ``repl_nodes`` shared by the fake connections attached to it."""

    def __init__(self, schema: str = "pgtopology_test", exists: bool = True) -> None:
        self.schema = schema
        self.exists = exists
        self.records: list[dict[str, Any]] = []

    def add(self, node_id: int, node_type: str, conninfo: str, *, upstream_node_id: int | None = None, **extra: Any) -> None:
        record = {
            "id": node_id,
            "type": node_type,
            "upstream_node_id": upstream_node_id,
            "cluster": "test",
            "name": f"node{node_id}",
            "conninfo": conninfo,
            "slot_name": None,
            "priority": 0,
            "active": True,
        }
        record.update(extra)
        self.records.append(record)

    def get(self, node_id: int) -> dict[str, Any] | None:
        return next((record for record in self.records if record["id"] == node_id), None)

    def attach(self, conn: FakeConnection) -> FakeConnection:
        conn.respond("FROM pg_catalog.pg_namespace", lambda query, params: [{"found": 1}] if self.exists else [])
        conn.respond("CREATE SCHEMA", self._create_schema)
        conn.respond("SELECT id FROM", self._primary_id)
        conn.respond("SELECT id, type, upstream_node_id", self._list)
        conn.respond("INSERT INTO", self._insert)
        conn.respond("DELETE FROM", self._delete)
        conn.respond("SET upstream_node_id", self._update)
        conn.respond("TRUNCATE TABLE", self._truncate)
        return conn

    def _create_schema(self, query: str, params: Any) -> list[dict[str, Any]]:
        self.exists = True
        return []

    def _primary_id(self, query: str, params: Any) -> list[dict[str, Any]]:
        ids = sorted(r["id"] for r in self.records if r["type"] == "primary" and r["active"] and r["cluster"] == params[0])
        return [{"id": ids[0]}] if ids else []

    def _list(self, query: str, params: Any) -> list[dict[str, Any]]:
        order = {"primary": 1, "standby": 2, "witness": 3}
        rows = [dict(r) for r in self.records if r["cluster"] == params[0]]
        if "<> 'witness'" in query:
            rows = [r for r in rows if r["type"] != "witness"]
        return sorted(rows, key=lambda r: (not r["active"], order[r["type"]], -r["priority"], r["id"]))

    def _insert(self, query: str, params: Any) -> list[dict[str, Any]]:
        if "repl_nodes" not in query:
            return [{}]
        if self.get(params["id"]):
            raise psycopg2.IntegrityError("duplicate key value violates unique constraint")
        self.records.append(dict(params))
        return [{}]

    def _delete(self, query: str, params: Any) -> list[dict[str, Any]]:
        if "repl_nodes" not in query:
            return []
        removed = [r for r in self.records if r["id"] == params[0]]
        self.records = [r for r in self.records if r["id"] != params[0]]
        return removed

    def _update(self, query: str, params: Any) -> list[dict[str, Any]]:
        upstream_node_id, node_id = params
        record = self.get(node_id)
        if record is None:
            return []
        record["upstream_node_id"] = upstream_node_id
        return [{}]

    def _truncate(self, query: str, params: Any) -> list[dict[str, Any]]:
        if "repl_nodes" in query:
            self.records = []
        return []


class FakeConnector:
    """Hands out fake connections keyed by conninfo, or by host for parameter connections.

    A value of ``None`` means the server can't be reached. A connection that
    was closed is reopened, one still in use is handed out as a sibling.
    """

    def __init__(self, servers: dict[str, FakeConnection | None] | None = None) -> None:
        self.servers: dict[str, FakeConnection | None] = servers or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.opened: list[FakeConnection] = []

    def __call__(self, conninfo: str, *, required: bool = True, **params: Any) -> FakeConnection | None:
        key = conninfo or params.get("host", "")
        self.calls.append((key, params))
        conn = self.servers.get(key)
        if conn is None:
            if required:
                raise DBConnectionError(f"Connection to database failed ({key})")
            return None
        if not conn.closed and any(opened is conn for opened in self.opened):
            conn = conn.sibling()
        conn.closed = 0
        self.opened.append(conn)
        return conn


def make_tools() -> Mock:
    tools = Mock()
    tools.snapshot.take.return_value = 0
    tools.service.init.return_value = 0
    tools.service.start.return_value = 0
    tools.service.stop.return_value = 0
    tools.service.restart.return_value = 0
    tools.service.reload.return_value = 0
    tools.service.promote.return_value = 0
    tools.secure_copy.copy.return_value = 0
    tools.probe.is_reachable.return_value = True
    return tools


STANDBY_CONNINFO: Final[str] = "host=standby.example dbname=postgres"
PRIMARY_CONNINFO: Final[str] = "host=primary.example dbname=postgres"


@pytest.fixture(name="make_context")
def fixture_make_context() -> Callable[..., CommandContext]:
    def make(
        servers: dict[str, FakeConnection | None] | None = None,
        config: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
        tools: Mock | None = None,
    ) -> CommandContext:
        full_config = Config(cluster="test", node=2, node_name="node2", conninfo=STANDBY_CONNINFO, priority=0)
        full_config.update(config or {})  # type: ignore[typeddict-item]
        full_options = RuntimeOptions(dbname="postgres", wal_keep_segments="5000")
        full_options.update(options or {})  # type: ignore[typeddict-item]
        return CommandContext(
            full_config,
            full_options,
            tools=tools or make_tools(),
            stats=Mock(),
            connector=FakeConnector(servers),
        )

    return make


class TestPG:
    def __init__(self, pgdata: Path) -> None:
        self.pgbin: Path = self.find_pgbin()
        self.pgdata: Path = pgdata
        self.pg: subprocess.Popen[bytes] | None = None

    @staticmethod
    def find_pgbin(versions: list[str] | None = None) -> Path:
        pathformats = ["/usr/pgsql-{ver}/bin", "/usr/lib/postgresql/{ver}/bin"]
        for ver in versions or PG_VERSIONS:
            for pathfmt in pathformats:
                pgbin = Path(pathfmt.format(ver=ver))
                if pgbin.is_dir():
                    return pgbin
        return Path("/usr/bin")

    @property
    def conninfo(self) -> str:
        return f"host={self.pgdata} port=5432 dbname=postgres user=testuser"

    def run_cmd(self, cmd: str, *args: str) -> None:
        argv = [str(self.pgbin / cmd), *args]
        subprocess.check_call(argv)

    def run_pg(self) -> None:
        self.pg = subprocess.Popen(  # pylint: disable=consider-using-with
            [
                str(self.pgbin / "postgres"),
                "-D",
                str(self.pgdata),
                "-k",
                str(self.pgdata),
                "-p",
                "5432",
                "-c",
                "listen_addresses=",
            ]
        )
        time.sleep(1.0)  # let pg start

    def kill(self) -> None:
        if self.pg is None:
            return
        os.kill(self.pg.pid, signal.SIGKILL)
        timeout = time.monotonic() + 10
        while (self.pg.poll() is None) and (time.monotonic() < timeout):
            time.sleep(0.1)


@pytest.fixture(scope="session")
def db(tmp_path_factory: pytest.TempPathFactory) -> Generator[TestPG, None, None]:
    if not (TestPG.find_pgbin() / "initdb").exists() and shutil.which("initdb") is None:
        pytest.skip("PostgreSQL binaries not available")
    tmpdir = tmp_path_factory.mktemp(basename="pgtopology_dbtest_")
    pgdata = tmpdir / "pgdata"
    db = TestPG(pgdata)  # pylint: disable=redefined-outer-name
    db.run_cmd("initdb", "-D", str(pgdata), "--encoding", "utf-8", "-U", "testuser")

    (pgdata / "pg_hba.conf").write_text(
        dedent(
            """\
        local all all trust
        local replication all trust
    """
        )
    )
    with (pgdata / "postgresql.conf").open("a") as fp:
        fp.write(
            "max_wal_senders = 2\n"
            "wal_level = replica\n"
            "fsync = off\n"
            "synchronous_commit = off\n"
            "autovacuum = off\n"
        )

    with patch.dict(os.environ, {"HOME": str(tmpdir)}):
        db.run_pg()
        try:
            yield db
        finally:
            db.kill()
