# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
from __future__ import annotations

from logging import getLogger, Logger
from pgtopology.config import Config, RuntimeOptions
from pgtopology.default import APPLICATION_NAME, DEFAULT_PRIMARY_PORT, SLOT_NAME_FORMAT
from pgtopology.external import Tools
from pgtopology.pgutil import connect, Connection
from pgtopology.registry import schema_name
from pgtopology.statsd import StatsClient
from typing import Callable, Optional

Connector = Callable[..., Optional[Connection]]


class CommandContext:
    """Everything a single topology command needs, built once per invocation.

    Components receive the context explicitly, nothing is kept in module state.
    """

    def __init__(
        self,
        config: Config,
        options: RuntimeOptions,
        *,
        tools: Tools | None = None,
        stats: StatsClient | None = None,
        connector: Connector = connect,
    ) -> None:
        self.log: Logger = getLogger("pgtopology")
        self.config: Config = config
        self.options: RuntimeOptions = options
        self.tools: Tools = tools or Tools.from_config(config, options)
        self.stats: StatsClient = stats or StatsClient(host=None)
        self._connector: Connector = connector

    @property
    def cluster_name(self) -> str:
        return self.config.get("cluster", "")

    @property
    def node_id(self) -> int:
        return self.config.get("node", -1)

    @property
    def node_name(self) -> str:
        return self.config.get("node_name", "")

    @property
    def conninfo(self) -> str:
        return self.config.get("conninfo", "")

    @property
    def schema(self) -> str:
        return schema_name(self.cluster_name)

    @property
    def slot_name(self) -> str | None:
        if not self.config.get("use_replication_slots"):
            return None
        return SLOT_NAME_FORMAT.format(node=self.node_id)

    @property
    def force(self) -> bool:
        return bool(self.options.get("force"))

    @property
    def upstream_host(self) -> str:
        return self.options.get("host", "")

    @property
    def upstream_port(self) -> str:
        return self.options.get("port") or DEFAULT_PRIMARY_PORT

    def connect(self, conninfo: str, *, required: bool = True) -> Connection | None:
        return self._connector(conninfo, required=required)

    def connect_local(self, *, required: bool = True) -> Connection | None:
        """Connect to the node described by this node's configuration."""
        return self.connect(self.conninfo, required=required)

    def connect_upstream(self, *, required: bool = True, port: str | None = None) -> Connection | None:
        """Connect using the command line connection parameters."""
        params = {
            "host": self.upstream_host,
            "port": port or self.upstream_port,
            "dbname": self.options.get("dbname", ""),
            "user": self.options.get("username", ""),
            "application_name": APPLICATION_NAME,
        }
        return self._connector("", required=required, **{key: value for key, value in params.items() if value})
