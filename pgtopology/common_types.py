# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Final, Literal, TypedDict

NodeType = Literal["primary", "standby", "witness"]
NODE_TYPES: Final[tuple[NodeType, ...]] = ("primary", "standby", "witness")

NO_UPSTREAM_NODE: Final[int] = -1


class ServerState(Enum):
    """What a server reports about itself when asked whether it is in recovery."""

    STANDBY = "standby"
    PRIMARY = "primary"
    UNREACHABLE = "unreachable"


class PromoteOutcome(Enum):
    PROMOTED = "promoted"
    STILL_STANDBY = "still_standby"
    UNREACHABLE = "unreachable"


class NodeRecord(TypedDict, total=True):
    """One row of the ``repl_nodes`` table, as returned by ``RealDictCursor``."""

    id: int
    type: NodeType
    upstream_node_id: int | None
    cluster: str
    name: str
    conninfo: str
    slot_name: str | None
    priority: int
    active: bool


class MonitorSample(TypedDict, total=False):
    """One row of the append-only ``repl_monitor`` table.

    Note:
        ``replication_lag`` and ``apply_lag`` may be left out by callers of
        :func:`pgtopology.monitor.insert_sample`, which derives them from the
        WAL locations.
    """

    primary_node: int
    standby_node: int
    last_monitor_time: datetime
    last_apply_time: datetime | None
    last_wal_primary_location: str
    last_wal_standby_location: str | None
    replication_lag: int
    apply_lag: int


class ConfigFileLocation(TypedDict, total=True):
    name: str
    setting: str
    in_data_dir: bool
