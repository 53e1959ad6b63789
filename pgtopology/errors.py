# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
from __future__ import annotations

from typing import Final

SUCCESS: Final[int] = 0
ERR_BAD_CONFIG: Final[int] = 1
ERR_NO_RESTART: Final[int] = 4
ERR_DB_CON: Final[int] = 6
ERR_DB_QUERY: Final[int] = 7
ERR_BAD_PASSWORD: Final[int] = 9
ERR_PROMOTE_NOT_CONFIRMED: Final[int] = 11
ERR_BAD_SSH: Final[int] = 12
ERR_SYS_FAILURE: Final[int] = 13
ERR_BAD_BASEBACKUP: Final[int] = 14


class TopologyError(Exception):
    """Base class for errors that abort the current command.

    ``exit_code`` is what the top-level dispatcher returns to the shell.
    """

    exit_code: int = ERR_BAD_CONFIG

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(TopologyError):
    exit_code = ERR_BAD_CONFIG


class DBConnectionError(TopologyError):
    exit_code = ERR_DB_CON


class QueryError(TopologyError):
    exit_code = ERR_DB_QUERY


class VersionError(TopologyError):
    exit_code = ERR_BAD_CONFIG


class ExternalCommandError(TopologyError):
    exit_code = ERR_SYS_FAILURE


class PasswordError(TopologyError):
    exit_code = ERR_BAD_PASSWORD


class SchemaExistsError(ConfigError):
    pass


class PromotionRefused(ConfigError):
    pass


class SplitBrainError(TopologyError):
    exit_code = ERR_BAD_CONFIG

    def __init__(self, node_ids: list[int]) -> None:
        super().__init__(f"More than one node reports itself as primary: {node_ids!r}")
        self.node_ids: list[int] = node_ids
