# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
from __future__ import annotations

from logging import getLogger
from pathlib import Path
from pgtopology.errors import ConfigError
from typing import cast, Literal, TypedDict

import json


class Statsd(TypedDict, total=False):
    host: str
    port: int
    tags: dict[str, str]


class Config(TypedDict, total=False):
    cleanup_on_failure: bool
    cluster: str
    conninfo: str
    log_file: str
    log_level: Literal["NOTSET", "DEBUG", "INFO", "WARNING", "WARN", "ERROR", "FATAL", "CRITICAL"]
    master_response_timeout: float
    node: int
    node_name: str
    pg_basebackup_options: str
    pg_bindir: str
    pg_ctl_options: str
    primary_wait_interval: float
    priority: int
    promote_check_interval: int
    promote_check_timeout: int
    require_password: bool
    rsync_options: str
    shared_library: str
    ssh_options: str
    statsd: Statsd
    syslog: bool
    syslog_address: str
    # fmt: off
    # https://docs.python.org/3/library/logging.handlers.html#logging.handlers.SysLogHandler.encodePriority
    syslog_facility: Literal[
        "auth", "authpriv", "console", "cron", "daemon", "ftp", "kern", "lpr",
        "mail", "news", "ntp", "security", "solaris-cron", "syslog", "user", "uucp",
        "local0", "local1", "local2", "local3", "local4", "local5", "local6", "local7",
    ]
    # fmt: on
    tablespace_mapping: dict[str, str]
    upstream_node: int
    use_replication_slots: bool


class RuntimeOptions(TypedDict, total=False):
    """Command line options of a single invocation."""

    dbname: str
    host: str
    port: str
    username: str
    superuser: str
    dest_dir: str
    local_port: str
    config_file: str
    remote_user: str
    wal_keep_segments: str
    keep_history: int
    force: bool
    wait: bool
    min_recovery_apply_delay: str
    verbose: bool
    pg_bindir: str
    initdb_no_pwprompt: bool


REQUIRED_NODE_KEYS: tuple[str, ...] = ("node", "cluster", "conninfo")


def load_config(config_path: Path, *, explicit: bool = True) -> Config:
    """Read the JSON configuration file.

    A missing file is an error only when the path was given explicitly, the
    default location is optional.
    """
    log = getLogger("pgtopology")
    if not config_path.is_file():
        if explicit:
            raise ConfigError(f"Provided configuration file {str(config_path)!r} not found")
        log.debug("No configuration file at %r, using defaults", str(config_path))
        return Config()

    log.debug("Loading JSON config from: %r", str(config_path))
    try:
        with config_path.open() as fp:
            config = json.load(fp)
    except (OSError, ValueError) as ex:
        raise ConfigError(f"Invalid JSON config {str(config_path)!r}: {ex}") from ex

    if not isinstance(config, dict):
        raise ConfigError(f"Invalid JSON config {str(config_path)!r}: expected an object")
    return cast(Config, config)


def check_node_information(config: Config) -> None:
    missing = [key for key in REQUIRED_NODE_KEYS if key not in config]
    if missing:
        raise ConfigError(f"Node information is missing ({', '.join(missing)}). Check the configuration file.")
    if not isinstance(config["node"], int) or config["node"] < 1:
        raise ConfigError(f"Invalid node id {config['node']!r}, it must be a positive integer")
