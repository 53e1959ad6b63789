"""
pgtopology - PostgreSQL replication topology manager

Registers nodes, clones standbys, promotes a standby and points standbys at
a new primary. Every invocation runs one command and exits.

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from argparse import ArgumentParser, ArgumentTypeError, Namespace
from logging import getLevelNamesMapping, getLogger
from pathlib import Path
from pgtopology.cluster import check_upstream, cluster_cleanup, cluster_show
from pgtopology.clone import standby_clone
from pgtopology.common import validate_apply_delay
from pgtopology.common_types import PromoteOutcome
from pgtopology.config import check_node_information, Config, load_config, RuntimeOptions
from pgtopology.context import CommandContext
from pgtopology.default import CONFIG_FILE, DEFAULT_DBNAME, WAL_KEEP_SEGMENTS
from pgtopology.errors import ConfigError, ERR_DB_CON, ERR_PROMOTE_NOT_CONFIRMED, SUCCESS, TopologyError
from pgtopology.follow import standby_follow
from pgtopology.logutil import configure_logging, effective_level, set_file_handler, set_syslog_handler
from pgtopology.promote import standby_promote
from pgtopology.register import master_register, standby_register
from pgtopology.statsd import StatsClient
from pgtopology.version import __version__
from pgtopology.witness import witness_create
from typing import Callable, Final, Mapping, NoReturn

import logging
import os
import sys
import time

DEFAULT_LOG_LEVEL: Final[str] = "WARNING"
LOG_LEVEL_NAMES_MAPPING: Final[dict[str, int]] = getLevelNamesMapping()

CHECK_UPSTREAM_CONFIG: Final[str] = "check_upstream_config"
ACTIONS: Final[dict[tuple[str, str], str]] = {
    ("MASTER", "REGISTER"): "master_register",
    ("STANDBY", "REGISTER"): "standby_register",
    ("STANDBY", "CLONE"): "standby_clone",
    ("STANDBY", "PROMOTE"): "standby_promote",
    ("STANDBY", "FOLLOW"): "standby_follow",
    ("WITNESS", "CREATE"): "witness_create",
    ("CLUSTER", "SHOW"): "cluster_show",
    ("CLUSTER", "CLEANUP"): "cluster_cleanup",
}
# these find the primary through the registry, never through connection parameters
REGISTRY_ACTIONS: Final[dict[str, str]] = {
    "master_register": "MASTER REGISTER",
    "standby_register": "STANDBY REGISTER",
    "standby_promote": "STANDBY PROMOTE",
    "standby_follow": "STANDBY FOLLOW",
}
NODELESS_ACTIONS: Final[frozenset[str]] = frozenset(["standby_clone", CHECK_UPSTREAM_CONFIG])

PROMOTE_EXIT_CODES: Final[dict[PromoteOutcome, int]] = {
    PromoteOutcome.PROMOTED: SUCCESS,
    PromoteOutcome.STILL_STANDBY: ERR_PROMOTE_NOT_CONFIRMED,
    PromoteOutcome.UNREACHABLE: ERR_DB_CON,
}

COMMANDS: Final[dict[str, Callable[[CommandContext], object]]] = {
    "master_register": master_register,
    "standby_register": standby_register,
    "standby_clone": standby_clone,
    "standby_promote": standby_promote,
    "standby_follow": standby_follow,
    "witness_create": witness_create,
    "cluster_show": cluster_show,
    "cluster_cleanup": cluster_cleanup,
    CHECK_UPSTREAM_CONFIG: check_upstream,
}


class TopologyArgumentParser(ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise ConfigError(f"{self.prog}: {message}")


def positive_number(value: str) -> str:
    if not value.isdigit() or int(value) <= 0:
        raise ArgumentTypeError(f"{value!r} is not a positive number")
    return value


def apply_delay(value: str) -> str:
    try:
        return validate_apply_delay(value)
    except ValueError as ex:
        raise ArgumentTypeError(str(ex)) from ex


def get_argument_parser() -> ArgumentParser:
    parser = TopologyArgumentParser(
        prog="pgtopology",
        description="PostgreSQL replication topology manager",
        epilog=(
            "commands: master register | standby {register|clone [node]|promote|follow} | "
            "witness create | cluster {show|cleanup}"
        ),
        add_help=False,
    )
    parser.add_argument("-?", "--help", action="help", help="show this help, then exit")
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="show program version",
        version=f"pgtopology {__version__}",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="output verbose activity information")

    conn_group = parser.add_argument_group("connection options")
    conn_group.add_argument("-d", "--dbname", default="", help="database to connect to")
    conn_group.add_argument("-h", "--host", default="", help="database server host or socket directory")
    conn_group.add_argument("-p", "--port", type=positive_number, default=None, help="database server port")
    conn_group.add_argument("-U", "--username", default="", help="database user name to connect as")

    config_group = parser.add_argument_group("configuration options")
    config_group.add_argument("-b", "--pg_bindir", default="", help="path to PostgreSQL binaries")
    config_group.add_argument(
        "-D", "--dest-dir", "--data-dir", dest="dest_dir", default="", help="local directory the files are copied to"
    )
    config_group.add_argument(
        "-l", "--local-port", type=positive_number, default=None, help="standby or witness server local port"
    )
    config_group.add_argument("-f", "--config-file", default="", help="path to the configuration file")
    config_group.add_argument("-R", "--remote-user", default="", help="database server username for rsync")
    config_group.add_argument("-S", "--superuser", default="", help="superuser username for witness database")
    config_group.add_argument(
        "-w",
        "--wal-keep-segments",
        type=positive_number,
        default=None,
        help=f"minimum value for the wal_keep_segments setting (default: {WAL_KEEP_SEGMENTS})",
    )
    config_group.add_argument("-k", "--keep-history", type=int, default=0, help="days of monitoring history to keep")
    config_group.add_argument("-F", "--force", action="store_true", help="force potentially dangerous operations")
    config_group.add_argument("-W", "--wait", action="store_true", help="wait for a primary to appear")
    config_group.add_argument(
        "-r",
        "--min-recovery-apply-delay",
        type=apply_delay,
        default=None,
        help="recovery apply delay, an integer with an optional ms, s, min, h or d unit (e.g. 5min)",
    )
    config_group.add_argument(
        "--initdb-no-pwprompt", action="store_true", help="don't require superuser password when running initdb"
    )
    config_group.add_argument(
        "--check-upstream-config", action="store_true", help="verify upstream server configuration"
    )

    parser.add_argument("mode", nargs="?", help="master, standby, witness or cluster")
    parser.add_argument("command", nargs="?", help="register, clone, promote, follow, create, show or cleanup")
    parser.add_argument("node", nargs="?", help="primary host to clone from")
    return parser


def resolve_action(arg: Namespace) -> str:
    if arg.check_upstream_config:
        return CHECK_UPSTREAM_CONFIG
    if not arg.mode or not arg.command:
        raise ConfigError("No command given, try --help")
    action = ACTIONS.get((arg.mode.upper(), arg.command.upper()))
    if action is None:
        raise ConfigError(f"Unknown command {arg.mode} {arg.command}")
    if arg.node is not None:
        if action != "standby_clone":
            raise ConfigError(f"Too many command-line arguments (first extra is {arg.node!r})")
        if arg.host:
            raise ConfigError("Conflicting parameters: you can't use -h while providing a node separately")
        arg.host = arg.node
    return action


def check_parameters_for_action(action: str, options: RuntimeOptions) -> None:
    """Reject parameters that make no sense for ``action``, all problems at once."""
    problems = []
    if action in REGISTRY_ACTIONS:
        command = REGISTRY_ACTIONS[action]
        if any(options.get(key) for key in ("host", "port", "username", "dbname")):
            problems.append(f"You can't use connection parameters to the primary when issuing a {command} command")
        if options.get("dest_dir"):
            problems.append(f"You don't need a destination directory for {command} command")
    elif action in ("standby_clone", CHECK_UPSTREAM_CONFIG) and not options.get("host"):
        problems.append("You need to use connection parameters to the upstream server (-h or a node name)")
    if problems:
        raise ConfigError("; ".join(problems))


def runtime_options_from_args(arg: Namespace) -> RuntimeOptions:
    return RuntimeOptions(
        dbname=arg.dbname,
        host=arg.host,
        port=arg.port or "",
        username=arg.username,
        superuser=arg.superuser,
        dest_dir=arg.dest_dir,
        local_port=arg.local_port or "",
        config_file=arg.config_file,
        remote_user=arg.remote_user,
        wal_keep_segments=arg.wal_keep_segments or WAL_KEEP_SEGMENTS,
        keep_history=max(arg.keep_history, 0),
        force=arg.force,
        wait=arg.wait,
        min_recovery_apply_delay=arg.min_recovery_apply_delay or "",
        verbose=arg.verbose,
        pg_bindir=arg.pg_bindir,
        initdb_no_pwprompt=arg.initdb_no_pwprompt,
    )


def default_dbname(environ: Mapping[str, str]) -> str:
    return environ.get("PGDATABASE") or environ.get("PGUSER") or DEFAULT_DBNAME


def setup_logging(config: Config, verbose: bool) -> None:
    log_level_name = config.get("log_level", DEFAULT_LOG_LEVEL)
    try:
        log_level = LOG_LEVEL_NAMES_MAPPING[log_level_name]
    except KeyError as ex:
        raise ConfigError(f"Invalid log_level {log_level_name!r}") from ex
    log_level = effective_level(log_level, verbose)

    configure_logging(level=log_level)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    if config.get("log_file"):
        set_file_handler(Path(config["log_file"]), root_logger)
    if config.get("syslog"):
        set_syslog_handler(
            address=config.get("syslog_address", "/dev/log"),
            facility=config.get("syslog_facility", "local2"),
            logger=root_logger,
        )


def run_action(ctx: CommandContext, action: str) -> int:
    """Run one command and turn its outcome into the process exit code."""
    log = getLogger("pgtopology")
    start_time = time.monotonic()
    try:
        result = COMMANDS[action](ctx)
    except TopologyError as ex:
        log.error("%s", ex)
        ctx.stats.command_result(action, ex.__class__.__name__, time.monotonic() - start_time)
        return ex.exit_code
    except Exception as ex:  # pylint: disable=broad-except
        ctx.stats.unexpected_exception(ex, where=action)
        raise

    if isinstance(result, PromoteOutcome):
        exit_code = PROMOTE_EXIT_CODES[result]
    elif result is False:
        exit_code = ConfigError.exit_code
    else:
        exit_code = SUCCESS
    ctx.stats.command_result(action, "success" if exit_code == SUCCESS else "failure", time.monotonic() - start_time)
    return exit_code


def main(args: list[str] | None = None) -> int:
    if args is None:
        args = sys.argv[1:]

    parser = get_argument_parser()
    try:
        arg = parser.parse_args(args)
        action = resolve_action(arg)
        options = runtime_options_from_args(arg)
        check_parameters_for_action(action, options)
        if not options["dbname"]:
            options["dbname"] = default_dbname(os.environ)

        if arg.verbose:
            print(f"Opening configuration file: {arg.config_file or CONFIG_FILE}")
        config = load_config(Path(arg.config_file or CONFIG_FILE), explicit=bool(arg.config_file))
        setup_logging(config, arg.verbose)

        if action not in NODELESS_ACTIONS:
            check_node_information(config)
        if config.get("use_replication_slots") and arg.wal_keep_segments:
            getLogger("pgtopology").warning("-w/--wal-keep-segments has no effect when replication slots are in use")
    except TopologyError as ex:
        print(f"pgtopology: {ex}", file=sys.stderr)
        return ex.exit_code

    stats = StatsClient(**config["statsd"]) if config.get("statsd") else StatsClient(host=None)
    ctx = CommandContext(config, options, stats=stats)
    try:
        return run_action(ctx, action)
    finally:
        stats.close()


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
