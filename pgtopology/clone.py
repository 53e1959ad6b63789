"""
pgtopology - standby clone

Builds a new standby from a running primary: snapshot the data directory,
copy configuration files living outside it, write the recovery
configuration and set up the replication slot.

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pathlib import Path
from pgtopology.common import is_path_inside
from pgtopology.common_types import ConfigFileLocation
from pgtopology.context import CommandContext
from pgtopology.default import WAL_KEEP_SEGMENTS
from pgtopology.errors import ConfigError, ERR_BAD_BASEBACKUP, ERR_BAD_SSH, ExternalCommandError, QueryError, TopologyError
from pgtopology.pgutil import close_connection, Connection, execute, fetch_all, fetch_one, get_cluster_size, query_errors
from pgtopology.recovery import create_recovery_file
from pgtopology.upstream import check_server_version, check_tablespace_mappings, check_upstream_config
from typing import Final

import shutil

log = getLogger("Clone")

CONFIG_FILE_SETTINGS: Final[tuple[str, ...]] = ("config_file", "data_directory", "hba_file", "ident_file")
CONFIG_FILE_LABELS: Final[dict[str, str]] = {
    "config_file": "config",
    "hba_file": "hba",
    "ident_file": "ident",
}


def get_config_file_locations(conn: Connection) -> list[ConfigFileLocation]:
    """Data directory and configuration file paths of the primary.

    ``in_data_dir`` tells whether a snapshot of the data directory already
    contains the file.
    """
    with query_errors("Can't get info about data directory and configuration files"):
        rows = fetch_all(
            conn,
            "SELECT name, setting FROM pg_catalog.pg_settings WHERE name = ANY(%s) ORDER BY 1",
            (list(CONFIG_FILE_SETTINGS),),
        )
    # the file locations are only visible to superusers
    if len(rows) != len(CONFIG_FILE_SETTINGS):
        raise ConfigError("STANDBY CLONE should be run by a SUPERUSER")

    settings = {row["name"]: row["setting"] for row in rows}
    data_directory = settings["data_directory"]
    return [
        ConfigFileLocation(name=name, setting=setting, in_data_dir=is_path_inside(setting, data_directory))
        for name, setting in sorted(settings.items())
    ]


def _clear_directory(path: Path) -> None:
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def create_pg_dir(path: str | Path, force: bool = False) -> bool:
    """Make ``path`` usable as a new data directory.

    Returns True when the directory was created by this call. An existing
    empty directory is reused, an existing data directory only with ``force``.
    """
    data_dir = Path(path)
    try:
        if not data_dir.exists():
            log.info("Creating directory %r", str(data_dir))
            data_dir.mkdir(mode=0o700, parents=True)
            return True
        if not data_dir.is_dir():
            raise ConfigError(f"{str(data_dir)!r} exists but is not a directory")
        if not any(data_dir.iterdir()):
            log.info("Directory %r exists and is empty, fixing its permissions", str(data_dir))
            data_dir.chmod(0o700)
            return False
        if not (data_dir / "PG_VERSION").exists():
            raise ConfigError(f"Directory {str(data_dir)!r} exists and is not empty, couldn't use it")
        if not force:
            raise ConfigError(
                f"Directory {str(data_dir)!r} already contains a PostgreSQL data directory, use --force to overwrite it"
            )
        log.warning("Removing the existing data directory %r", str(data_dir))
        _clear_directory(data_dir)
        data_dir.chmod(0o700)
    except OSError as ex:
        raise ConfigError(f"Couldn't use directory {str(data_dir)!r}: {ex}") from ex
    return False


def create_replication_slot(conn: Connection, slot_name: str) -> bool:
    """Create a physical replication slot, reusing an inactive one of the same name.

    Returns True when a new slot was created.
    """
    with query_errors(f"Unable to look up replication slot {slot_name!r}"):
        row = fetch_one(
            conn,
            "SELECT active, slot_type FROM pg_catalog.pg_replication_slots WHERE slot_name = %s",
            (slot_name,),
        )
    if row:
        if row["slot_type"] != "physical":
            raise QueryError(f"Slot {slot_name!r} exists and is not a physical slot")
        if row["active"]:
            raise QueryError(f"Slot {slot_name!r} already exists as an active slot")
        log.info("Replication slot %r exists but is inactive, reusing it", slot_name)
        return False

    with query_errors(f"Unable to create replication slot {slot_name!r} on the primary node"):
        execute(conn, "SELECT * FROM pg_catalog.pg_create_physical_replication_slot(%s)", (slot_name,))
    log.info("Created replication slot %r", slot_name)
    return True


def copy_config_files(ctx: CommandContext, locations: list[ConfigFileLocation], dest_dir: str) -> int:
    """Copy configuration files living outside the primary's data directory. Returns the number copied."""
    outside = [location for location in locations if location["name"] in CONFIG_FILE_LABELS and not location["in_data_dir"]]
    if not outside:
        return 0

    host = ctx.upstream_host
    remote_user = ctx.options.get("remote_user") or None
    log.info("Copying configuration files from the primary")
    if not ctx.tools.probe.is_reachable(host, remote_user):
        raise ExternalCommandError(f"Aborting, remote host {host} is not reachable", ERR_BAD_SSH)

    for location in outside:
        label = CONFIG_FILE_LABELS[location["name"]]
        local_path = dest_dir or location["setting"]
        log.info("Copying primary %s file %r", label, location["setting"])
        if ctx.tools.secure_copy.copy(host, remote_user, location["setting"], local_path, delete=ctx.force) != 0:
            raise ExternalCommandError(f"Failed copying primary {label} file {location['setting']!r}", ERR_BAD_SSH)
    return len(outside)


def _cleanup(data_dir: Path, created: bool) -> None:
    log.warning("Removing the partially cloned data directory %r", str(data_dir))
    try:
        if created:
            shutil.rmtree(data_dir)
        else:
            _clear_directory(data_dir)
    except OSError as ex:
        log.error("Unable to clean up %r: %s", str(data_dir), ex)


def standby_clone(ctx: CommandContext) -> Path:
    """Clone the primary given on the command line into a new standby data directory."""
    use_slots = bool(ctx.config.get("use_replication_slots"))
    if use_slots and ctx.node_id < 1:
        raise ConfigError("Replication slots need the node id from the configuration file")

    dest_dir = ctx.options.get("dest_dir", "")
    if dest_dir:
        log.info("Destination directory %r provided, cloning everything into it", dest_dir)

    log.info("Connecting to the primary database")
    primary_conn = ctx.connect_upstream(required=True)
    assert primary_conn is not None
    try:
        server_version_num = check_server_version(primary_conn, "primary", strict=True)
        check_upstream_config(
            primary_conn,
            server_version_num,
            use_replication_slots=use_slots,
            wal_keep_segments=ctx.options.get("wal_keep_segments") or WAL_KEEP_SEGMENTS,
            strict=True,
        )
        tablespace_mapping = ctx.config.get("tablespace_mapping") or {}
        check_tablespace_mappings(primary_conn, server_version_num, tablespace_mapping)

        cluster_size = get_cluster_size(primary_conn)
        if cluster_size is None:
            raise QueryError("Unable to determine the installation size of the primary")
        log.info("Connected to the primary, current installation size is %s", cluster_size)

        locations = get_config_file_locations(primary_conn)
        primary_data_dir = next(location["setting"] for location in locations if location["name"] == "data_directory")
        local_data_dir = Path(dest_dir or primary_data_dir)

        created = create_pg_dir(local_data_dir, ctx.force)
        try:
            log.info("Starting backup")
            if ctx.tools.snapshot.take(
                host=ctx.upstream_host,
                port=ctx.options.get("port", ""),
                user=ctx.options.get("username", ""),
                dest_dir=str(local_data_dir),
                tablespace_mapping=tablespace_mapping,
            ):
                raise ExternalCommandError("Unable to take a base backup of the primary server", ERR_BAD_BASEBACKUP)

            copy_config_files(ctx, locations, dest_dir)
            create_recovery_file(
                ctx,
                local_data_dir,
                host=ctx.upstream_host,
                port=ctx.options.get("port", ""),
                user=ctx.options.get("username", ""),
                server_version_num=server_version_num,
            )
            if ctx.slot_name:
                create_replication_slot(primary_conn, ctx.slot_name)
        except TopologyError:
            if ctx.config.get("cleanup_on_failure", False):
                _cleanup(local_data_dir, created)
            else:
                log.warning("The destination directory (%s) will need to be cleaned up manually", local_data_dir)
            raise
    finally:
        close_connection(primary_conn)

    log.info("Base backup of standby complete")
    if dest_dir:
        log.info("HINT: You can now start your PostgreSQL server, for example: pg_ctl -D %s start", local_data_dir)
    else:
        log.info("HINT: You can now start your PostgreSQL server")
    return local_data_dir
