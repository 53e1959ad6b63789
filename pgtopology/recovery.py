"""
pgtopology - standby recovery configuration

Servers before 12 read ``recovery.conf``. Newer servers read the same
settings from ``postgresql.auto.conf`` and enter standby mode when a
``standby.signal`` file is present.

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger
from pathlib import Path
from pgtopology.context import CommandContext
from pgtopology.default import DEFAULT_PRIMARY_PORT, RECOVERY_SIGNAL_VERSION_NUM
from pgtopology.errors import ConfigError, PasswordError
from pgtopology.pgutil import mask_connection_info, quote_connection_value
from typing import Final, Mapping

import os

log = getLogger("Recovery")

RECOVERY_FILE: Final[str] = "recovery.conf"
AUTO_CONF_FILE: Final[str] = "postgresql.auto.conf"
STANDBY_SIGNAL_FILE: Final[str] = "standby.signal"
RECOVERY_KEYS: Final[frozenset[str]] = frozenset(
    [
        "standby_mode",
        "primary_conninfo",
        "recovery_target_timeline",
        "recovery_min_apply_delay",
        "primary_slot_name",
    ]
)


def escape_config_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def build_primary_conninfo(
    *,
    host: str = "",
    port: str = "",
    user: str = "",
    application_name: str = "",
    require_password: bool = False,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Connection string a standby uses to stream from its upstream.

    The password is only ever taken from ``PGPASSWORD``, never from the
    configuration file. Empty values are left out, the port defaults to 5432.
    """
    environ = os.environ if environ is None else environ
    password = environ.get("PGPASSWORD")
    if password is None and require_password:
        raise PasswordError("PGPASSWORD not set, but having one is required")

    parts = [f"port={quote_connection_value(port or DEFAULT_PRIMARY_PORT)}"]
    for keyword, value in (
        ("host", host),
        ("user", user),
        ("password", password),
        ("application_name", application_name),
    ):
        if value:
            parts.append(f"{keyword}={quote_connection_value(value)}")
    return " ".join(parts)


def recovery_lines(
    primary_conninfo: str,
    *,
    apply_delay: str | None = None,
    slot_name: str | None = None,
    server_version_num: int = 0,
) -> list[str]:
    """Settings lines in the order the server documentation lists them."""
    conninfo = escape_config_value(primary_conninfo)
    if server_version_num >= RECOVERY_SIGNAL_VERSION_NUM:
        lines = [
            f"primary_conninfo = '{conninfo}'",
            "recovery_target_timeline = 'latest'",
        ]
        if apply_delay:
            lines.append(f"recovery_min_apply_delay = '{apply_delay}'")
        if slot_name:
            lines.append(f"primary_slot_name = '{slot_name}'")
        return lines

    lines = [
        "standby_mode = 'on'",
        f"primary_conninfo = '{conninfo}'",
        "recovery_target_timeline = 'latest'",
    ]
    if apply_delay:
        lines.append(f"min_recovery_apply_delay = {apply_delay}")
    if slot_name:
        lines.append(f"primary_slot_name = {slot_name}")
    return lines


def _setting_name(line: str) -> str:
    return line.split("=", 1)[0].strip()


def write_recovery_config(data_dir: str | Path, lines: list[str], server_version_num: int = 0) -> Path:
    """Write the recovery settings into ``data_dir`` and return the file written."""
    data_path = Path(data_dir)
    content = "".join(f"{line}\n" for line in lines)
    try:
        if server_version_num >= RECOVERY_SIGNAL_VERSION_NUM:
            target = data_path / AUTO_CONF_FILE
            kept = []
            if target.exists():
                kept = [
                    line
                    for line in target.read_text().splitlines(keepends=True)
                    if _setting_name(line) not in RECOVERY_KEYS
                ]
            target.write_text("".join(kept) + content)
            (data_path / STANDBY_SIGNAL_FILE).touch()
        else:
            target = data_path / RECOVERY_FILE
            target.write_text(content)
    except OSError as ex:
        raise ConfigError(f"Unable to write the recovery configuration in {str(data_path)!r}: {ex}") from ex

    log.info("Wrote recovery configuration to %r", str(target))
    return target


def create_recovery_file(
    ctx: CommandContext,
    data_dir: str | Path,
    *,
    host: str,
    port: str,
    user: str,
    server_version_num: int,
) -> Path:
    """Point the standby in ``data_dir`` at the given upstream."""
    conninfo = build_primary_conninfo(
        host=host,
        port=port,
        user=user,
        application_name=ctx.node_name,
        require_password=bool(ctx.config.get("require_password", False)),
    )
    log.debug("Standby will connect to its upstream with %s", mask_connection_info(conninfo))
    lines = recovery_lines(
        conninfo,
        apply_delay=ctx.options.get("min_recovery_apply_delay"),
        slot_name=ctx.slot_name,
        server_version_num=server_version_num,
    )
    return write_recovery_config(data_dir, lines, server_version_num)
