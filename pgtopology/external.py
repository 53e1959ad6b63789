"""
pgtopology - external tools the topology commands drive

Every tool returns the process exit code (0 on success) and never raises for
a failing command, callers decide whether a failure aborts the command.

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from logging import getLogger, Logger
from pathlib import Path
from pgtopology.config import Config, RuntimeOptions
from pgtopology.default import BACKUP_LABEL, RSYNC_OPTIONS
from subprocess import CalledProcessError, check_call
from typing import Final

import shlex

COMMAND_NOT_FOUND: Final[int] = 127
TRUE_BINARIES: Final[tuple[str, ...]] = ("/bin/true", "/usr/bin/true")


class ExternalCommand:
    def __init__(self, bindir: str = "", extra_options: str = "") -> None:
        self.log: Logger = getLogger(self.__class__.__name__)
        self.bindir: str = bindir
        self.extra_options: list[str] = shlex.split(extra_options)

    def make_pg_path(self, binary: str) -> str:
        if not self.bindir:
            return binary
        return str(Path(self.bindir) / binary)

    def execute(self, command: list[str]) -> int:
        self.log.info("Executing external command: %r", command)
        try:
            check_call(command)
        except CalledProcessError as err:
            self.log.error("Problem with executing: %r, return_code: %r", command, err.returncode)
            return err.returncode
        except OSError as err:
            self.log.error("Unable to execute %r: %s", command, err)
            return COMMAND_NOT_FOUND
        self.log.debug("Executed external command: %r", command)
        return 0


class Snapshot(ExternalCommand):
    """Full physical copy of a running primary, ``pg_basebackup``."""

    def take(
        self,
        *,
        host: str,
        port: str,
        user: str,
        dest_dir: str,
        tablespace_mapping: dict[str, str] | None = None,
    ) -> int:
        command = [self.make_pg_path("pg_basebackup"), "-l", BACKUP_LABEL]
        for flag, value in (("-h", host), ("-p", port), ("-U", user), ("-D", dest_dir)):
            if value:
                command.extend([flag, value])
        for old_dir, new_dir in (tablespace_mapping or {}).items():
            command.extend(["-T", f"{old_dir}={new_dir}"])
        command.extend(self.extra_options)
        return self.execute(command)


class ServiceControl(ExternalCommand):
    """``pg_ctl`` sub-commands against a data directory."""

    def _pg_ctl(self, data_dir: str, *args: str, wait: bool = True) -> int:
        command = [self.make_pg_path("pg_ctl"), *self.extra_options, "-w" if wait else "-W", "-D", data_dir, *args]
        return self.execute(command)

    def init(self, data_dir: str, superuser: str, password_prompt: bool = True) -> int:
        initdb_options = f"{'-W ' if password_prompt else ''}-U {shlex.quote(superuser)}"
        return self._pg_ctl(data_dir, "init", "-o", initdb_options)

    def start(self, data_dir: str) -> int:
        return self._pg_ctl(data_dir, "start")

    def stop(self, data_dir: str, mode: str = "fast") -> int:
        return self._pg_ctl(data_dir, "-m", mode, "stop")

    def restart(self, data_dir: str, mode: str = "fast") -> int:
        return self._pg_ctl(data_dir, "-m", mode, "restart")

    def reload(self, data_dir: str) -> int:
        return self._pg_ctl(data_dir, "reload")

    def promote(self, data_dir: str) -> int:
        # does not wait for the promotion to finish, callers poll the server instead
        return self._pg_ctl(data_dir, "promote", wait=False)


class SecureCopy(ExternalCommand):
    """Copy a single remote file or directory with rsync over ssh."""

    def copy(self, host: str, remote_user: str | None, remote_path: str, local_path: str, delete: bool = False) -> int:
        command = ["rsync", *(self.extra_options or shlex.split(RSYNC_OPTIONS))]
        if delete:
            command.append("--delete")
        host_string = f"{remote_user}@{host}" if remote_user else host
        command.extend([f"{host_string}:{remote_path}", local_path])
        return_code = self.execute(command)
        if return_code != 0:
            self.log.error("Can't rsync from remote file (%s:%s)", host_string, remote_path)
        return return_code


class ConnectivityProbe(ExternalCommand):
    """Check that a batch mode ssh connection to the host works."""

    def is_reachable(self, host: str, remote_user: str | None = None) -> bool:
        # the remote OS may keep `true` in either location
        for true_binary in TRUE_BINARIES:
            command = ["ssh", "-o", "Batchmode=yes", *self.extra_options, host]
            if remote_user:
                command.extend(["-l", remote_user])
            command.append(true_binary)
            if self.execute(command) == 0:
                return True
        self.log.info("Can not connect to the remote host (%s)", host)
        return False


class Tools:
    def __init__(
        self,
        snapshot: Snapshot,
        service: ServiceControl,
        secure_copy: SecureCopy,
        probe: ConnectivityProbe,
    ) -> None:
        self.snapshot: Snapshot = snapshot
        self.service: ServiceControl = service
        self.secure_copy: SecureCopy = secure_copy
        self.probe: ConnectivityProbe = probe

    @classmethod
    def from_config(cls, config: Config, options: RuntimeOptions) -> Tools:
        # command line --pg_bindir overrides the configuration file
        bindir = options.get("pg_bindir") or config.get("pg_bindir", "")
        return cls(
            snapshot=Snapshot(bindir, config.get("pg_basebackup_options", "")),
            service=ServiceControl(bindir, config.get("pg_ctl_options", "")),
            secure_copy=SecureCopy(extra_options=config.get("rsync_options", "")),
            probe=ConnectivityProbe(extra_options=config.get("ssh_options", "")),
        )
