"""
pgtopology - recovery configuration tests

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from pathlib import Path
from pgtopology.errors import ConfigError, PasswordError
from pgtopology.recovery import (
    build_primary_conninfo,
    create_recovery_file,
    escape_config_value,
    recovery_lines,
    write_recovery_config,
)
from unittest.mock import patch

import os
import pytest


def test_build_primary_conninfo() -> None:
    conninfo = build_primary_conninfo(
        host="primary.example",
        port="5433",
        user="repl",
        application_name="node2",
        environ={"PGPASSWORD": "sikrit"},
    )
    assert conninfo == "port=5433 host=primary.example user=repl password=sikrit application_name=node2"


def test_build_primary_conninfo_omits_empty_values() -> None:
    assert build_primary_conninfo(host="primary.example", environ={}) == "port=5432 host=primary.example"
    assert build_primary_conninfo(environ={}) == "port=5432"


def test_build_primary_conninfo_quotes_values() -> None:
    conninfo = build_primary_conninfo(host="primary.example", environ={"PGPASSWORD": "it's secret"})
    assert conninfo == "port=5432 host=primary.example password='it\\'s secret'"


def test_build_primary_conninfo_requires_password() -> None:
    with pytest.raises(PasswordError) as excinfo:
        build_primary_conninfo(host="primary.example", require_password=True, environ={})
    assert excinfo.value.exit_code == 9
    assert "password=x" in build_primary_conninfo(require_password=True, environ={"PGPASSWORD": "x"})


def test_escape_config_value() -> None:
    assert escape_config_value("host=a password='b c'") == "host=a password=\\'b c\\'"
    assert escape_config_value("a\\b") == "a\\\\b"


def test_recovery_lines_before_pg12() -> None:
    assert recovery_lines("port=5432 host=primary.example", server_version_num=90600) == [
        "standby_mode = 'on'",
        "primary_conninfo = 'port=5432 host=primary.example'",
        "recovery_target_timeline = 'latest'",
    ]
    assert recovery_lines(
        "port=5432 host=primary.example",
        apply_delay="5min",
        slot_name="pgtopology_slot_2",
        server_version_num=110005,
    )[3:] == [
        "min_recovery_apply_delay = 5min",
        "primary_slot_name = pgtopology_slot_2",
    ]


def test_recovery_lines_pg12() -> None:
    assert recovery_lines(
        "port=5432 host=primary.example",
        apply_delay="5min",
        slot_name="pgtopology_slot_2",
        server_version_num=120000,
    ) == [
        "primary_conninfo = 'port=5432 host=primary.example'",
        "recovery_target_timeline = 'latest'",
        "recovery_min_apply_delay = '5min'",
        "primary_slot_name = 'pgtopology_slot_2'",
    ]


def test_write_recovery_conf(tmp_path: Path) -> None:
    target = write_recovery_config(tmp_path, ["standby_mode = 'on'", "recovery_target_timeline = 'latest'"], 90600)
    assert target == tmp_path / "recovery.conf"
    assert target.read_text() == "standby_mode = 'on'\nrecovery_target_timeline = 'latest'\n"
    assert not (tmp_path / "standby.signal").exists()


def test_write_auto_conf_replaces_recovery_settings(tmp_path: Path) -> None:
    auto_conf = tmp_path / "postgresql.auto.conf"
    auto_conf.write_text(
        "# Do not edit this file manually!\n"
        "work_mem = '64MB'\n"
        "primary_conninfo = 'host=old.example'\n"
        "primary_slot_name = 'old_slot'\n"
    )

    target = write_recovery_config(
        tmp_path,
        ["primary_conninfo = 'port=5432 host=new.example'", "recovery_target_timeline = 'latest'"],
        150002,
    )

    assert target == auto_conf
    assert auto_conf.read_text() == (
        "# Do not edit this file manually!\n"
        "work_mem = '64MB'\n"
        "primary_conninfo = 'port=5432 host=new.example'\n"
        "recovery_target_timeline = 'latest'\n"
    )
    assert (tmp_path / "standby.signal").exists()


def test_write_recovery_config_failure(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        write_recovery_config(tmp_path / "missing", ["standby_mode = 'on'"], 90600)


def test_create_recovery_file(make_context, tmp_path: Path) -> None:
    ctx = make_context(
        config={"use_replication_slots": True},
        options={"min_recovery_apply_delay": "30s"},
    )
    with patch.dict(os.environ, {"PGPASSWORD": "sikrit"}):
        target = create_recovery_file(
            ctx, tmp_path, host="primary.example", port="", user="repl", server_version_num=90600
        )
    assert target.read_text().splitlines() == [
        "standby_mode = 'on'",
        "primary_conninfo = 'port=5432 host=primary.example user=repl password=sikrit application_name=node2'",
        "recovery_target_timeline = 'latest'",
        "min_recovery_apply_delay = 30s",
        "primary_slot_name = pgtopology_slot_2",
    ]


def test_create_recovery_file_requires_password(make_context, tmp_path: Path) -> None:
    ctx = make_context(config={"require_password": True})
    with patch.dict(os.environ, clear=True):
        with pytest.raises(PasswordError):
            create_recovery_file(ctx, tmp_path, host="primary.example", port="5432", user="", server_version_num=150002)
    assert not (tmp_path / "postgresql.auto.conf").exists()
