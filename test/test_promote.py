"""
pgtopology - standby promotion tests

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from .conftest import FakeRegistry, make_server, make_tools, PRIMARY_CONNINFO, set_state, STANDBY_CONNINFO
from pgtopology.common_types import PromoteOutcome
from pgtopology.errors import ConfigError, DBConnectionError, ExternalCommandError, PromotionRefused
from pgtopology.promote import standby_promote, wait_for_promotion
from unittest.mock import patch

import pytest

FAST_CHECKS = {"promote_check_timeout": 10, "promote_check_interval": 2}


def failed_over_cluster() -> tuple[FakeRegistry, dict]:
    registry = FakeRegistry()
    registry.add(1, "primary", PRIMARY_CONNINFO)
    registry.add(2, "standby", STANDBY_CONNINFO, upstream_node_id=1)
    local = registry.attach(make_server("standby", settings={"data_directory": "/srv/node2"}))
    return registry, {PRIMARY_CONNINFO: None, STANDBY_CONNINFO: local}


def test_wait_for_promotion_immediate(make_context) -> None:
    ctx = make_context({STANDBY_CONNINFO: make_server("primary")})
    with patch("time.sleep") as sleep:
        assert wait_for_promotion(ctx, 60, 2) is PromoteOutcome.PROMOTED
    sleep.assert_not_called()


def test_wait_for_promotion_still_standby(make_context) -> None:
    local = make_server("standby")
    ctx = make_context({STANDBY_CONNINFO: local})
    with patch("time.sleep") as sleep:
        assert wait_for_promotion(ctx, 10, 3) is PromoteOutcome.STILL_STANDBY
    # probes at 0, 3 and 6 seconds, never beyond the timeout
    assert len(local.executed("pg_is_in_recovery")) == 3
    assert sleep.call_count == 2
    assert sum(c.args[0] for c in sleep.call_args_list) <= 10
    assert local.closed


@pytest.mark.parametrize("timeout,interval,probes", [(10, 2, 5), (10, 3, 3), (2, 5, 1), (0, 2, 1)])
def test_wait_for_promotion_probe_count(make_context, timeout: int, interval: int, probes: int) -> None:
    local = make_server("standby")
    ctx = make_context({STANDBY_CONNINFO: local})
    with patch("time.sleep") as sleep:
        assert wait_for_promotion(ctx, timeout, interval) is PromoteOutcome.STILL_STANDBY
    assert len(local.executed("pg_is_in_recovery")) == probes
    assert sleep.call_count == probes - 1


def test_wait_for_promotion_unreachable(make_context) -> None:
    ctx = make_context({STANDBY_CONNINFO: None})
    with patch("time.sleep") as sleep:
        assert wait_for_promotion(ctx, 6, 2) is PromoteOutcome.UNREACHABLE
    assert sleep.call_count == 2


def test_wait_for_promotion_reconnects(make_context) -> None:
    local = make_server("standby")
    ctx = make_context({STANDBY_CONNINFO: local})

    def promote_while_sleeping(interval: float) -> None:  # pylint: disable=unused-argument
        # the server drops connections during promotion
        local.close()
        set_state(local, "primary")

    with patch("time.sleep", side_effect=promote_while_sleeping):
        assert wait_for_promotion(ctx, 10, 2) is PromoteOutcome.PROMOTED
    assert len(ctx._connector.calls) == 2  # pylint: disable=protected-access


def test_wait_for_promotion_bad_interval(make_context) -> None:
    with pytest.raises(ConfigError):
        wait_for_promotion(make_context(), 10, 0)


def test_standby_promote(make_context) -> None:
    _, servers = failed_over_cluster()
    local = servers[STANDBY_CONNINFO]
    tools = make_tools()
    tools.service.promote.side_effect = lambda data_dir: set_state(local, "primary") or 0
    ctx = make_context(servers, config=FAST_CHECKS, tools=tools)

    with patch("time.sleep"):
        assert standby_promote(ctx) is PromoteOutcome.PROMOTED
    tools.service.promote.assert_called_once_with("/srv/node2")


def test_standby_promote_not_confirmed(make_context) -> None:
    _, servers = failed_over_cluster()
    ctx = make_context(servers, config=FAST_CHECKS)
    with patch("time.sleep") as sleep:
        assert standby_promote(ctx) is PromoteOutcome.STILL_STANDBY
    assert sleep.call_count == 4


def test_standby_promote_refused_with_live_primary(make_context) -> None:
    _, servers = failed_over_cluster()
    primary = make_server("primary")
    servers[PRIMARY_CONNINFO] = primary
    ctx = make_context(servers, config=FAST_CHECKS)

    with pytest.raises(PromotionRefused) as excinfo:
        standby_promote(ctx)
    assert "node 1" in str(excinfo.value)
    assert excinfo.value.exit_code == 1
    ctx.tools.service.promote.assert_not_called()
    assert primary.closed


def test_standby_promote_on_primary(make_context) -> None:
    ctx = make_context({STANDBY_CONNINFO: make_server("primary")})
    with pytest.raises(PromotionRefused):
        standby_promote(ctx)
    ctx.tools.service.promote.assert_not_called()


def test_standby_promote_lost_connection(make_context) -> None:
    ctx = make_context({STANDBY_CONNINFO: make_server("unreachable")})
    with pytest.raises(DBConnectionError):
        standby_promote(ctx)


def test_standby_promote_command_failure(make_context) -> None:
    _, servers = failed_over_cluster()
    tools = make_tools()
    tools.service.promote.return_value = 1
    ctx = make_context(servers, config=FAST_CHECKS, tools=tools)
    with pytest.raises(ExternalCommandError) as excinfo:
        standby_promote(ctx)
    assert excinfo.value.exit_code == 4
