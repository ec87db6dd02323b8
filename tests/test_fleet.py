from __future__ import annotations

import pytest

from steward.commands import UfwController
from steward.fleet import FleetCoordinator
from steward.outcome import WorkflowOutcome
from steward.registry import ApplicationRegistry, RegistryIndex


@pytest.fixture
def registry(config) -> ApplicationRegistry:
    registry = ApplicationRegistry(config)
    registry.save_index(RegistryIndex(current="blog", names=["blog", "shop", "api"]))
    registry.save(registry.default_application("blog", port=5000))
    registry.save(registry.default_application("shop", port=5001))
    registry.save(registry.default_application("api", port=8000))
    return registry


@pytest.fixture
def fleet(registry, runner, bound_ports) -> FleetCoordinator:
    return FleetCoordinator(registry, UfwController(runner), lambda port: port in bound_ports)


def test_rebuild_produces_exact_allow_list(fleet, runner) -> None:
    fleet.rebuild_firewall(WorkflowOutcome("rebuild"))

    assert runner.ufw_allows() == [
        "ssh",
        "80/tcp",
        "443/tcp",
        "5000/tcp comment Steward app: blog",
        "5001/tcp comment Steward app: shop",
        "8000/tcp comment Steward app: api",
    ]


def test_rebuild_resets_before_adding_rules(fleet, runner) -> None:
    fleet.rebuild_firewall(WorkflowOutcome("rebuild"))

    commands = runner.commands()
    assert commands[:3] == [
        "sudo ufw --force reset",
        "sudo ufw default deny incoming",
        "sudo ufw default allow outgoing",
    ]
    assert commands[-1] == "sudo ufw --force enable"


def test_rebuild_drops_rules_of_removed_apps(fleet, registry, runner) -> None:
    index = registry.load()
    index.remove("shop")
    registry.save_index(index)
    registry.delete_record("shop")

    fleet.rebuild_firewall(WorkflowOutcome("rebuild"))

    allows = runner.ufw_allows()
    assert "5001/tcp comment Steward app: shop" not in allows
    assert len(allows) == 5


def test_indexed_name_without_record_gets_no_rule(fleet, registry, runner) -> None:
    index = registry.load()
    index.add("ghost")
    registry.save_index(index)

    rules = fleet.plan_firewall()

    assert [r.rule for r in rules] == ["ssh", "80/tcp", "443/tcp", "5000/tcp", "5001/tcp", "8000/tcp"]
    assert not registry.record_path("ghost").exists()


def test_failed_ufw_command_is_a_warning(fleet, runner) -> None:
    runner.fail.add("ufw allow 443/tcp")
    outcome = WorkflowOutcome("rebuild")

    rules = fleet.rebuild_firewall(outcome)

    assert len(rules) == 6
    assert len(outcome.warnings) == 1
    assert runner.commands()[-1] == "sudo ufw --force enable"


def test_status_overview_reports_port_usage(fleet, bound_ports) -> None:
    bound_ports.add(8000)

    rows = {row["name"]: row for row in fleet.status_overview()}

    assert rows["blog"]["current"] is True
    assert rows["api"]["port_bound"] is True
    assert rows["shop"]["port_bound"] is False
    assert rows["shop"]["service"] == "steward_app_shop.service"
    assert rows["shop"]["stage"] == "uninitialized"
