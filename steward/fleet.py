"""
Fleet-wide reconciliation.

The firewall is rebuilt from scratch out of the registry every time fleet
membership or ports change, so no rule outlives the application it was
added for.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from .commands import UfwController
from .outcome import WorkflowOutcome
from .ports import is_port_bound
from .registry import ApplicationRegistry, RegistryIndex

logger = logging.getLogger(__name__)

FIREWALL_TAG = "Steward app: {name}"


@dataclass(frozen=True)
class FirewallRule:
    """One ufw allow rule."""

    rule: str
    comment: str | None = None

    def to_dict(self) -> dict:
        return {"rule": self.rule, "comment": self.comment}


# Always open: SSH plus the two conventional nginx ports.
BASE_RULES = (
    FirewallRule("ssh"),
    FirewallRule("80/tcp"),
    FirewallRule("443/tcp"),
)


class FleetCoordinator:
    """Reads the whole registry to rebuild shared host state."""

    def __init__(
        self,
        registry: ApplicationRegistry,
        ufw: UfwController,
        is_bound: Callable[[int], bool] = is_port_bound,
    ):
        self.registry = registry
        self.ufw = ufw
        self.is_bound = is_bound

    def plan_firewall(self, index: RegistryIndex | None = None) -> list[FirewallRule]:
        """The complete allow-list for the current registry."""
        rules = list(BASE_RULES)
        seen = set()
        for app in self.registry.applications(index):
            if app.port in seen:
                logger.warning(f"Port {app.port} of '{app.name}' already has a rule, skipping")
                continue
            seen.add(app.port)
            rules.append(FirewallRule(f"{app.port}/tcp", FIREWALL_TAG.format(name=app.name)))
        return rules

    def rebuild_firewall(self, outcome: WorkflowOutcome, index: RegistryIndex | None = None) -> list[FirewallRule]:
        """Reset ufw to deny-inbound/allow-outbound and re-add every rule."""
        rules = self.plan_firewall(index)
        logger.info(f"Rebuilding firewall with {len(rules)} rules")

        outcome.check(self.ufw.reset(), "ufw reset")
        outcome.check(self.ufw.default("deny", "incoming"), "ufw default deny incoming")
        outcome.check(self.ufw.default("allow", "outgoing"), "ufw default allow outgoing")
        for rule in rules:
            outcome.check(self.ufw.allow(rule.rule, rule.comment), f"ufw allow {rule.rule}")
        outcome.check(self.ufw.enable(), "ufw enable")

        outcome.data["firewall_rules"] = [r.to_dict() for r in rules]
        return rules

    def status_overview(self, index: RegistryIndex | None = None) -> list[dict]:
        """One row per indexed application with its port usage."""
        if index is None:
            index = self.registry.load()
        rows = []
        for name in index.names:
            app = self.registry.get(name)
            if app is None:
                rows.append({"name": name, "current": name == index.current, "configured": False})
                continue
            rows.append({
                "name": name,
                "current": name == index.current,
                "configured": True,
                "app_dir": str(app.app_dir),
                "port": app.port,
                "service": f"{app.service_name}.service",
                "server_type": app.server_type.value,
                "stage": app.stage.value,
                "port_bound": self.is_bound(app.port),
            })
        return rows
