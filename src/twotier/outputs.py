"""Export table: read-only projection of the planned resources' identifiers."""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .config import OutputSettings
from .compute import FleetPlan
from .database import DatabasePlan
from .load_balancing import LoadBalancerPlan
from .network import Topology

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportEntry:
    """One output, resolved by the provider from ``resource``'s ``attribute``."""
    key: str
    resource: str
    attribute: str
    description: str
    export_name: Optional[str] = None
    # Format applied to the resolved attribute, e.g. "http://{}".
    template: str = "{}"

    @property
    def reference(self) -> str:
        return "${" + f"{self.resource}.{self.attribute}" + "}"

    @property
    def value(self) -> str:
        return self.template.format(self.reference)

    def render(self, resolved: str) -> str:
        return self.template.format(resolved)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "key": self.key,
            "value": self.value,
            "description": self.description,
            "export_name": self.export_name,
        }


def build_exports(
    topology: Topology,
    load_balancer: LoadBalancerPlan,
    fleet: FleetPlan,
    database: DatabasePlan,
    settings: OutputSettings,
) -> Tuple[ExportEntry, ...]:
    prefix = settings.export_prefix
    enabled = settings.enabled

    def export(key: str) -> Optional[str]:
        return f"{prefix}-{key}" if prefix else None

    # (toggle, key, resource, attribute, description, exported, template)
    candidates = [
        (enabled.vpc_id, "VpcId", topology.vpc_id, "VpcId", "VPC ID", True, "{}"),
        (enabled.vpc_cidr, "VpcCidr", topology.vpc_id, "CidrBlock", "VPC CIDR Block", True, "{}"),
        (enabled.load_balancer_dns, "LoadBalancerDNS", load_balancer.logical_id, "DNSName",
         "Application Load Balancer DNS Name (Use this URL to access your application)", True, "{}"),
        (enabled.load_balancer_arn, "LoadBalancerARN", load_balancer.logical_id, "LoadBalancerArn",
         "Application Load Balancer ARN", True, "{}"),
        (enabled.application_url, "ApplicationURL", load_balancer.logical_id, "DNSName",
         "Full Application URL", False, f"{load_balancer.url_scheme}://{{}}"),
        (enabled.auto_scaling_group_name, "AutoScalingGroupName", fleet.logical_id, "AutoScalingGroupName",
         "Auto Scaling Group Name", True, "{}"),
        (enabled.auto_scaling_group_arn, "AutoScalingGroupARN", fleet.logical_id, "AutoScalingGroupArn",
         "Auto Scaling Group ARN", True, "{}"),
        (enabled.database_endpoint, "DatabaseEndpoint", database.logical_id, "Endpoint.Address",
         "RDS Database Endpoint Address", True, "{}"),
        (enabled.database_port, "DatabasePort", database.logical_id, "Endpoint.Port",
         "RDS Database Port", True, "{}"),
        (enabled.database_secret_arn, "DatabaseSecretArn", database.credentials.logical_id, "SecretArn",
         "ARN of the secret containing database credentials", False, "{}"),
    ]

    entries: List[ExportEntry] = []
    for toggle, key, resource, attribute, description, exported, template in candidates:
        if not toggle:
            continue
        entries.append(
            ExportEntry(
                key=key,
                resource=resource,
                attribute=attribute,
                description=description,
                export_name=export(key) if exported else None,
                template=template,
            )
        )
    logger.debug(f"{len(entries)} exports under prefix {prefix}")
    return tuple(entries)


def export_table(entries: Tuple[ExportEntry, ...]) -> Dict[str, str]:
    """Flat key -> value view of the exports."""
    return {entry.key: entry.value for entry in entries}
