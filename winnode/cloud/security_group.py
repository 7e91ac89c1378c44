"""
Windows security group: remote desktop (3389) and remote shell (22) over
TCP from the caller's public address and the cluster's VPC CIDR.

Groups are reused by rule *shape*: any group in the cluster VPC carrying the
cluster ownership tag whose ingress flattens to exactly the desired rule set
is taken as-is.  Identifiers are never remembered across runs for this.
"""

import ipaddress
import logging
import uuid
from typing import Callable, Optional

import requests

from winnode.cloud.cluster import ownership_tag_key
from winnode.cloud.ec2 import error_code, provider_call, tag_specs
from winnode.config import settings
from winnode.errors import ProviderAPIError, ResourceInUseError
from winnode.schemas.resources import ClusterContext, IngressRule, PortRange, SecurityGroupSpec

logger = logging.getLogger(__name__)

RDP_PORT = 3389
SSH_PORT = 22
WINDOWS_PORTS = frozenset(
    {
        PortRange(protocol="tcp", from_port=RDP_PORT, to_port=RDP_PORT),
        PortRange(protocol="tcp", from_port=SSH_PORT, to_port=SSH_PORT),
    }
)


def lookup_public_ip(url: Optional[str] = None, timeout: float = 10.0) -> str:
    """Return the caller's public IPv4 address as seen from the internet."""
    url = url or settings.public_ip_url
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.error("Public IP lookup via %s failed: %s", url, exc)
        raise ProviderAPIError("look up public IP", str(exc), url=url) from exc

    address = resp.text.strip()
    try:
        ipaddress.IPv4Address(address)
    except ValueError as exc:
        raise ProviderAPIError(
            "look up public IP", f"unexpected response {address!r}", url=url
        ) from exc
    return address


def windows_rule_set(caller_ip: str, vpc_id: str, vpc_cidr: str) -> SecurityGroupSpec:
    """Ingress for the Windows node: RDP and SSH from caller/32 and the VPC."""
    caller = ipaddress.IPv4Address(caller_ip)
    cluster = ipaddress.IPv4Network(vpc_cidr, strict=False)
    return SecurityGroupSpec(
        scope_network_id=vpc_id,
        allowed_cidrs=frozenset({f"{caller}/32", str(cluster)}),
        allowed_ports=WINDOWS_PORTS,
    )


def flatten_ingress(group: dict) -> frozenset[IngressRule]:
    """Flatten a DescribeSecurityGroups entry into individual IPv4 rules."""
    rules = set()
    for perm in group.get("IpPermissions", []):
        sources = [r["CidrIp"] for r in perm.get("IpRanges", [])]
        # IPv6 ranges and group references still count towards the shape.
        sources += [r["CidrIpv6"] for r in perm.get("Ipv6Ranges", [])]
        sources += [p.get("GroupId", "") for p in perm.get("UserIdGroupPairs", [])]
        for source in sources:
            rules.add(
                IngressRule(
                    protocol=perm.get("IpProtocol", ""),
                    from_port=perm.get("FromPort", -1),
                    to_port=perm.get("ToPort", -1),
                    cidr=source,
                )
            )
    return frozenset(rules)


def ip_permissions(spec: SecurityGroupSpec) -> list:
    """Render a spec as the IpPermissions payload of AuthorizeSecurityGroupIngress."""
    permissions = []
    for port in sorted(spec.allowed_ports, key=lambda p: (p.protocol, p.from_port)):
        permissions.append(
            {
                "IpProtocol": port.protocol,
                "FromPort": port.from_port,
                "ToPort": port.to_port,
                "IpRanges": [{"CidrIp": cidr} for cidr in sorted(spec.allowed_cidrs)],
            }
        )
    return permissions


class SecurityGroupComposer:
    """Creates, reuses and deletes the Windows security group."""

    def __init__(self, ec2, ownership_tag_prefix: Optional[str] = None) -> None:
        self.ec2 = ec2
        self.ownership_tag_prefix = ownership_tag_prefix

    def ensure_security_group(
        self,
        ctx: ClusterContext,
        caller_ip: str,
        on_create: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        Return the id of a security group carrying the Windows rule set.

        *on_create* is called with the id of a freshly created group before
        any rule is authorised on it, so a failure while authorising still
        leaves the group recorded.
        """
        spec = windows_rule_set(caller_ip, ctx.vpc_id, ctx.vpc_cidr)

        existing = self.find_matching(ctx, spec)
        if existing:
            logger.info("Reusing security group %s for cluster '%s'.", existing, ctx.infra_id)
            return existing

        group_id = self.create(ctx, spec)
        if on_create is not None:
            on_create(group_id)

        with provider_call("authorize ingress", group_id=group_id):
            self.ec2.authorize_security_group_ingress(
                GroupId=group_id, IpPermissions=ip_permissions(spec)
            )
        logger.info("Authorised %d ingress rule(s) on %s.", len(spec.rules), group_id)
        return group_id

    def find_matching(self, ctx: ClusterContext, spec: SecurityGroupSpec) -> Optional[str]:
        key = ownership_tag_key(ctx.infra_id, self.ownership_tag_prefix)
        with provider_call("describe security groups", vpc_id=ctx.vpc_id):
            resp = self.ec2.describe_security_groups(
                Filters=[
                    {"Name": "vpc-id", "Values": [spec.scope_network_id]},
                    {"Name": "tag-key", "Values": [key]},
                ]
            )
        wanted = spec.rules
        matches = sorted(
            g["GroupId"]
            for g in resp.get("SecurityGroups", [])
            if flatten_ingress(g) == wanted
        )
        if len(matches) > 1:
            logger.warning(
                "%d security groups match the Windows rule set (%s); using %s.",
                len(matches),
                ", ".join(matches),
                matches[0],
            )
        return matches[0] if matches else None

    def create(self, ctx: ClusterContext, spec: SecurityGroupSpec) -> str:
        name = f"{ctx.infra_id}-windows-worker-{uuid.uuid4().hex[:8]}"
        tags = {ownership_tag_key(ctx.infra_id, self.ownership_tag_prefix): "owned"}
        with provider_call("create security group", vpc_id=ctx.vpc_id, name=name):
            resp = self.ec2.create_security_group(
                GroupName=name,
                Description=f"Windows worker access for cluster {ctx.infra_id}",
                VpcId=spec.scope_network_id,
                TagSpecifications=tag_specs("security-group", name, tags),
            )
        group_id = resp["GroupId"]
        logger.info("Security group created: %s (%s)", group_id, name)
        return group_id

    def delete_security_group(self, group_id: str) -> None:
        """
        Delete *group_id*.  A group that no longer exists counts as deleted;
        a group still attached to an instance raises `ResourceInUseError`.
        """
        try:
            with provider_call("delete security group", group_id=group_id):
                self.ec2.delete_security_group(GroupId=group_id)
        except ProviderAPIError as exc:
            code = error_code(exc)
            if code == "InvalidGroup.NotFound":
                logger.info("Security group %s already gone.", group_id)
                return
            if code == "DependencyViolation":
                raise ResourceInUseError(
                    "delete security group",
                    "group is still attached to an instance; terminate it first",
                    code=code,
                    group_id=group_id,
                ) from exc
            raise
        logger.info("Deleted security group %s", group_id)
