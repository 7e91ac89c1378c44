"""
Pydantic models for the Windows node data model.

`ProvisionedResourceSet` doubles as the on-disk ledger format, which is why
its fields serialise under the camel-case names ``instanceIDs`` and
``securityGroupIDs``.
"""

import ipaddress
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ResourceKind(str, Enum):
    INSTANCE = "instance"
    SECURITY_GROUP = "security_group"


# ── Cluster ───────────────────────────────────────────────────────────────────

class ClusterInfrastructure(BaseModel):
    """What the cluster reports about itself in its Infrastructure object."""

    model_config = ConfigDict(frozen=True)

    infra_id: str
    platform: str = ""
    region: str = ""


class ClusterContext(BaseModel):
    """Pre-existing cluster resources the Windows node is wired into."""

    model_config = ConfigDict(frozen=True)

    infra_id: str
    vpc_id: str
    vpc_cidr: str
    worker_security_group_id: str
    worker_instance_profile_arn: str

    @field_validator("vpc_cidr")
    @classmethod
    def validate_vpc_cidr(cls, v: str) -> str:
        try:
            ipaddress.IPv4Network(v, strict=False)
        except ValueError:
            raise ValueError(f"'{v}' is not a valid IPv4 CIDR block.")
        return v


# ── Security group ────────────────────────────────────────────────────────────

class IngressRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    protocol: str
    from_port: int
    to_port: int
    cidr: str


class PortRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    protocol: str
    from_port: int
    to_port: int


class SecurityGroupSpec(BaseModel):
    """Desired ingress for the Windows security group."""

    model_config = ConfigDict(frozen=True)

    scope_network_id: str
    allowed_cidrs: frozenset[str]
    allowed_ports: frozenset[PortRange]

    @property
    def rules(self) -> frozenset[IngressRule]:
        return frozenset(
            IngressRule(
                protocol=port.protocol,
                from_port=port.from_port,
                to_port=port.to_port,
                cidr=cidr,
            )
            for port in self.allowed_ports
            for cidr in self.allowed_cidrs
        )


# ── Instance ──────────────────────────────────────────────────────────────────

class LaunchSpec(BaseModel):
    image_id: Optional[str] = Field(
        None, description="Explicit AMI id; the latest Windows image is used when unset."
    )
    instance_type: str
    key_name: str
    security_group_id: str
    subnet_id: Optional[str] = Field(
        None, description="Explicit subnet id; a public subnet is picked when unset."
    )


class InstanceCredentials(BaseModel):
    """Returned after a successful create."""

    instance_id: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


# ── Ledger ────────────────────────────────────────────────────────────────────

class ProvisionedResourceSet(BaseModel):
    """Identifiers of every resource a provisioning run owns."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    instance_ids: list[str] = Field(default_factory=list, alias="instanceIDs")
    security_group_ids: list[str] = Field(default_factory=list, alias="securityGroupIDs")

    def ids(self, kind: ResourceKind) -> list[str]:
        if kind is ResourceKind.INSTANCE:
            return self.instance_ids
        return self.security_group_ids

    def is_empty(self) -> bool:
        return not self.instance_ids and not self.security_group_ids
