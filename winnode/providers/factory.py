"""
Provider factory: turns a cluster kubeconfig plus installer options into a
concrete cloud provider.

`CloudProvider` is a closed union of provider variants.  Callers `match` on
it to reach variant-specific operations; adding a variant makes every
non-exhaustive `match` fail type checking via `assert_never`.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

from winnode.cloud.cluster import ClusterContextResolver, read_cluster_infrastructure
from winnode.cloud.ec2 import build_session
from winnode.cloud.instance import InstanceProvisioner
from winnode.cloud.security_group import SecurityGroupComposer
from winnode.config import settings
from winnode.dao.json_file import JsonFileResourceStateStore
from winnode.errors import UnsupportedProviderError
from winnode.schemas.resources import ClusterInfrastructure

logger = logging.getLogger(__name__)

AWS = "aws"


@dataclass
class AwsProvider:
    """Everything needed to provision a Windows node on AWS."""

    kubeconfig: str
    infrastructure: ClusterInfrastructure
    ec2: object
    iam: object
    output_dir: Path
    image_id: str
    instance_type: str
    key_name: str
    private_key_path: str
    kind: str = field(default=AWS, init=False)

    @property
    def region(self) -> str:
        return self.infrastructure.region

    def resolver(self) -> ClusterContextResolver:
        infra_id = self.infrastructure.infra_id
        return ClusterContextResolver(self.ec2, self.iam, infra_id_reader=lambda _: infra_id)

    def security_groups(self) -> SecurityGroupComposer:
        return SecurityGroupComposer(self.ec2)

    def instances(self) -> InstanceProvisioner:
        return InstanceProvisioner(self.ec2)

    def ledger(self) -> JsonFileResourceStateStore:
        return JsonFileResourceStateStore.in_directory(self.output_dir, settings.ledger_file_name)


CloudProvider = Union[AwsProvider]


def resolve(
    cluster_kubeconfig: str,
    credentials_file: str,
    provider_kind: str,
    output_dir: str,
    image_id: str,
    instance_type: str,
    key_name: str,
    private_key_path: str,
    profile: Optional[str] = None,
    infrastructure_reader: Callable[[str], ClusterInfrastructure] = read_cluster_infrastructure,
    session_factory: Callable = build_session,
) -> CloudProvider:
    """
    Build the provider variant for the cluster behind *cluster_kubeconfig*.

    An empty *provider_kind* means "whatever platform the cluster runs on".
    """
    infrastructure = infrastructure_reader(cluster_kubeconfig)
    kind = (provider_kind or infrastructure.platform).strip().lower()

    if kind != AWS:
        raise UnsupportedProviderError(
            f"provider '{provider_kind or infrastructure.platform}' is not supported; "
            f"only '{AWS}' is"
        )

    region = infrastructure.region or settings.aws_region
    if not infrastructure.region:
        infrastructure = infrastructure.model_copy(update={"region": region})
    session = session_factory(region, profile or settings.aws_profile, credentials_file)
    logger.info(
        "Using AWS provider for cluster '%s' in %s.", infrastructure.infra_id, region
    )
    return AwsProvider(
        kubeconfig=cluster_kubeconfig,
        infrastructure=infrastructure,
        ec2=session.client("ec2"),
        iam=session.client("iam"),
        output_dir=Path(output_dir),
        image_id=image_id,
        instance_type=instance_type,
        key_name=key_name,
        private_key_path=private_key_path,
    )


def resolve_from_settings(**overrides) -> CloudProvider:
    """`resolve` with every argument defaulted from application settings."""
    kwargs = dict(
        cluster_kubeconfig=settings.kubeconfig,
        credentials_file=settings.aws_credentials_file,
        provider_kind=settings.provider_kind,
        output_dir=settings.output_dir,
        image_id=settings.image_id,
        instance_type=settings.instance_type,
        key_name=settings.key_name,
        private_key_path=settings.private_key_path,
    )
    kwargs.update(overrides)
    return resolve(**kwargs)
