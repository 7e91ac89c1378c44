"""
Cluster discovery: finds the pre-existing infrastructure of an OpenShift
cluster so a Windows node can be wired into it.

Nothing here mutates anything.  Resolution goes:
  1. Read the cluster's Infrastructure object (config.openshift.io/v1) through
     the kubeconfig to learn the infra ID, platform and region.
  2. Find the VPC tagged ``<ownership prefix><infraID>``.
  3. Find the worker security group named ``<infraID>-worker-sg`` in that VPC.
  4. Fetch the IAM instance profile ``<infraID>-worker-profile``.
"""

import logging
from typing import Callable, Optional

from kubernetes import client as kube_client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException

from winnode.cloud.ec2 import error_code, provider_call, tag_filter
from winnode.config import settings
from winnode.errors import AmbiguousResourceError, NotFoundError, ProviderAPIError
from winnode.schemas.resources import ClusterContext, ClusterInfrastructure

logger = logging.getLogger(__name__)

INFRASTRUCTURE_GROUP = "config.openshift.io"
INFRASTRUCTURE_VERSION = "v1"
INFRASTRUCTURE_PLURAL = "infrastructures"
INFRASTRUCTURE_NAME = "cluster"


def ownership_tag_key(infra_id: str, prefix: Optional[str] = None) -> str:
    """Tag key that marks a resource as part of the cluster deployment."""
    return f"{settings.ownership_tag_prefix if prefix is None else prefix}{infra_id}"


def read_cluster_infrastructure(kubeconfig: str) -> ClusterInfrastructure:
    """
    Read the cluster-scoped Infrastructure object through *kubeconfig*.

    Raises `NotFoundError` when the object (or its infrastructure name) is
    missing, and `ProviderAPIError` for any other API failure.
    """
    try:
        api_client = kube_config.new_client_from_config(config_file=kubeconfig or None)
        infra = kube_client.CustomObjectsApi(api_client).get_cluster_custom_object(
            INFRASTRUCTURE_GROUP,
            INFRASTRUCTURE_VERSION,
            INFRASTRUCTURE_PLURAL,
            INFRASTRUCTURE_NAME,
        )
    except ApiException as exc:
        if exc.status == 404:
            raise NotFoundError(
                f"cluster behind {kubeconfig!r} has no Infrastructure object"
            ) from exc
        logger.error("Reading cluster infrastructure failed: %s", exc)
        raise ProviderAPIError(
            "get Infrastructure", str(exc), code=str(exc.status), kubeconfig=kubeconfig
        ) from exc
    except kube_config.ConfigException as exc:
        raise NotFoundError(f"cannot load kubeconfig {kubeconfig!r}: {exc}") from exc

    status = infra.get("status") or {}
    infra_id = status.get("infrastructureName")
    if not infra_id:
        raise NotFoundError(
            f"Infrastructure object of {kubeconfig!r} carries no infrastructureName"
        )
    platform_status = status.get("platformStatus") or {}
    platform = platform_status.get("type") or status.get("platform") or ""
    region = (platform_status.get("aws") or {}).get("region", "")
    return ClusterInfrastructure(infra_id=infra_id, platform=platform, region=region)


def _unique(items: list, what: str, key: str):
    if not items:
        raise NotFoundError(f"no {what} found")
    if len(items) > 1:
        raise AmbiguousResourceError(what, sorted(i[key] for i in items))
    return items[0]


class ClusterContextResolver:
    """Resolve a cluster identifier (its kubeconfig path) to a ClusterContext."""

    def __init__(
        self,
        ec2,
        iam,
        infra_id_reader: Optional[Callable[[str], str]] = None,
        ownership_tag_prefix: Optional[str] = None,
        worker_sg_suffix: Optional[str] = None,
        worker_profile_suffix: Optional[str] = None,
    ) -> None:
        self.ec2 = ec2
        self.iam = iam
        self.infra_id_reader = infra_id_reader or (
            lambda ident: read_cluster_infrastructure(ident).infra_id
        )
        self.ownership_tag_prefix = (
            settings.ownership_tag_prefix if ownership_tag_prefix is None else ownership_tag_prefix
        )
        self.worker_sg_suffix = worker_sg_suffix or settings.worker_sg_suffix
        self.worker_profile_suffix = worker_profile_suffix or settings.worker_profile_suffix

    def resolve(self, cluster_identifier: str) -> ClusterContext:
        infra_id = self.infra_id_reader(cluster_identifier)
        logger.info("Resolving cluster context for infra ID '%s'.", infra_id)

        vpc = self.find_vpc(infra_id)
        worker_sg_id = self.find_worker_security_group(infra_id, vpc["VpcId"])
        profile_arn = self.find_worker_instance_profile(infra_id)

        context = ClusterContext(
            infra_id=infra_id,
            vpc_id=vpc["VpcId"],
            vpc_cidr=vpc["CidrBlock"],
            worker_security_group_id=worker_sg_id,
            worker_instance_profile_arn=profile_arn,
        )
        logger.info(
            "Cluster '%s': VPC %s (%s), worker SG %s.",
            infra_id,
            context.vpc_id,
            context.vpc_cidr,
            worker_sg_id,
        )
        return context

    def find_vpc(self, infra_id: str) -> dict:
        key = ownership_tag_key(infra_id, self.ownership_tag_prefix)
        with provider_call("describe VPCs", infra_id=infra_id):
            resp = self.ec2.describe_vpcs(Filters=[{"Name": "tag-key", "Values": [key]}])
        return _unique(resp.get("Vpcs", []), f"VPC tagged '{key}'", "VpcId")

    def find_worker_security_group(self, infra_id: str, vpc_id: str) -> str:
        name = f"{infra_id}{self.worker_sg_suffix}"
        with provider_call("describe security groups", vpc_id=vpc_id, name=name):
            resp = self.ec2.describe_security_groups(
                Filters=[
                    {"Name": "vpc-id", "Values": [vpc_id]},
                    tag_filter("Name", name),
                ]
            )
        group = _unique(resp.get("SecurityGroups", []), f"security group '{name}'", "GroupId")
        return group["GroupId"]

    def find_worker_instance_profile(self, infra_id: str) -> str:
        name = f"{infra_id}{self.worker_profile_suffix}"
        try:
            with provider_call("get instance profile", name=name):
                resp = self.iam.get_instance_profile(InstanceProfileName=name)
        except ProviderAPIError as exc:
            if error_code(exc) == "NoSuchEntity":
                raise NotFoundError(f"no instance profile '{name}' found") from exc
            raise
        return resp["InstanceProfile"]["Arn"]
