"""
Lifecycle service: creates and destroys the Windows node bundle.

`LifecycleOrchestrator` is the only entry point callers use.  It sequences
cluster discovery, the Windows security group, the instance, and the ledger,
and owns the rollback policy:

  create   ResolvingContext → ComposingSecurityGroup → Launching → Tagging
           → Recorded.  Every resource id is appended to the ledger as soon
           as the cloud call that created it returns.  On failure the ledger
           (and nothing else) is torn down and the error is surfaced.

  destroy  terminate recorded instances → confirm terminated → delete
           recorded security groups → clear the ledger.  Whatever could not
           be destroyed stays in the ledger so a retry converges.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional, assert_never

from winnode.cloud.cluster import ClusterContextResolver
from winnode.cloud.instance import InstanceProvisioner
from winnode.cloud.polling import Deadline
from winnode.cloud.security_group import SecurityGroupComposer, lookup_public_ip
from winnode.config import settings
from winnode.dao.base import ResourceStateStore
from winnode.errors import (
    LedgerCorruptError,
    PartialFailureError,
    ProviderAPIError,
    ResourcesAlreadyOwnedError,
    TerminationTimeoutError,
)
from winnode.providers.factory import AwsProvider, CloudProvider, resolve_from_settings
from winnode.schemas.resources import (
    ClusterContext,
    InstanceCredentials,
    LaunchSpec,
    ProvisionedResourceSet,
    ResourceKind,
)

logger = logging.getLogger(__name__)


class CreateState(str, Enum):
    RESOLVING_CONTEXT = "ResolvingContext"
    COMPOSING_SECURITY_GROUP = "ComposingSecurityGroup"
    LAUNCHING = "Launching"
    TAGGING = "Tagging"
    RECORDED = "Recorded"


class LifecycleOrchestrator:
    """
    Create / destroy one Windows node for one cluster.

    The orchestrator keeps the resolved `ClusterContext` and the last
    DescribeInstances snapshot of the node as attributes so callers can
    inspect what was built without re-querying.
    """

    def __init__(
        self,
        cluster_identifier: str,
        resolver: ClusterContextResolver,
        security_groups: SecurityGroupComposer,
        instances: InstanceProvisioner,
        store: ResourceStateStore,
        instance_type: str,
        key_name: str,
        private_key_path: str,
        image_id: Optional[str] = None,
        subnet_id: Optional[str] = None,
        caller_ip_lookup: Callable[[], str] = lookup_public_ip,
        serviceable_timeout: Optional[float] = None,
        termination_timeout: Optional[float] = None,
        password_timeout: Optional[float] = None,
    ) -> None:
        self.cluster_identifier = cluster_identifier
        self.resolver = resolver
        self.security_groups = security_groups
        self.instances = instances
        self.store = store
        self.instance_type = instance_type
        self.key_name = key_name
        self.private_key_path = private_key_path
        self.image_id = image_id or None
        self.subnet_id = subnet_id or None
        self.caller_ip_lookup = caller_ip_lookup
        self.serviceable_timeout = serviceable_timeout
        self.termination_timeout = termination_timeout
        self.password_timeout = password_timeout

        self.state: Optional[CreateState] = None
        self.context: Optional[ClusterContext] = None
        self.last_instance: Optional[dict] = None
        # One create or destroy at a time per orchestrator.
        self._lock = threading.Lock()

    @classmethod
    def for_provider(cls, provider: CloudProvider, **kwargs) -> "LifecycleOrchestrator":
        """Wire an orchestrator to the components of a provider variant."""
        match provider:
            case AwsProvider():
                return cls(
                    cluster_identifier=provider.kubeconfig,
                    resolver=provider.resolver(),
                    security_groups=provider.security_groups(),
                    instances=provider.instances(),
                    store=provider.ledger(),
                    instance_type=provider.instance_type,
                    key_name=provider.key_name,
                    private_key_path=provider.private_key_path,
                    image_id=provider.image_id,
                    **kwargs,
                )
            case _:
                assert_never(provider)

    @classmethod
    def from_settings(cls) -> "LifecycleOrchestrator":
        return cls.for_provider(resolve_from_settings())

    def _recorder(self, kind: ResourceKind) -> Callable[[str], None]:
        return lambda resource_id: self.store.append(kind, resource_id)

    # ── Create ────────────────────────────────────────────────────────────────

    def create(self, deadline: Optional[Deadline] = None) -> InstanceCredentials:
        """
        Provision the Windows node and return its login credentials.

        Raises
        ------
        ResourcesAlreadyOwnedError
            The ledger already lists resources; destroy them first.
        PartialFailureError
            Something was created before the failure.  The recorded resources
            have been torn down (see ``remediation_error`` if that failed too)
            and the original error is chained as ``__cause__``.
        WinNodeError
            Any failure before the first resource was created, unchanged.
        """
        with self._lock:
            return self._create(deadline)

    def _create(self, deadline: Optional[Deadline]) -> InstanceCredentials:
        owned = self.store.load()
        if not owned.is_empty():
            raise ResourcesAlreadyOwnedError(
                f"ledger already owns instances {owned.instance_ids} and security "
                f"groups {owned.security_group_ids}; destroy them first"
            )

        try:
            self.state = CreateState.RESOLVING_CONTEXT
            self.context = self.resolver.resolve(self.cluster_identifier)

            self.state = CreateState.COMPOSING_SECURITY_GROUP
            caller_ip = self.caller_ip_lookup()
            sg_id = self.security_groups.ensure_security_group(
                self.context, caller_ip, on_create=self._recorder(ResourceKind.SECURITY_GROUP)
            )
            # A reused group is owned from now on as well.
            self.store.append(ResourceKind.SECURITY_GROUP, sg_id)

            self.state = CreateState.LAUNCHING
            spec = LaunchSpec(
                image_id=self.image_id,
                instance_type=self.instance_type,
                key_name=self.key_name,
                security_group_id=sg_id,
                subnet_id=self.subnet_id,
            )
            instance_id, address = self.instances.launch(
                self.context,
                spec,
                on_create=self._recorder(ResourceKind.INSTANCE),
                deadline=deadline,
            )
            self.instances.wait_until_serviceable(
                instance_id, timeout=self.serviceable_timeout, deadline=deadline
            )

            self.state = CreateState.TAGGING
            self.instances.tag_and_join(self.context, instance_id, sg_id)
            self.last_instance = self.instances.describe_instance(instance_id)
            credentials = self.instances.get_credentials(
                instance_id,
                address,
                self.private_key_path,
                timeout=self.password_timeout,
                deadline=deadline,
            )
        except Exception as exc:
            stage = self.state.value if self.state else "Starting"
            if self._owned_nothing():
                logger.error("Create failed while %s; nothing to roll back: %s", stage, exc)
                raise
            raise self._remediate(exc, stage) from exc

        self.state = CreateState.RECORDED
        logger.info(
            "Windows node %s is up at %s and joined cluster '%s'.",
            credentials.instance_id,
            credentials.address,
            self.context.infra_id,
        )
        return credentials

    def _owned_nothing(self) -> bool:
        try:
            return self.store.load().is_empty()
        except LedgerCorruptError:
            return False

    def _remaining(self) -> Optional[ProvisionedResourceSet]:
        try:
            return self.store.load()
        except LedgerCorruptError:
            return None

    def _remediate(self, exc: Exception, stage: str) -> PartialFailureError:
        logger.warning("Create failed while %s (%s); rolling back recorded resources.", stage, exc)
        remediation_error = None
        try:
            self._destroy(Deadline.optional(settings.destroy_deadline))
        except Exception as cleanup_exc:
            logger.error("Rollback after failed create did not complete: %s", cleanup_exc)
            remediation_error = cleanup_exc
        return PartialFailureError(
            f"create failed while {stage}: {exc}",
            stage=stage,
            remaining=self._remaining(),
            remediation_error=remediation_error,
        )

    # ── Destroy ───────────────────────────────────────────────────────────────

    def destroy(self, deadline: Optional[Deadline] = None) -> None:
        """
        Tear down everything the ledger lists.

        Instances are terminated and confirmed gone before any security group
        is deleted.  The ledger is cleared only when nothing is left; on a
        partial failure it keeps exactly the undestroyed remainder.
        """
        with self._lock:
            self._destroy(deadline)

    def _destroy(self, deadline: Optional[Deadline]) -> None:
        owned = self.store.load()
        if owned.is_empty():
            logger.info("Ledger is empty; nothing to destroy.")
            self.store.clear()
            return

        instance_ids = list(owned.instance_ids)
        if instance_ids:
            logger.info("Terminating instance(s) %s.", ", ".join(instance_ids))
            self.instances.terminate(instance_ids)
            try:
                self.instances.wait_until_terminated(
                    instance_ids, timeout=self.termination_timeout, deadline=deadline
                )
            except TerminationTimeoutError as exc:
                states = exc.last_result if isinstance(exc.last_result, dict) else {}
                for instance_id, state in states.items():
                    if state == "terminated":
                        self.store.remove(ResourceKind.INSTANCE, instance_id)
                raise
            for instance_id in instance_ids:
                self.store.remove(ResourceKind.INSTANCE, instance_id)
            self.last_instance = None

        failures: dict[str, ProviderAPIError] = {}
        for group_id in owned.security_group_ids:
            try:
                self.security_groups.delete_security_group(group_id)
            except ProviderAPIError as exc:
                failures[group_id] = exc
                continue
            self.store.remove(ResourceKind.SECURITY_GROUP, group_id)

        if failures:
            first = next(iter(failures.values()))
            raise PartialFailureError(
                f"could not delete security group(s) {', '.join(failures)}: {first}",
                stage="DeletingSecurityGroups",
                remaining=self._remaining(),
            ) from first

        self.store.clear()
        logger.info("All recorded resources destroyed; ledger cleared.")

    def owned_resources(self) -> ProvisionedResourceSet:
        """What the ledger currently says this installer owns."""
        return self.store.load()
