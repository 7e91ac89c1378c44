"""
EC2 helper for the Windows instance itself.

`InstanceProvisioner` covers the instance's whole life:
  1. Pick the image (latest Windows Server 2019 with containers by default).
  2. Pick a public subnet in the cluster VPC.
  3. Launch with only the Windows security group and wait for ``running``.
  4. Wait until both status checks report ``ok``.
  5. Tag it and join it to the cluster (worker SG + worker instance profile).
  6. Fetch and decrypt the Administrator password.
  7. Terminate it and wait until it is gone.
"""

import base64
import logging
import time
from typing import Callable, Optional

import paramiko
from cryptography.hazmat.primitives.asymmetric import padding

from winnode.cloud.cluster import ownership_tag_key
from winnode.cloud.ec2 import error_code, provider_call
from winnode.cloud.polling import Deadline, poll_until
from winnode.config import settings
from winnode.errors import (
    AmbiguousResourceError,
    CredentialsError,
    JoinError,
    NotFoundError,
    ProviderAPIError,
    TerminationTimeoutError,
)
from winnode.schemas.resources import ClusterContext, InstanceCredentials, LaunchSpec

logger = logging.getLogger(__name__)

# Substring every acceptable image name carries: OS edition + container runtime.
WINDOWS_IMAGE_EDITION = "Windows_Server-2019-English-Full-ContainersLatest"

# Kubelet serves container logs on this port; it must be open in the
# Windows firewall for `oc logs` to work once the node has joined.
CONTAINER_LOGS_PORT = 10250

USER_DATA = f"""<powershell>
Enable-PSRemoting -Force -SkipNetworkProfileCheck
New-NetFirewallRule -DisplayName "ContainerLogsPort" -LocalPort {CONTAINER_LOGS_PORT} `
  -Enabled True -Direction Inbound -Protocol TCP -Action Allow -EdgeTraversalPolicy Allow
</powershell>
<persist>false</persist>
"""

GONE_STATES = ("shutting-down", "terminated")


def decrypt_password(password_data: str, private_key_path: str) -> str:
    """Decrypt EC2 ``PasswordData`` with the key pair's RSA private key."""
    try:
        key = paramiko.RSAKey.from_private_key_file(private_key_path)
        plaintext = key.key.decrypt(base64.b64decode(password_data), padding.PKCS1v15())
    except (OSError, paramiko.SSHException, ValueError) as exc:
        raise CredentialsError(
            f"cannot decrypt Windows password with {private_key_path}: {exc}"
        ) from exc
    return plaintext.decode("utf-8")


class InstanceProvisioner:
    """Launches, joins, inspects and terminates the Windows instance."""

    def __init__(
        self,
        ec2,
        image_owner: Optional[str] = None,
        image_name_pattern: Optional[str] = None,
        ownership_tag_prefix: Optional[str] = None,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ec2 = ec2
        self.image_owner = image_owner or settings.image_owner
        self.image_name_pattern = image_name_pattern or settings.image_name_pattern
        self.ownership_tag_prefix = ownership_tag_prefix
        self.poll_interval = settings.poll_interval if poll_interval is None else poll_interval
        self.sleep = sleep

    # ── Image / subnet selection ──────────────────────────────────────────────

    def select_image(self, image_id: Optional[str] = None) -> str:
        """
        Return *image_id*, or the most recently published Windows image.

        Either way the image is described by id and exactly one image must come
        back.  An auto-selected image must also carry the expected edition in
        its name; an explicit one is trusted as given.
        """
        auto_selected = not image_id
        if auto_selected:
            with provider_call("describe images", pattern=self.image_name_pattern):
                resp = self.ec2.describe_images(
                    Owners=[self.image_owner],
                    Filters=[
                        {"Name": "name", "Values": [self.image_name_pattern]},
                        {"Name": "state", "Values": ["available"]},
                    ],
                )
            images = resp.get("Images", [])
            if not images:
                raise NotFoundError(f"no image matches '{self.image_name_pattern}'")
            # ISO-8601 timestamps sort chronologically as strings.
            latest = max(images, key=lambda i: i.get("CreationDate", ""))
            image_id = latest["ImageId"]

        with provider_call("describe images", image_id=image_id):
            resp = self.ec2.describe_images(ImageIds=[image_id])
        images = resp.get("Images", [])
        if not images:
            raise NotFoundError(f"image '{image_id}' does not exist")
        if len(images) > 1:
            raise AmbiguousResourceError(f"image '{image_id}'", [i["ImageId"] for i in images])
        name = images[0].get("Name", "")
        if auto_selected and WINDOWS_IMAGE_EDITION not in name:
            raise NotFoundError(
                f"image '{image_id}' ({name}) is not a {WINDOWS_IMAGE_EDITION} image"
            )
        logger.info("Using image %s (%s)", image_id, name)
        return image_id

    def public_subnets(self, vpc_id: str) -> list[dict]:
        """Subnets of *vpc_id* whose route table routes to an internet gateway."""
        vpc_filter = [{"Name": "vpc-id", "Values": [vpc_id]}]
        with provider_call("describe network", vpc_id=vpc_id):
            igws = self.ec2.describe_internet_gateways(
                Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}]
            )["InternetGateways"]
            tables = self.ec2.describe_route_tables(Filters=vpc_filter)["RouteTables"]
            subnets = self.ec2.describe_subnets(Filters=vpc_filter)["Subnets"]

        igw_ids = {g["InternetGatewayId"] for g in igws}
        main_is_public = False
        explicit: dict[str, bool] = {}
        for table in tables:
            public = any(r.get("GatewayId") in igw_ids for r in table.get("Routes", []))
            for assoc in table.get("Associations", []):
                if assoc.get("Main"):
                    main_is_public = public
                elif assoc.get("SubnetId"):
                    explicit[assoc["SubnetId"]] = public

        return [s for s in subnets if explicit.get(s["SubnetId"], main_is_public)]

    def select_subnet(self, ctx: ClusterContext, subnet_id: Optional[str] = None) -> str:
        public = self.public_subnets(ctx.vpc_id)
        if subnet_id:
            if subnet_id not in {s["SubnetId"] for s in public}:
                raise NotFoundError(
                    f"subnet '{subnet_id}' is not a public subnet of VPC {ctx.vpc_id}"
                )
            return subnet_id
        if not public:
            raise NotFoundError(f"VPC {ctx.vpc_id} has no public subnet")
        best = min(
            public,
            key=lambda s: (-s.get("AvailableIpAddressCount", 0), s["SubnetId"]),
        )
        logger.info("Using public subnet %s in %s", best["SubnetId"], best.get("AvailabilityZone"))
        return best["SubnetId"]

    # ── Launch ────────────────────────────────────────────────────────────────

    def launch(
        self,
        ctx: ClusterContext,
        spec: LaunchSpec,
        on_create: Optional[Callable[[str], None]] = None,
        deadline: Optional[Deadline] = None,
        timeout: Optional[float] = None,
    ) -> tuple[str, str]:
        """
        Launch one instance and wait until it is running with a public address.

        *on_create* receives the instance id as soon as EC2 returns it.
        Returns ``(instance_id, public_address)``.
        """
        image_id = self.select_image(spec.image_id)
        subnet_id = self.select_subnet(ctx, spec.subnet_id)

        logger.info(
            "Launching %s instance from %s in %s (key %s).",
            spec.instance_type,
            image_id,
            subnet_id,
            spec.key_name,
        )
        with provider_call("run instances", image_id=image_id, subnet_id=subnet_id):
            resp = self.ec2.run_instances(
                ImageId=image_id,
                InstanceType=spec.instance_type,
                KeyName=spec.key_name,
                MinCount=1,
                MaxCount=1,
                UserData=USER_DATA,
                NetworkInterfaces=[
                    {
                        "DeviceIndex": 0,
                        "SubnetId": subnet_id,
                        "Groups": [spec.security_group_id],
                        "AssociatePublicIpAddress": True,
                        "DeleteOnTermination": True,
                    }
                ],
            )
        instance_id = resp["Instances"][0]["InstanceId"]
        logger.info("Instance created: %s", instance_id)
        if on_create is not None:
            on_create(instance_id)

        instance = poll_until(
            lambda: self._running_probe(instance_id),
            lambda i: i["State"]["Name"] == "running" and bool(i.get("PublicIpAddress")),
            timeout=settings.running_timeout if timeout is None else timeout,
            interval=self.poll_interval,
            description=f"instance {instance_id} to be running",
            deadline=deadline,
            sleep=self.sleep,
        )
        return instance_id, instance["PublicIpAddress"]

    def _running_probe(self, instance_id: str) -> dict:
        # Freshly launched ids can be briefly unknown to DescribeInstances;
        # the ProviderAPIError raised then is retried by poll_until.
        instances = self._describe_instances([instance_id])
        if not instances:
            raise ProviderAPIError("describe instances", "not visible yet", instance_id=instance_id)
        instance = instances[0]
        state = instance["State"]["Name"]
        if state in GONE_STATES:
            raise NotFoundError(f"instance {instance_id} is {state} before it ever ran")
        return instance

    def wait_until_serviceable(
        self,
        instance_id: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> dict:
        """Block until both EC2 status checks of *instance_id* report ``ok``."""

        def probe() -> dict:
            with provider_call("describe instance status", instance_id=instance_id):
                resp = self.ec2.describe_instance_status(
                    InstanceIds=[instance_id], IncludeAllInstances=True
                )
            statuses = resp.get("InstanceStatuses", [])
            return statuses[0] if statuses else {}

        status = poll_until(
            probe,
            lambda s: (
                s.get("InstanceStatus", {}).get("Status") == "ok"
                and s.get("SystemStatus", {}).get("Status") == "ok"
            ),
            timeout=settings.serviceable_timeout if timeout is None else timeout,
            interval=self.poll_interval if interval is None else interval,
            description=f"instance {instance_id} status checks",
            deadline=deadline,
            sleep=self.sleep,
        )
        logger.info("Instance %s passed its status checks.", instance_id)
        return status

    # ── Join ──────────────────────────────────────────────────────────────────

    def tag_and_join(self, ctx: ClusterContext, instance_id: str, windows_sg_id: str) -> None:
        """
        Tag the instance and make it a peer of the cluster workers.

        The worker security group and the worker instance profile are applied
        together; if either fails a `JoinError` is raised and the instance
        must be treated as not joined.
        """
        instance = self.describe_instance(instance_id)
        zone = instance.get("Placement", {}).get("AvailabilityZone", "")
        name = f"{ctx.infra_id}-windows-worker-{zone}-{instance_id[-8:]}".replace("--", "-")
        ownership = ownership_tag_key(ctx.infra_id, self.ownership_tag_prefix)

        with provider_call("create tags", instance_id=instance_id):
            self.ec2.create_tags(
                Resources=[instance_id],
                Tags=[
                    {"Key": "Name", "Value": name},
                    {"Key": ownership, "Value": "owned"},
                ],
            )
        logger.info("Tagged %s as '%s' (%s=owned).", instance_id, name, ownership)

        with provider_call("attach worker security group", JoinError, instance_id=instance_id):
            self.ec2.modify_instance_attribute(
                InstanceId=instance_id,
                Groups=[windows_sg_id, ctx.worker_security_group_id],
            )
        with provider_call("associate worker instance profile", JoinError, instance_id=instance_id):
            self.ec2.associate_iam_instance_profile(
                IamInstanceProfile={"Arn": ctx.worker_instance_profile_arn},
                InstanceId=instance_id,
            )
        logger.info(
            "Instance %s joined cluster '%s' (SG %s, profile %s).",
            instance_id,
            ctx.infra_id,
            ctx.worker_security_group_id,
            ctx.worker_instance_profile_arn,
        )

    # ── Credentials ───────────────────────────────────────────────────────────

    def get_credentials(
        self,
        instance_id: str,
        address: str,
        private_key_path: str,
        username: Optional[str] = None,
        timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> InstanceCredentials:
        """Wait for the encrypted Administrator password and decrypt it."""

        def probe() -> str:
            with provider_call("get password data", instance_id=instance_id):
                resp = self.ec2.get_password_data(InstanceId=instance_id)
            return (resp.get("PasswordData") or "").strip()

        password_data = poll_until(
            probe,
            bool,
            timeout=settings.password_timeout if timeout is None else timeout,
            interval=self.poll_interval,
            description=f"password data of instance {instance_id}",
            deadline=deadline,
            sleep=self.sleep,
        )
        return InstanceCredentials(
            instance_id=instance_id,
            address=address,
            username=username or settings.windows_username,
            password=decrypt_password(password_data, private_key_path),
        )

    # ── Inspection ────────────────────────────────────────────────────────────

    def _describe_instances(self, instance_ids: list[str]) -> list[dict]:
        with provider_call("describe instances", instance_ids=",".join(instance_ids)):
            resp = self.ec2.describe_instances(InstanceIds=instance_ids)
        return [i for r in resp.get("Reservations", []) for i in r.get("Instances", [])]

    def describe_instance(self, instance_id: str) -> dict:
        """Current DescribeInstances entry for *instance_id*."""
        try:
            instances = self._describe_instances([instance_id])
        except ProviderAPIError as exc:
            if error_code(exc) == "InvalidInstanceID.NotFound":
                raise NotFoundError(f"instance {instance_id} does not exist") from exc
            raise
        if not instances:
            raise NotFoundError(f"instance {instance_id} does not exist")
        return instances[0]

    # ── Teardown ──────────────────────────────────────────────────────────────

    def terminate(self, instance_ids: list[str]) -> None:
        """Request termination; instances the provider no longer knows are skipped."""
        for instance_id in instance_ids:
            try:
                with provider_call("terminate instance", instance_id=instance_id):
                    self.ec2.terminate_instances(InstanceIds=[instance_id])
            except ProviderAPIError as exc:
                if error_code(exc) == "InvalidInstanceID.NotFound":
                    logger.info("Instance %s already gone.", instance_id)
                    continue
                raise
            logger.info("Termination requested for %s", instance_id)

    def instance_state(self, instance_id: str) -> str:
        """State name of *instance_id*; unknown instances count as terminated."""
        try:
            return self.describe_instance(instance_id)["State"]["Name"]
        except NotFoundError:
            return "terminated"

    def wait_until_terminated(
        self,
        instance_ids: list[str],
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        deadline: Optional[Deadline] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        if not instance_ids:
            return
        poll_until(
            lambda: {i: self.instance_state(i) for i in instance_ids},
            lambda states: all(s == "terminated" for s in states.values()),
            timeout=settings.termination_timeout if timeout is None else timeout,
            interval=self.poll_interval if interval is None else interval,
            description=f"termination of {', '.join(instance_ids)}",
            deadline=deadline,
            max_attempts=max_attempts,
            timeout_error=TerminationTimeoutError,
            sleep=self.sleep,
        )
        logger.info("Instance(s) %s terminated.", ", ".join(instance_ids))
