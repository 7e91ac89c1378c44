import base64
import fnmatch
import itertools
import sys
from pathlib import Path

import pytest
from botocore.exceptions import ClientError
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from winnode.cloud.cluster import ClusterContextResolver
from winnode.cloud.instance import InstanceProvisioner
from winnode.cloud.security_group import SecurityGroupComposer
from winnode.dao.json_file import JsonFileResourceStateStore
from winnode.dependencies.api import get_current_user
from winnode.dependencies.orchestrator import get_orchestrator
from winnode.main import app
from winnode.schemas.resources import ClusterContext
from winnode.services.lifecycle import LifecycleOrchestrator

INFRA_ID = "abc123"
OWNERSHIP_KEY = f"cluster-owned-by/{INFRA_ID}"
CALLER_IP = "203.0.113.5"
VPC_CIDR = "10.0.0.0/16"
WORKER_PROFILE_ARN = f"arn:aws:iam::123456789012:instance-profile/{INFRA_ID}-worker-profile"
WINDOWS_PASSWORD = "Tr0ub4dor&3"


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def _tags(resource: dict) -> dict:
    return {t["Key"]: t["Value"] for t in resource.get("Tags", [])}


def _field(resource: dict, name: str) -> list:
    """Values of *resource* a DescribeX filter called *name* compares against."""
    if name == "tag-key":
        return list(_tags(resource))
    if name.startswith("tag:"):
        value = _tags(resource).get(name[4:])
        return [] if value is None else [value]
    if name == "attachment.vpc-id":
        return [a["VpcId"] for a in resource.get("Attachments", [])]
    simple = {"vpc-id": "VpcId", "name": "Name", "state": "State"}
    value = resource.get(simple[name])
    return [] if value is None else [value]


def _matches(resource: dict, filters) -> bool:
    for flt in filters or []:
        values = _field(resource, flt["Name"])
        if not any(fnmatch.fnmatchcase(v, pattern) for v in values for pattern in flt["Values"]):
            return False
    return True


class FakeEC2:
    """
    In-memory stand-in for the slice of the boto3 EC2 client winnode uses.

    Instances go ``pending`` → ``running`` on their first describe and
    ``shutting-down`` → ``terminated`` on the first describe after
    termination, so polling loops are exercised.  ``fail[method]`` makes the
    named method raise the given exception.
    """

    def __init__(self) -> None:
        self.vpcs: list[dict] = []
        self.security_groups: dict[str, dict] = {}
        self.images: list[dict] = []
        self.internet_gateways: list[dict] = []
        self.route_tables: list[dict] = []
        self.subnets: list[dict] = []
        self.instances: dict[str, dict] = {}
        self.instance_status = "ok"
        self.password_data = ""
        self.stuck_shutting_down = False
        self.fail: dict[str, Exception] = {}
        self.calls: list[tuple[str, dict]] = []
        self._ids = itertools.count(1)

    def _call(self, name: str, kwargs: dict) -> None:
        self.calls.append((name, kwargs))
        if name in self.fail:
            raise self.fail[name]

    def called(self, name: str) -> list[dict]:
        return [kwargs for called, kwargs in self.calls if called == name]

    # ── Network ───────────────────────────────────────────────────────────────

    def describe_vpcs(self, **kwargs):
        self._call("describe_vpcs", kwargs)
        return {"Vpcs": [v for v in self.vpcs if _matches(v, kwargs.get("Filters"))]}

    def describe_internet_gateways(self, **kwargs):
        self._call("describe_internet_gateways", kwargs)
        return {
            "InternetGateways": [
                g for g in self.internet_gateways if _matches(g, kwargs.get("Filters"))
            ]
        }

    def describe_route_tables(self, **kwargs):
        self._call("describe_route_tables", kwargs)
        return {"RouteTables": [t for t in self.route_tables if _matches(t, kwargs.get("Filters"))]}

    def describe_subnets(self, **kwargs):
        self._call("describe_subnets", kwargs)
        return {"Subnets": [s for s in self.subnets if _matches(s, kwargs.get("Filters"))]}

    # ── Security groups ───────────────────────────────────────────────────────

    def describe_security_groups(self, **kwargs):
        self._call("describe_security_groups", kwargs)
        groups = list(self.security_groups.values())
        if "GroupIds" in kwargs:
            groups = [g for g in groups if g["GroupId"] in kwargs["GroupIds"]]
        return {"SecurityGroups": [g for g in groups if _matches(g, kwargs.get("Filters"))]}

    def create_security_group(self, **kwargs):
        self._call("create_security_group", kwargs)
        group_id = f"sg-{next(self._ids):04d}"
        tags = [t for spec in kwargs.get("TagSpecifications", []) for t in spec["Tags"]]
        self.security_groups[group_id] = {
            "GroupId": group_id,
            "GroupName": kwargs["GroupName"],
            "VpcId": kwargs["VpcId"],
            "Tags": tags,
            "IpPermissions": [],
        }
        return {"GroupId": group_id}

    def authorize_security_group_ingress(self, **kwargs):
        self._call("authorize_security_group_ingress", kwargs)
        self.security_groups[kwargs["GroupId"]]["IpPermissions"].extend(kwargs["IpPermissions"])
        return {"Return": True}

    def delete_security_group(self, **kwargs):
        self._call("delete_security_group", kwargs)
        group_id = kwargs["GroupId"]
        if group_id not in self.security_groups:
            raise client_error("InvalidGroup.NotFound", "DeleteSecurityGroup")
        for instance in self.instances.values():
            attached = {g["GroupId"] for g in instance["SecurityGroups"]}
            if group_id in attached and instance["State"]["Name"] != "terminated":
                raise client_error("DependencyViolation", "DeleteSecurityGroup")
        del self.security_groups[group_id]
        return {}

    # ── Images ────────────────────────────────────────────────────────────────

    def describe_images(self, **kwargs):
        self._call("describe_images", kwargs)
        images = self.images
        if "ImageIds" in kwargs:
            images = [i for i in images if i["ImageId"] in kwargs["ImageIds"]]
        if "Owners" in kwargs:
            images = [i for i in images if i.get("OwnerAlias") in kwargs["Owners"]]
        return {"Images": [i for i in images if _matches(i, kwargs.get("Filters"))]}

    # ── Instances ─────────────────────────────────────────────────────────────

    def run_instances(self, **kwargs):
        self._call("run_instances", kwargs)
        number = next(self._ids)
        instance_id = f"i-{number:08d}"
        nic = kwargs["NetworkInterfaces"][0]
        subnet = next(s for s in self.subnets if s["SubnetId"] == nic["SubnetId"])
        self.instances[instance_id] = {
            "InstanceId": instance_id,
            "ImageId": kwargs["ImageId"],
            "InstanceType": kwargs["InstanceType"],
            "KeyName": kwargs["KeyName"],
            "SubnetId": subnet["SubnetId"],
            "VpcId": subnet["VpcId"],
            "Placement": {"AvailabilityZone": subnet["AvailabilityZone"]},
            "PublicIpAddress": f"54.0.0.{number}",
            "SecurityGroups": [{"GroupId": g} for g in nic["Groups"]],
            "State": {"Name": "pending"},
            "Tags": [],
        }
        return {"Instances": [{"InstanceId": instance_id}]}

    def _instance(self, instance_id: str, operation: str) -> dict:
        if instance_id not in self.instances:
            raise client_error("InvalidInstanceID.NotFound", operation)
        return self.instances[instance_id]

    def describe_instances(self, **kwargs):
        self._call("describe_instances", kwargs)
        found = []
        for instance_id in kwargs["InstanceIds"]:
            instance = self._instance(instance_id, "DescribeInstances")
            state = instance["State"]["Name"]
            if state == "pending":
                instance["State"] = {"Name": "running"}
            elif state == "shutting-down" and not self.stuck_shutting_down:
                instance["State"] = {"Name": "terminated"}
            found.append(dict(instance))
        return {"Reservations": [{"Instances": found}]}

    def describe_instance_status(self, **kwargs):
        self._call("describe_instance_status", kwargs)
        statuses = [
            {
                "InstanceId": i,
                "InstanceStatus": {"Status": self.instance_status},
                "SystemStatus": {"Status": self.instance_status},
            }
            for i in kwargs["InstanceIds"]
            if i in self.instances
        ]
        return {"InstanceStatuses": statuses}

    def create_tags(self, **kwargs):
        self._call("create_tags", kwargs)
        for resource_id in kwargs["Resources"]:
            self._instance(resource_id, "CreateTags")["Tags"].extend(kwargs["Tags"])
        return {}

    def modify_instance_attribute(self, **kwargs):
        self._call("modify_instance_attribute", kwargs)
        instance = self._instance(kwargs["InstanceId"], "ModifyInstanceAttribute")
        instance["SecurityGroups"] = [{"GroupId": g} for g in kwargs["Groups"]]
        return {}

    def associate_iam_instance_profile(self, **kwargs):
        self._call("associate_iam_instance_profile", kwargs)
        instance = self._instance(kwargs["InstanceId"], "AssociateIamInstanceProfile")
        instance["IamInstanceProfile"] = {"Arn": kwargs["IamInstanceProfile"]["Arn"]}
        return {}

    def get_password_data(self, **kwargs):
        self._call("get_password_data", kwargs)
        self._instance(kwargs["InstanceId"], "GetPasswordData")
        return {"InstanceId": kwargs["InstanceId"], "PasswordData": self.password_data}

    def terminate_instances(self, **kwargs):
        self._call("terminate_instances", kwargs)
        for instance_id in kwargs["InstanceIds"]:
            instance = self._instance(instance_id, "TerminateInstances")
            if instance["State"]["Name"] != "terminated":
                instance["State"] = {"Name": "shutting-down"}
        return {}

    # ── Helpers for assertions ────────────────────────────────────────────────

    def live_instances(self) -> list[str]:
        return [i for i, inst in self.instances.items() if inst["State"]["Name"] != "terminated"]


class FakeIAM:
    def __init__(self) -> None:
        self.profiles: dict[str, str] = {}

    def get_instance_profile(self, InstanceProfileName: str):
        if InstanceProfileName not in self.profiles:
            raise client_error("NoSuchEntity", "GetInstanceProfile")
        return {
            "InstanceProfile": {
                "InstanceProfileName": InstanceProfileName,
                "Arn": self.profiles[InstanceProfileName],
            }
        }


@pytest.fixture()
def ec2():
    """A fake EC2 account holding one OpenShift cluster's infrastructure."""
    fake = FakeEC2()
    fake.vpcs.append(
        {
            "VpcId": "vpc-1",
            "CidrBlock": VPC_CIDR,
            "Tags": [{"Key": OWNERSHIP_KEY, "Value": "owned"}, {"Key": "Name", "Value": f"{INFRA_ID}-vpc"}],
        }
    )
    fake.vpcs.append(
        {"VpcId": "vpc-other", "CidrBlock": "172.16.0.0/16", "Tags": [{"Key": "Name", "Value": "other"}]}
    )
    fake.security_groups["sg-worker"] = {
        "GroupId": "sg-worker",
        "GroupName": f"{INFRA_ID}-worker-sg",
        "VpcId": "vpc-1",
        "Tags": [{"Key": "Name", "Value": f"{INFRA_ID}-worker-sg"}, {"Key": OWNERSHIP_KEY, "Value": "owned"}],
        "IpPermissions": [
            {"IpProtocol": "-1", "FromPort": -1, "ToPort": -1, "IpRanges": [{"CidrIp": VPC_CIDR}]}
        ],
    }
    fake.internet_gateways.append(
        {"InternetGatewayId": "igw-1", "Attachments": [{"VpcId": "vpc-1", "State": "available"}]}
    )
    fake.route_tables.extend(
        [
            {
                "RouteTableId": "rtb-main",
                "VpcId": "vpc-1",
                "Routes": [{"DestinationCidrBlock": VPC_CIDR, "GatewayId": "local"}],
                "Associations": [{"Main": True}],
            },
            {
                "RouteTableId": "rtb-public",
                "VpcId": "vpc-1",
                "Routes": [
                    {"DestinationCidrBlock": VPC_CIDR, "GatewayId": "local"},
                    {"DestinationCidrBlock": "0.0.0.0/0", "GatewayId": "igw-1"},
                ],
                "Associations": [{"Main": False, "SubnetId": "subnet-public"}],
            },
        ]
    )
    fake.subnets.extend(
        [
            {
                "SubnetId": "subnet-private",
                "VpcId": "vpc-1",
                "AvailabilityZone": "us-east-1a",
                "AvailableIpAddressCount": 4000,
            },
            {
                "SubnetId": "subnet-public",
                "VpcId": "vpc-1",
                "AvailabilityZone": "us-east-1b",
                "AvailableIpAddressCount": 250,
            },
        ]
    )
    fake.images.extend(
        [
            {
                "ImageId": "ami-zzz-old",
                "Name": "Windows_Server-2019-English-Full-ContainersLatest-2023.01.11",
                "CreationDate": "2023-01-11T07:00:00.000Z",
                "OwnerAlias": "amazon",
                "State": "available",
            },
            {
                "ImageId": "ami-aaa-new",
                "Name": "Windows_Server-2019-English-Full-ContainersLatest-2024.06.12",
                "CreationDate": "2024-06-12T07:00:00.000Z",
                "OwnerAlias": "amazon",
                "State": "available",
            },
            {
                "ImageId": "ami-core",
                "Name": "Windows_Server-2019-English-Core-Base-2024.07.01",
                "CreationDate": "2024-07-01T07:00:00.000Z",
                "OwnerAlias": "amazon",
                "State": "available",
            },
        ]
    )
    return fake


@pytest.fixture()
def iam():
    fake = FakeIAM()
    fake.profiles[f"{INFRA_ID}-worker-profile"] = WORKER_PROFILE_ARN
    return fake


@pytest.fixture()
def cluster_context():
    return ClusterContext(
        infra_id=INFRA_ID,
        vpc_id="vpc-1",
        vpc_cidr=VPC_CIDR,
        worker_security_group_id="sg-worker",
        worker_instance_profile_arn=WORKER_PROFILE_ARN,
    )


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture()
def key_pair(tmp_path, rsa_key):
    """(private key path, encrypted password data) as EC2 would hand them out."""
    path = tmp_path / "libra.pem"
    path.write_bytes(
        rsa_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    encrypted = rsa_key.public_key().encrypt(WINDOWS_PASSWORD.encode(), padding.PKCS1v15())
    return str(path), base64.b64encode(encrypted).decode()


@pytest.fixture()
def ledger_path(tmp_path):
    return tmp_path / "out" / "windows-node-installer.json"


@pytest.fixture()
def store(ledger_path):
    return JsonFileResourceStateStore(ledger_path)


@pytest.fixture()
def provisioner(ec2):
    return InstanceProvisioner(ec2, poll_interval=0, sleep=lambda seconds: None)


@pytest.fixture()
def orchestrator(ec2, iam, store, provisioner, key_pair):
    key_path, password_data = key_pair
    ec2.password_data = password_data
    return LifecycleOrchestrator(
        cluster_identifier="/tmp/kubeconfig",
        resolver=ClusterContextResolver(ec2, iam, infra_id_reader=lambda ident: INFRA_ID),
        security_groups=SecurityGroupComposer(ec2),
        instances=provisioner,
        store=store,
        instance_type="m4.large",
        key_name="libra",
        private_key_path=key_path,
        caller_ip_lookup=lambda: CALLER_IP,
        serviceable_timeout=5,
        termination_timeout=5,
        password_timeout=5,
    )


@pytest.fixture()
def client(orchestrator):
    def _override_get_current_user():
        return "test-user"

    app.dependency_overrides[get_current_user] = _override_get_current_user
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
