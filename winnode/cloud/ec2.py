"""
boto3 plumbing shared by the cluster, security-group and instance helpers.

Client construction, tag/filter builders, and `provider_call`, which turns
botocore failures into `ProviderAPIError` carrying the operation and the
identifiers involved.
"""

import logging
from contextlib import contextmanager
from typing import Optional

import boto3
import botocore.session
from botocore.exceptions import BotoCoreError, ClientError

from winnode.errors import ProviderAPIError

logger = logging.getLogger(__name__)


def build_session(
    region: str,
    profile: Optional[str] = None,
    credentials_file: Optional[str] = None,
) -> boto3.Session:
    """Build a boto3 Session honouring an explicit shared credentials file."""
    core = botocore.session.Session()
    if credentials_file:
        core.set_config_variable("credentials_file", credentials_file)
    return boto3.Session(
        botocore_session=core,
        profile_name=profile or None,
        region_name=region,
    )


def error_code(exc: BaseException) -> str:
    """Provider error code of a ClientError (or ProviderAPIError), else ''."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    if isinstance(exc, ProviderAPIError):
        return exc.code
    return ""


@contextmanager
def provider_call(operation: str, error_cls: type = ProviderAPIError, **identifiers: str):
    """Wrap botocore errors raised inside the block as *error_cls*."""
    try:
        yield
    except ClientError as exc:
        logger.error("%s failed %s: %s", operation, identifiers or "", exc)
        raise error_cls(operation, str(exc), code=error_code(exc), **identifiers) from exc
    except BotoCoreError as exc:
        logger.error("%s failed %s: %s", operation, identifiers or "", exc)
        raise error_cls(operation, str(exc), **identifiers) from exc


def tag_filter(key: str, *values: str) -> dict:
    return {"Name": f"tag:{key}", "Values": list(values)}


def tag_specs(resource_type: str, name: str, extra_tags: dict) -> list:
    """Build a TagSpecifications list understood by the EC2 API."""
    tags = [{"Key": "Name", "Value": name}]
    tags += [{"Key": k, "Value": v} for k, v in extra_tags.items()]
    return [{"ResourceType": resource_type, "Tags": tags}]

