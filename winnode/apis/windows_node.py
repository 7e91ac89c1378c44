"""
Windows node router: all endpoints under /windows-node.

Every route requires a valid JWT (via the `get_current_user` dependency).
The orchestrator is injected via `get_orchestrator`.

Endpoints
─────────
  POST   /windows-node   Provision the Windows node and return its credentials
  GET    /windows-node   Show the resources the ledger currently owns
  DELETE /windows-node   Destroy every owned resource and clear the ledger
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from winnode.cloud.polling import Deadline
from winnode.config import settings
from winnode.dependencies.api import get_current_user
from winnode.dependencies.orchestrator import get_orchestrator
from winnode.errors import (
    AmbiguousResourceError,
    LedgerCorruptError,
    NotFoundError,
    ResourceInUseError,
    ResourcesAlreadyOwnedError,
    WaitTimeoutError,
    WinNodeError,
)
from winnode.schemas.resources import InstanceCredentials, ProvisionedResourceSet
from winnode.services.lifecycle import LifecycleOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/windows-node", tags=["Windows Node"])

# Checked in order; the first matching class wins.
_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AmbiguousResourceError, status.HTTP_409_CONFLICT),
    (ResourcesAlreadyOwnedError, status.HTTP_409_CONFLICT),
    (ResourceInUseError, status.HTTP_409_CONFLICT),
    (WaitTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (LedgerCorruptError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def _http_error(exc: WinNodeError) -> HTTPException:
    for error_cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.post(
    "",
    response_model=InstanceCredentials,
    status_code=status.HTTP_201_CREATED,
    summary="Create the Windows node",
    description=(
        "Launches a Windows instance in a public subnet of the cluster VPC, joins it to "
        "the cluster's worker security group and instance profile, and returns the "
        "Administrator credentials. Fails with 409 while the ledger still owns resources."
    ),
)
def create_windows_node(
    current_user: str = Depends(get_current_user),
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> InstanceCredentials:
    """Provision the node and hand its credentials to the caller."""
    logger.info("POST /windows-node called by '%s'", current_user)
    try:
        return orchestrator.create(deadline=Deadline.optional(settings.create_deadline))
    except WinNodeError as exc:
        logger.exception("Windows node creation failed: %s", exc)
        raise _http_error(exc) from exc


@router.get(
    "",
    response_model=ProvisionedResourceSet,
    summary="List owned resources",
    description="Returns the instance and security group ids recorded in the ledger.",
)
def get_owned_resources(
    current_user: str = Depends(get_current_user),
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> ProvisionedResourceSet:
    logger.info("GET /windows-node called by '%s'", current_user)
    try:
        return orchestrator.owned_resources()
    except WinNodeError as exc:
        raise _http_error(exc) from exc


@router.delete(
    "",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Destroy the Windows node",
    description=(
        "Terminates every recorded instance, then deletes every recorded security group. "
        "Safe to repeat: an empty ledger is a no-op."
    ),
)
def delete_windows_node(
    current_user: str = Depends(get_current_user),
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> None:
    """Destroy whatever the ledger owns."""
    logger.info("DELETE /windows-node called by '%s'", current_user)
    try:
        orchestrator.destroy(deadline=Deadline.optional(settings.destroy_deadline))
    except WinNodeError as exc:
        logger.exception("Windows node teardown failed: %s", exc)
        raise _http_error(exc) from exc
