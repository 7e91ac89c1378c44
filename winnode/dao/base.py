"""
Abstract DAO for the resource ledger.

`ResourceStateStore` defines the persistence contract the lifecycle
orchestrator depends on.  Implementations must make every `append` and
`remove` durable before returning: a crash between two provisioning steps
has to leave a ledger that lists exactly the resources that exist.
"""

from abc import ABC, abstractmethod

from winnode.schemas.resources import ProvisionedResourceSet, ResourceKind


class ResourceStateStore(ABC):
    """Persistence interface for the set of owned resource ids."""

    @abstractmethod
    def append(self, kind: ResourceKind, resource_id: str) -> None:
        """
        Record that *resource_id* of the given kind was created.

        Appending an id that is already recorded is a no-op.
        """

    @abstractmethod
    def remove(self, kind: ResourceKind, resource_id: str) -> None:
        """Forget *resource_id* after it has been confirmed destroyed."""

    @abstractmethod
    def load(self) -> ProvisionedResourceSet:
        """
        Return the recorded resources.

        A store that has never been written to returns an empty set.
        """

    @abstractmethod
    def clear(self) -> None:
        """Drop the ledger entirely."""
