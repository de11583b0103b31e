"""Abstract provisioning API and the data it exchanges with the orchestrator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from stackwarden.state.models import ResourceKind
from stackwarden.utils.errors import Diagnostic


class ChangeType(Enum):
    """Type of change for a resource in a change preview."""
    ADD = "Add"
    MODIFY = "Modify"
    REMOVE = "Remove"


@dataclass
class ResourceChange:
    """One resource-level change the provider would make."""
    logical_id: str
    resource_type: str
    change_type: ChangeType
    replacement: bool = False

    def __str__(self) -> str:
        marker = " (replacement)" if self.replacement else ""
        return f"{self.change_type.value} {self.logical_id} [{self.resource_type}]{marker}"


@dataclass
class ChangePreview:
    """Result of a read-only change computation."""
    stack_name: str
    changes: List[ResourceChange] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.changes


class ProviderStackStatus(Enum):
    """Provider-side stack status, collapsed to what the orchestrator needs."""
    NOT_FOUND = "NOT_FOUND"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"
    DELETED = "DELETED"

    @property
    def is_terminal(self) -> bool:
        return self is not ProviderStackStatus.IN_PROGRESS


@dataclass
class StackDescription:
    """Provider view of a stack."""
    name: str
    status: ProviderStackStatus
    stack_id: Optional[str] = None
    raw_status: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    resources: Dict[str, str] = field(default_factory=dict)
    failures: List[Diagnostic] = field(default_factory=list)

    @property
    def exists(self) -> bool:
        return self.status not in (ProviderStackStatus.NOT_FOUND, ProviderStackStatus.DELETED)


class InstanceState(Enum):
    """Live state of a compute resource."""
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    TRANSITIONING = "TRANSITIONING"
    UNKNOWN = "UNKNOWN"

    @property
    def is_stable(self) -> bool:
        return self in (InstanceState.RUNNING, InstanceState.STOPPED)


class ProvisioningAPI(ABC):
    """Control-plane operations the orchestrator depends on.

    Read calls (``preview_changes``, ``describe_*``, ``find_*``,
    ``get_instance_state``) have no side effects on provisioned
    infrastructure. Everything else is a mutating call and is issued at most
    once per request.
    """

    @abstractmethod
    def preview_changes(
        self,
        stack_name: str,
        template_body: str,
        parameters: Dict[str, str]
    ) -> ChangePreview:
        """Compute the changes an apply would make, without making them."""

    @abstractmethod
    def submit(
        self,
        stack_name: str,
        template_body: str,
        parameters: Dict[str, str]
    ) -> str:
        """Submit template and parameters for application.

        Returns:
            Provider stack identifier
        """

    @abstractmethod
    def describe_stack(self, stack_name: str) -> StackDescription:
        """Read status, outputs and resources of a stack.

        Missing stacks are reported with status NOT_FOUND, not an exception.
        """

    def find_stack(self, stack_name: str) -> Optional[StackDescription]:
        """Describe a stack, or return None when it does not exist."""
        description = self.describe_stack(stack_name)
        return description if description.exists else None

    @abstractmethod
    def delete_stack(self, stack_name: str) -> None:
        """Request deletion of a stack."""

    @abstractmethod
    def describe_resource(self, kind: ResourceKind, physical_id: str) -> Dict[str, Any]:
        """Read the live configuration of a resource.

        Raises:
            ResourceUnavailableError: If the resource does not exist
        """

    @abstractmethod
    def find_resource(self, kind: ResourceKind, selector: Dict[str, str]) -> Optional[str]:
        """Locate a resource by selector and return its physical id."""

    @abstractmethod
    def patch_resource(
        self,
        kind: ResourceKind,
        physical_id: str,
        operation: str,
        parameters: Dict[str, Any]
    ) -> None:
        """Apply one imperative operation to a live resource."""

    @abstractmethod
    def get_instance_state(self, physical_id: str) -> InstanceState:
        """Read the live state of a compute resource; UNKNOWN when not found."""

    @abstractmethod
    def start_instance(self, physical_id: str) -> None:
        """Request that a stopped instance start."""

    @abstractmethod
    def stop_instance(self, physical_id: str) -> None:
        """Request that a running instance stop."""

    @abstractmethod
    def restart_instance(self, physical_id: str) -> None:
        """Request that a running instance reboot."""

    def close(self) -> None:
        """Release clients and any credentials held by this instance."""
