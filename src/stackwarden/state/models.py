"""State data models for stacks, parameters and resources."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StackStatus(str, Enum):
    """Last-known status of a stack."""

    NOT_DEPLOYED = "NOT_DEPLOYED"
    DEPLOYED = "DEPLOYED"
    DEPLOYED_WITH_DRIFT = "DEPLOYED_WITH_DRIFT"
    DELETED = "DELETED"

    @property
    def is_deployed(self) -> bool:
        return self in (StackStatus.DEPLOYED, StackStatus.DEPLOYED_WITH_DRIFT)


class ParameterSource(str, Enum):
    """Where an effective parameter value came from, lowest precedence first."""

    DEFAULT = "DEFAULT"
    INHERITED_FROM_OUTPUT = "INHERITED_FROM_OUTPUT"
    CALLER_OVERRIDE = "CALLER_OVERRIDE"


class ResourceKind(str, Enum):
    """Kinds of provisioned resources."""

    COMPUTE = "COMPUTE"
    ROLE = "ROLE"
    NETWORK = "NETWORK"
    STORAGE = "STORAGE"
    DNS_RECORD = "DNS_RECORD"


class ReconcilePolicy(str, Enum):
    """How a divergent field may be brought back in line."""

    DECLARATIVE_UPDATE = "DECLARATIVE_UPDATE"
    IMPERATIVE_PATCH = "IMPERATIVE_PATCH"
    MANUAL_INTERVENTION_REQUIRED = "MANUAL_INTERVENTION_REQUIRED"


def _to_parameter_string(value: Any) -> Any:
    """Template parameters are strings; YAML scalars are coerced."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return value


class ParameterDeclaration(BaseModel):
    """How a stack parameter gets its value."""

    default: Optional[str] = Field(None, description="Value used when no other source supplies one")
    from_output: Optional[str] = Field(
        None, description="Output of another stack, written '<stack>.<OutputKey>'"
    )
    required: bool = Field(True, description="Fail resolution when no source supplies a value")
    description: Optional[str] = None

    @field_validator("default", mode="before")
    @classmethod
    def coerce_default(cls, v: Any) -> Any:
        return _to_parameter_string(v)

    @field_validator("from_output")
    @classmethod
    def validate_from_output(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            stack, _, key = v.partition(".")
            if not stack or not key:
                raise ValueError(f"from_output must be written '<stack>.<OutputKey>': {v}")
        return v

    @property
    def source_stack(self) -> Optional[str]:
        return self.from_output.split(".", 1)[0] if self.from_output else None

    @property
    def output_key(self) -> Optional[str]:
        return self.from_output.split(".", 1)[1] if self.from_output else None


class Parameter(BaseModel):
    """An effective parameter value and its provenance."""

    key: str
    value: str
    source: ParameterSource
    source_stack: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> Any:
        return _to_parameter_string(v)


class DriftRecord(BaseModel):
    """A divergence that was detected, and what was done about it."""

    detected_at: datetime = Field(default_factory=utcnow)
    fields: List[str] = Field(default_factory=list)
    declared: Dict[str, Any] = Field(default_factory=dict)
    observed: Dict[str, Any] = Field(default_factory=dict)
    resolution: str = Field("detected", description="detected, declarative, migrated, rolled_back, manual")


class Resource(BaseModel):
    """A concrete provisioned entity belonging to one stack."""

    logical_id: str = Field(..., min_length=1)
    kind: ResourceKind
    physical_id: Optional[str] = Field(None, description="Provider-assigned id, empty before creation")
    selector: Dict[str, str] = Field(
        default_factory=dict,
        description="Lookup used once at apply time when stack resources do not name the physical id",
    )
    declared_config: Dict[str, Any] = Field(default_factory=dict)
    observed_config: Dict[str, Any] = Field(default_factory=dict)
    observed_at: Optional[datetime] = None
    drift_history: List[DriftRecord] = Field(default_factory=list)

    def record_observation(self, config: Dict[str, Any]) -> None:
        """Store the live config read from the provider."""
        self.observed_config = dict(config)
        self.observed_at = utcnow()

    def record_drift(self, record: DriftRecord) -> None:
        self.drift_history.append(record)


class Stack(BaseModel):
    """A named, versioned unit of declared infrastructure."""

    name: str = Field(..., min_length=1)
    template: str = Field(..., description="Template reference (path to the template body)")
    parameters: Dict[str, ParameterDeclaration] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    status: StackStatus = StackStatus.NOT_DEPLOYED
    outputs: Dict[str, str] = Field(default_factory=dict)
    resources: Dict[str, Resource] = Field(default_factory=dict)
    stack_id: Optional[str] = None
    version: int = 0
    applied_parameters: Dict[str, str] = Field(default_factory=dict)
    last_applied_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_outputs(self):
        """Outputs exist only while the stack is deployed."""
        if self.outputs and not self.status.is_deployed:
            raise ValueError(
                f"Stack '{self.name}' has outputs but status is {self.status.value}"
            )
        return self

    @property
    def is_deployed(self) -> bool:
        return self.status.is_deployed

    @property
    def exists_at_provider(self) -> bool:
        """Deployed, or left behind by a failed apply or delete."""
        return self.is_deployed or self.stack_id is not None

    def mark_deployed(
        self,
        outputs: Dict[str, str],
        stack_id: Optional[str],
        parameters: Dict[str, str]
    ) -> None:
        """Record a successful apply."""
        self.status = StackStatus.DEPLOYED
        self.outputs = dict(outputs)
        self.stack_id = stack_id or self.stack_id
        self.version += 1
        self.applied_parameters = dict(parameters)
        self.last_applied_at = utcnow()

    def mark_drift(self, drifted: bool) -> None:
        """Flip between DEPLOYED and DEPLOYED_WITH_DRIFT."""
        if not self.is_deployed:
            return
        self.status = StackStatus.DEPLOYED_WITH_DRIFT if drifted else StackStatus.DEPLOYED

    def mark_absent(self, status: StackStatus = StackStatus.NOT_DEPLOYED) -> None:
        """Record that the stack no longer exists at the provider."""
        self.status = status
        self.outputs = {}
        self.stack_id = None
        for resource in self.resources.values():
            resource.physical_id = None
            resource.observed_config = {}
            resource.observed_at = None

    def get_resource(self, logical_id: str) -> Optional[Resource]:
        return self.resources.get(logical_id)


class State(BaseModel):
    """Persisted stack and resource state for one project environment."""

    version: str = Field("1.0", description="State file format version")
    project_name: str
    environment: str
    region: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    stacks: Dict[str, Stack] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def add_stack(self, stack: Stack) -> None:
        self.stacks[stack.name] = stack
        self.timestamp = utcnow()

    def get_stack(self, stack_name: str) -> Optional[Stack]:
        return self.stacks.get(stack_name)

    def find_resources(self, logical_id: str) -> List[Tuple[str, Resource]]:
        """Find resources by logical id across all stacks."""
        found = []
        for stack_name, stack in self.stacks.items():
            resource = stack.get_resource(logical_id)
            if resource is not None:
                found.append((stack_name, resource))
        return found

    def merge_definitions(self, definitions: Dict[str, Stack]) -> None:
        """Overlay declared stacks from configuration onto persisted state.

        Declared attributes (template, parameters, dependencies, declared
        resource config and selectors) come from the definitions; runtime
        attributes (status, outputs, physical ids, observations, drift history)
        are kept from state.
        """
        for name, definition in definitions.items():
            merged = definition.model_copy(deep=True)
            persisted = self.stacks.get(name)
            if persisted is not None:
                merged.status = persisted.status
                merged.outputs = dict(persisted.outputs)
                merged.stack_id = persisted.stack_id
                merged.version = persisted.version
                merged.applied_parameters = dict(persisted.applied_parameters)
                merged.last_applied_at = persisted.last_applied_at
                for logical_id, resource in merged.resources.items():
                    previous = persisted.resources.get(logical_id)
                    if previous is None or previous.kind != resource.kind:
                        continue
                    resource.physical_id = previous.physical_id
                    resource.observed_config = dict(previous.observed_config)
                    resource.observed_at = previous.observed_at
                    resource.drift_history = list(previous.drift_history)
            self.stacks[name] = merged
        self.timestamp = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "State":
        """Create State from dictionary."""
        return cls.model_validate(data)
