"""Pydantic models for configuration schema."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from stackwarden.state.models import ParameterDeclaration, ReconcilePolicy, ResourceKind


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    region: Optional[str] = Field(None, description="Default region for environments")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Project names become part of the state file name."""
        if not v[0].isalpha():
            raise ValueError("Project name must start with a letter")
        return v


class EnvironmentConfig(BaseModel):
    """Environment-specific configuration."""

    name: str = Field(..., min_length=1)
    region: Optional[str] = None
    profile: Optional[str] = Field(None, description="Named profile holding the base identity")
    role_arn: Optional[str] = Field(None, description="Role assumed for privileged operations")
    external_id: Optional[str] = None

    @field_validator("role_arn")
    @classmethod
    def validate_role_arn(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith("arn:"):
            raise ValueError(f"role_arn must be an ARN: {v}")
        return v


class PollingConfig(BaseModel):
    """Backoff and deadline for every poll loop."""

    initial_interval: float = Field(5.0, ge=0)
    max_interval: float = Field(30.0, ge=0)
    multiplier: float = Field(2.0, ge=1)
    timeout: float = Field(1800.0, gt=0)

    @model_validator(mode="after")
    def validate_intervals(self):
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must not be smaller than initial_interval")
        return self


class DriftRuleConfig(BaseModel):
    """Policy for one field of one resource kind."""

    kind: ResourceKind
    field: str = Field(..., min_length=1)
    policy: ReconcilePolicy


class DriftPolicyConfig(BaseModel):
    """Drift classification table."""

    default: ReconcilePolicy = ReconcilePolicy.MANUAL_INTERVENTION_REQUIRED
    rules: List[DriftRuleConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_rules(self):
        seen = set()
        for rule in self.rules:
            key = (rule.kind, rule.field)
            if key in seen:
                raise ValueError(f"Duplicate drift rule for {rule.kind.value}.{rule.field}")
            seen.add(key)
        return self


class ResourceConfig(BaseModel):
    """Declared resource of a stack."""

    logical_id: str = Field(..., min_length=1, pattern="^[A-Za-z][A-Za-z0-9]*$")
    kind: ResourceKind
    selector: Dict[str, str] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)


class StackConfig(BaseModel):
    """Declared stack."""

    name: str = Field(..., min_length=1, max_length=128, pattern="^[a-z][a-z0-9-]*$")
    template: str = Field(..., min_length=1)
    depends_on: List[str] = Field(default_factory=list)
    parameters: Dict[str, ParameterDeclaration] = Field(default_factory=dict)
    resources: List[ResourceConfig] = Field(default_factory=list)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError("depends_on contains duplicates")
        return v

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: List[ResourceConfig]) -> List[ResourceConfig]:
        ids = [resource.logical_id for resource in v]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate resource logical ids: {', '.join(duplicates)}")
        return v

    @model_validator(mode="after")
    def validate_self_reference(self):
        if self.name in self.depends_on:
            raise ValueError(f"Stack '{self.name}' cannot depend on itself")
        return self
