"""State management module for tracking stacks and their resources."""

from .manager import StateLockError, StateManager, StateNotFoundError
from .models import (
    DriftRecord,
    Parameter,
    ParameterDeclaration,
    ParameterSource,
    ReconcilePolicy,
    Resource,
    ResourceKind,
    Stack,
    StackStatus,
    State,
)

__all__ = [
    "DriftRecord",
    "Parameter",
    "ParameterDeclaration",
    "ParameterSource",
    "ReconcilePolicy",
    "Resource",
    "ResourceKind",
    "Stack",
    "StackStatus",
    "State",
    "StateManager",
    "StateLockError",
    "StateNotFoundError",
]
