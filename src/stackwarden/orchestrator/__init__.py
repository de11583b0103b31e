"""Orchestrator module for resolving, applying and reconciling stacks."""

from stackwarden.orchestrator.dependency_graph import DependencyGraph
from stackwarden.orchestrator.resolver import Resolution, resolve_order, teardown_order
from stackwarden.orchestrator.parameters import parameter_values, resolve
from stackwarden.orchestrator.apply import ApplyEngine, ApplyResult, ApplyStatus
from stackwarden.orchestrator.migration import (
    MigrationExecutor,
    MigrationPlan,
    MigrationResult,
    MigrationStatus,
    MigrationStep,
    ResourceRef,
)
from stackwarden.orchestrator.drift import (
    DeclarativeUpdate,
    DriftPolicy,
    DriftReconciler,
    DriftReport,
    ManualInterventionRequired,
)
from stackwarden.orchestrator.lifecycle import LifecycleAction, LifecycleController, TransitionResult
from stackwarden.orchestrator.orchestrator import (
    ActionResult,
    ActionStatus,
    ItemResult,
    StackOrchestrator,
)

__all__ = [
    # Resolution
    'DependencyGraph',
    'Resolution',
    'resolve_order',
    'teardown_order',
    'resolve',
    'parameter_values',

    # Apply
    'ApplyEngine',
    'ApplyResult',
    'ApplyStatus',

    # Migration and drift
    'MigrationExecutor',
    'MigrationPlan',
    'MigrationResult',
    'MigrationStatus',
    'MigrationStep',
    'ResourceRef',
    'DeclarativeUpdate',
    'DriftPolicy',
    'DriftReconciler',
    'DriftReport',
    'ManualInterventionRequired',

    # Lifecycle
    'LifecycleAction',
    'LifecycleController',
    'TransitionResult',

    # Facade
    'ActionResult',
    'ActionStatus',
    'ItemResult',
    'StackOrchestrator',
]
