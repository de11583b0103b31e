"""Main orchestrator that coordinates the actions the CLI exposes."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from stackwarden.config.parser import Config
from stackwarden.credentials import CredentialStore, Credentials, scoped_credentials
from stackwarden.orchestrator.apply import ApplyEngine, load_template
from stackwarden.orchestrator.drift import (
    DeclarativeUpdate,
    DriftPolicy,
    DriftReconciler,
    ManualInterventionRequired,
)
from stackwarden.orchestrator.lifecycle import LifecycleAction, LifecycleController
from stackwarden.orchestrator.migration import MigrationExecutor, MigrationPlan, MigrationStatus
from stackwarden.orchestrator.parameters import parameter_values, resolve
from stackwarden.orchestrator.resolver import resolve_order, teardown_order
from stackwarden.provisioning.base import (
    InstanceState,
    ProviderStackStatus,
    ProvisioningAPI,
    StackDescription,
)
from stackwarden.state.manager import StateManager
from stackwarden.state.models import Resource, Stack, StackStatus, State
from stackwarden.utils.errors import (
    DependencyError,
    Diagnostic,
    OperationTimeout,
    OrchestratorError,
    ValidationError,
    error_handler,
)
from stackwarden.utils.logging import get_logger
from stackwarden.utils.polling import CancellationToken, Poller

logger = get_logger(__name__)

ApiFactory = Callable[[Optional[Credentials]], ProvisioningAPI]


class ActionStatus(Enum):
    """Overall status of one orchestrator action."""
    SUCCEEDED = "SUCCEEDED"
    SUCCEEDED_WITH_WARNINGS = "SUCCEEDED_WITH_WARNINGS"
    NO_OP = "NO_OP"
    FAILED = "FAILED"


EXIT_CODES = {
    ActionStatus.SUCCEEDED: 0,
    ActionStatus.NO_OP: 0,
    ActionStatus.FAILED: 1,
    ActionStatus.SUCCEEDED_WITH_WARNINGS: 3,
}


@dataclass
class ItemResult:
    """Outcome for one stack or resource within an action."""
    name: str
    outcome: str
    ok: bool = True
    changed: bool = False
    detail: str = ""
    diagnostics: List[Diagnostic] = field(default_factory=list)


@dataclass
class ActionResult:
    """Structured result of an orchestrator action."""
    action: str
    status: ActionStatus = ActionStatus.NO_OP
    results: List[ItemResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[OrchestratorError] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def add(self, item: ItemResult) -> ItemResult:
        self.results.append(item)
        return item

    def fail(self, error: OrchestratorError) -> None:
        self.error = error
        error_handler.log_error(error)

    def finalize(self) -> "ActionResult":
        """Derive the overall status from the item results."""
        if self.error is not None or any(not item.ok for item in self.results):
            self.status = ActionStatus.FAILED
        elif self.warnings:
            self.status = ActionStatus.SUCCEEDED_WITH_WARNINGS
        elif any(item.changed for item in self.results):
            self.status = ActionStatus.SUCCEEDED
        else:
            self.status = ActionStatus.NO_OP
        return self

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]


class StackOrchestrator:
    """Coordinates resolution, apply, reconciliation and lifecycle actions.

    Every action loads state under the state file lock, overlays the declared
    stacks from configuration, refreshes what it needs from the provisioning
    API and saves state after each mutating step, so partial progress
    survives a failure.
    """

    def __init__(
        self,
        config: Config,
        environment: str,
        state_manager: StateManager,
        api_factory: ApiFactory,
        credential_store: Optional[CredentialStore] = None,
        max_workers: int = 4
    ):
        """Initialize stack orchestrator.

        Args:
            config: Loaded configuration
            environment: Target environment name
            state_manager: State manager for this project environment
            api_factory: Builds a provisioning API from optional role credentials
            credential_store: Issues role credentials when the environment names a role
            max_workers: Maximum stacks deleted in parallel within one wave
        """
        self.config = config
        self.environment = config.get_environment(environment)
        self.state_manager = state_manager
        self.api_factory = api_factory
        self.credential_store = credential_store
        self.max_workers = max_workers
        self.policy = DriftPolicy.from_config(config.drift_policy)
        self.logger = get_logger(__name__)

    def _poller(self) -> Poller:
        polling = self.config.polling
        return Poller(
            initial_interval=polling.initial_interval,
            max_interval=polling.max_interval,
            multiplier=polling.multiplier,
            timeout=polling.timeout,
        )

    @contextmanager
    def _provider(self) -> Iterator[ProvisioningAPI]:
        """Provisioning API for the duration of one privileged action."""
        role = self.environment.role_arn
        if role and self.credential_store is not None:
            with scoped_credentials(self.credential_store, role) as credentials:
                api = self.api_factory(credentials)
                try:
                    yield api
                finally:
                    api.close()
        else:
            yield self.api_factory(None)

    def _load_state(self) -> State:
        state = self.state_manager.load_or_initialize(
            self.environment.name, self.config.project.name, self.environment.region
        )
        state.merge_definitions(self.config.stack_definitions())
        return state

    # Shared steps

    def _refresh_stack(
        self,
        api: ProvisioningAPI,
        stack: Stack,
        result: ActionResult,
        description: Optional[StackDescription] = None
    ) -> StackDescription:
        """Bring a stack's status and outputs in line with the provider.

        A stack left behind by a failed apply or delete keeps its provider
        id, so a later destroy still deletes it.
        """
        if description is None:
            description = api.describe_stack(stack.name)

        if description.status in (ProviderStackStatus.SUCCEEDED, ProviderStackStatus.ROLLED_BACK):
            if not stack.is_deployed:
                stack.status = StackStatus.DEPLOYED
            stack.outputs = dict(description.outputs)
            stack.stack_id = description.stack_id or stack.stack_id
        elif description.status == ProviderStackStatus.IN_PROGRESS:
            result.warnings.append(f"Stack '{stack.name}' has a provider operation in progress")
        elif description.status == ProviderStackStatus.FAILED:
            if stack.is_deployed or stack.stack_id:
                result.warnings.append(
                    f"Stack '{stack.name}' is in provider state {description.raw_status}"
                )
            stack_id = description.stack_id or stack.stack_id
            stack.mark_absent(StackStatus.NOT_DEPLOYED)
            stack.stack_id = stack_id
        elif stack.exists_at_provider:
            if stack.is_deployed:
                result.warnings.append(f"Stack '{stack.name}' no longer exists at the provider")
            stack.mark_absent(StackStatus.NOT_DEPLOYED)

        return description

    def _await_settled(
        self,
        api: ProvisioningAPI,
        stack: Stack,
        cancel: Optional[CancellationToken]
    ) -> StackDescription:
        """Wait for a running provider operation on a stack to finish.

        Raises:
            DependencyError: If the operation is still running at the poll deadline
        """
        self.logger.info(f"Waiting for the running operation on {stack.name} to finish")
        try:
            return self._poller().poll(
                lambda: api.describe_stack(stack.name),
                lambda d: d.status.is_terminal,
                description=f"running operation on {stack.name}",
                cancel=cancel,
            )
        except OperationTimeout as e:
            raise DependencyError(
                f"Stack '{stack.name}' has a provider operation in progress",
                dependency=stack.name,
                suggestions=["Retry once the running operation has finished"],
            ) from e

    def _find_resource(self, state: State, reference: str) -> Tuple[Stack, Resource]:
        """Look up ``stack/LogicalId`` or a logical id unique across stacks.

        Raises:
            ValidationError: If the reference is unknown or ambiguous
        """
        if '/' in reference:
            stack_name, _, logical_id = reference.partition('/')
            stack = state.get_stack(stack_name)
            resource = stack.get_resource(logical_id) if stack else None
            if resource is None:
                raise ValidationError(f"Unknown resource '{reference}'")
            return stack, resource

        matches = state.find_resources(reference)
        if not matches:
            raise ValidationError(f"Unknown resource '{reference}'")
        if len(matches) > 1:
            raise ValidationError(
                f"Resource id '{reference}' is ambiguous",
                suggestions=[f"Use one of: {', '.join(f'{s}/{reference}' for s, _ in matches)}"]
            )
        stack_name, resource = matches[0]
        return state.stacks[stack_name], resource

    def _refresh_drift_status(self, reconciler: DriftReconciler, stack: Stack) -> bool:
        """Set DEPLOYED or DEPLOYED_WITH_DRIFT from the recorded observations."""
        drifted = any(
            not reconciler.detect(r, stack.name).in_sync
            for r in stack.resources.values()
            if r.observed_at is not None
        )
        stack.mark_drift(drifted)
        return drifted

    # Actions

    def deploy(
        self,
        stack_name: str,
        overrides: Optional[Mapping[str, str]] = None,
        with_dependencies: bool = False,
        dry_run: bool = False,
        cancel: Optional[CancellationToken] = None
    ) -> ActionResult:
        """Deploy a stack, optionally together with its dependency chain.

        Stacks apply strictly one at a time; each stack's parameters are
        resolved only after the previous apply persisted its outputs.
        Overrides apply to the requested stack only. A stack in the chain
        with a provider operation still running is waited for before any
        parameters are resolved.
        """
        result = ActionResult(action='deploy')
        with self.state_manager:
            state = self._load_state()
            try:
                with self._provider() as api:
                    chain = resolve_order(stack_name, state.stacks, require_deployed=False)
                    for stack in chain.order:
                        description = api.describe_stack(stack.name)
                        if description.status == ProviderStackStatus.IN_PROGRESS:
                            description = self._await_settled(api, stack, cancel)
                        self._refresh_stack(api, stack, result, description)
                    if not dry_run:
                        self.state_manager.save(state)

                    resolution = resolve_order(
                        stack_name, state.stacks, require_deployed=not with_dependencies
                    )
                    result.warnings.extend(resolution.warnings)
                    targets = resolution.order if with_dependencies else resolution.order[-1:]
                    self._deploy_targets(api, state, targets, stack_name, overrides or {}, dry_run, cancel, result)
            except OrchestratorError as e:
                result.fail(e)
            finally:
                if not dry_run:
                    self.state_manager.save(state)
        return result.finalize()

    def _deploy_targets(
        self,
        api: ProvisioningAPI,
        state: State,
        targets: List[Stack],
        requested: str,
        overrides: Mapping[str, str],
        dry_run: bool,
        cancel: Optional[CancellationToken],
        result: ActionResult
    ) -> None:
        engine = ApplyEngine(api, poller=self._poller())

        for index, stack in enumerate(targets):
            dependencies = [state.stacks[d] for d in stack.dependencies]
            if dry_run and not all(d.is_deployed for d in dependencies):
                result.add(ItemResult(
                    stack.name, 'PENDING_DEPENDENCIES',
                    detail='Preview needs the outputs of undeployed dependencies'
                ))
                continue

            params = resolve(
                stack,
                overrides if stack.name == requested else {},
                {d.name: d.outputs for d in dependencies},
                {d.name: d.status for d in dependencies},
            )

            if dry_run:
                preview = api.preview_changes(
                    stack.name, load_template(stack.template), parameter_values(params)
                )
                result.add(ItemResult(
                    stack.name,
                    'NO_OP' if preview.is_empty else 'WOULD_CHANGE',
                    detail="; ".join(str(c) for c in preview.changes),
                ))
                result.details.setdefault('parameters', {})[stack.name] = {
                    k: {'value': p.value, 'source': p.source.value} for k, p in params.items()
                }
                continue

            applied = engine.apply(stack, params, cancel=cancel)
            self.state_manager.save(state)
            result.details.setdefault('apply', {})[stack.name] = applied
            item = result.add(ItemResult(
                stack.name,
                applied.status.value,
                ok=applied.succeeded,
                changed=applied.changed,
                detail=f"{len(applied.changes)} change(s)" if applied.changes else "",
                diagnostics=list(applied.diagnostics),
            ))
            if not applied.succeeded:
                for skipped in targets[index + 1:]:
                    result.add(ItemResult(
                        skipped.name, 'SKIPPED', ok=False,
                        detail=f"Not attempted after {stack.name} {applied.status.value}"
                    ))
                return
            if item.diagnostics:
                result.warnings.extend(f"{stack.name}: {d}" for d in item.diagnostics)

    def migrate(
        self,
        references: List[str],
        dry_run: bool = False,
        cancel: Optional[CancellationToken] = None
    ) -> ActionResult:
        """Reconcile drift on resources without recreating them.

        Each resource is refreshed from the provider, compared with its
        declared config and handled according to the drift policy. Manual
        and declarative outcomes change nothing and are reported as warnings.
        """
        result = ActionResult(action='migrate')
        with self.state_manager:
            state = self._load_state()
            try:
                with self._provider() as api:
                    reconciler = DriftReconciler(api)
                    executor = MigrationExecutor(api, poller=self._poller())
                    for reference in references:
                        self._migrate_one(state, reference, reconciler, executor, dry_run, cancel, result)
            except OrchestratorError as e:
                result.fail(e)
            finally:
                if not dry_run:
                    self.state_manager.save(state)
        return result.finalize()

    def _migrate_one(
        self,
        state: State,
        reference: str,
        reconciler: DriftReconciler,
        executor: MigrationExecutor,
        dry_run: bool,
        cancel: Optional[CancellationToken],
        result: ActionResult
    ) -> None:
        try:
            stack, resource = self._find_resource(state, reference)
            name = f"{stack.name}/{resource.logical_id}"
            reconciler.refresh(resource)
            report = reconciler.detect(resource, stack.name)
        except OrchestratorError as e:
            error_handler.log_error(e)
            result.add(ItemResult(reference, e.kind.value, ok=False, detail=e.message))
            return

        if report.in_sync:
            self._refresh_drift_status(reconciler, stack)
            result.add(ItemResult(name, 'IN_SYNC'))
            return

        decision = reconciler.plan_reconciliation(report, self.policy)
        result.details.setdefault('plans', {})[name] = decision

        if isinstance(decision, ManualInterventionRequired):
            if not dry_run:
                reconciler.record(resource, report, 'manual')
                stack.mark_drift(True)
            reasons = "; ".join(f"{f}: {r}" for f, r in decision.reasons.items())
            result.add(ItemResult(name, 'MANUAL_INTERVENTION_REQUIRED', detail=reasons))
            result.warnings.append(f"{name} needs operator decision ({reasons})")
            return

        if isinstance(decision, DeclarativeUpdate):
            if not dry_run:
                reconciler.record(resource, report, 'declarative')
                stack.mark_drift(True)
            fields = ", ".join(decision.fields)
            result.add(ItemResult(name, 'DECLARATIVE_UPDATE', detail=f"Next deploy of {stack.name} reconciles {fields}"))
            result.warnings.append(f"{name} drift on {fields} is left for the next deploy of {stack.name}")
            return

        plan: MigrationPlan = decision
        if dry_run:
            result.add(ItemResult(
                name, 'PLANNED',
                detail=" -> ".join(step.operation for step in plan.steps)
            ))
            return

        migration = executor.execute(plan, resource, cancel=cancel)
        result.details.setdefault('migrations', {})[name] = migration
        if migration.succeeded:
            reconciler.record(resource, report, 'migrated')
            drifted = self._refresh_drift_status(reconciler, stack)
            result.add(ItemResult(
                name, 'MIGRATED', changed=True,
                detail=", ".join(migration.completed_steps)
            ))
            if plan.deferred_fields:
                result.warnings.append(
                    f"{name} fields {', '.join(plan.deferred_fields)} are left for the next deploy"
                )
            elif drifted:
                result.warnings.append(f"Stack {stack.name} still has drift")
            return

        resolution = 'rolled_back' if migration.status == MigrationStatus.ROLLED_BACK else 'rollback_failed'
        reconciler.record(resource, report, resolution)
        stack.mark_drift(True)
        detail = f"{migration.failed_step} failed: {migration.error}"
        if migration.rollback_errors:
            detail += f"; rollback errors: {'; '.join(migration.rollback_errors)}"
        result.add(ItemResult(name, migration.status.value, ok=False, detail=detail))

    def manage(
        self,
        reference: str,
        action: Optional[LifecycleAction] = None,
        cancel: Optional[CancellationToken] = None
    ) -> ActionResult:
        """Start, stop, restart or report the live state of a compute resource.

        State is read but never written.
        """
        result = ActionResult(action=action.value if action else 'status')
        with self.state_manager:
            state = self._load_state()
        try:
            stack, resource = self._find_resource(state, reference)
            name = f"{stack.name}/{resource.logical_id}"
            with self._provider() as api:
                controller = LifecycleController(api, poller=self._poller())
                if action is None:
                    current = controller.get_state(resource)
                    result.add(ItemResult(name, current.value, detail=resource.physical_id or ""))
                    if current == InstanceState.UNKNOWN:
                        result.warnings.append(f"State of {name} is unknown")
                else:
                    transition = controller.transition(resource, action, cancel=cancel)
                    result.details['transition'] = transition
                    result.add(ItemResult(
                        name, transition.final_state.value,
                        changed=not transition.no_change,
                        detail=transition.message,
                    ))
        except OrchestratorError as e:
            result.fail(e)
        return result.finalize()

    def destroy(
        self,
        stack_names: List[str],
        dry_run: bool = False,
        cancel: Optional[CancellationToken] = None
    ) -> ActionResult:
        """Delete stacks in reverse dependency order.

        The requested set grows to include every dependent stack that still
        exists at the provider. Stacks in one wave are independent and are
        deleted in parallel; state is only changed from the calling thread.
        """
        result = ActionResult(action='destroy')
        with self.state_manager:
            state = self._load_state()
            try:
                with self._provider() as api:
                    for stack in state.stacks.values():
                        if stack.name in self.config.stacks:
                            self._refresh_stack(api, stack, result)
                    waves = teardown_order(stack_names, state.stacks)
                    extra = sorted({s.name for w in waves for s in w} - set(stack_names))
                    if extra:
                        result.warnings.append(f"Dependent stacks are destroyed too: {', '.join(extra)}")
                    result.details['waves'] = [[s.name for s in wave] for wave in waves]
                    self._destroy_waves(api, state, waves, dry_run, cancel, result)
            except OrchestratorError as e:
                result.fail(e)
            finally:
                if not dry_run:
                    self.state_manager.save(state)
        return result.finalize()

    def _destroy_waves(
        self,
        api: ProvisioningAPI,
        state: State,
        waves: List[List[Stack]],
        dry_run: bool,
        cancel: Optional[CancellationToken],
        result: ActionResult
    ) -> None:
        poller = self._poller()

        def delete(stack_name: str) -> StackDescription:
            api.delete_stack(stack_name)
            return poller.poll(
                lambda: api.describe_stack(stack_name),
                lambda d: d.status in (
                    ProviderStackStatus.DELETED,
                    ProviderStackStatus.NOT_FOUND,
                    ProviderStackStatus.FAILED,
                ),
                description=f"deletion of {stack_name}",
                cancel=cancel,
            )

        for index, wave in enumerate(waves):
            live = [s for s in wave if s.exists_at_provider]
            for stack in wave:
                if stack not in live:
                    result.add(ItemResult(stack.name, 'NO_OP', detail='Not deployed'))
            if not live:
                continue
            if dry_run:
                for stack in live:
                    result.add(ItemResult(stack.name, 'WOULD_DELETE'))
                continue

            failed = False
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(live))) as pool:
                futures = {pool.submit(delete, stack.name): stack for stack in live}
                for future in as_completed(futures):
                    stack = futures[future]
                    try:
                        description = future.result()
                    except OrchestratorError as e:
                        failed = True
                        result.add(ItemResult(stack.name, e.kind.value, ok=False, detail=e.message))
                        continue

                    if description.status == ProviderStackStatus.FAILED:
                        failed = True
                        result.add(ItemResult(
                            stack.name, 'FAILED', ok=False,
                            detail=description.raw_status or '',
                            diagnostics=list(description.failures),
                        ))
                    else:
                        stack.mark_absent(StackStatus.DELETED)
                        result.add(ItemResult(stack.name, 'DELETED', changed=True))

            self.state_manager.save(state)
            if failed:
                for later in waves[index + 1:]:
                    for stack in later:
                        result.add(ItemResult(
                            stack.name, 'SKIPPED', ok=False,
                            detail='Not attempted after a failure in an earlier wave'
                        ))
                return

    def status(self) -> ActionResult:
        """Refresh every declared stack from the provider and report it."""
        result = ActionResult(action='status')
        with self.state_manager:
            state = self._load_state()
            try:
                with self._provider() as api:
                    for name in sorted(self.config.stacks):
                        stack = state.stacks[name]
                        self._refresh_stack(api, stack, result)
                        result.add(ItemResult(
                            name, stack.status.value,
                            detail=f"version {stack.version}, {len(stack.outputs)} output(s)"
                        ))
            except OrchestratorError as e:
                result.fail(e)
            finally:
                self.state_manager.save(state)
        result.details['state'] = state
        return result.finalize()

    def drift(self, stack_name: Optional[str] = None) -> ActionResult:
        """Detect drift on the resources of deployed stacks.

        New divergences are appended to the resource drift history; nothing
        is changed at the provider.
        """
        result = ActionResult(action='drift')
        with self.state_manager:
            state = self._load_state()
            try:
                if stack_name is not None and stack_name not in state.stacks:
                    raise ValidationError(f"Unknown stack '{stack_name}'")
                names = [stack_name] if stack_name else sorted(self.config.stacks)
                with self._provider() as api:
                    reconciler = DriftReconciler(api)
                    for name in names:
                        stack = state.stacks[name]
                        self._refresh_stack(api, stack, result)
                        if not stack.is_deployed:
                            continue
                        self._detect_stack(reconciler, stack, result)
            except OrchestratorError as e:
                result.fail(e)
            finally:
                self.state_manager.save(state)
        return result.finalize()

    def _detect_stack(self, reconciler: DriftReconciler, stack: Stack, result: ActionResult) -> None:
        for logical_id in sorted(stack.resources):
            resource = stack.resources[logical_id]
            name = f"{stack.name}/{logical_id}"
            try:
                reconciler.refresh(resource)
            except OrchestratorError as e:
                result.add(ItemResult(name, e.kind.value, ok=False, detail=e.message))
                continue

            report = reconciler.detect(resource, stack.name)
            if report.in_sync:
                result.add(ItemResult(name, 'IN_SYNC'))
                continue

            last = resource.drift_history[-1] if resource.drift_history else None
            if last is None or last.fields != report.divergent_fields or last.observed != {
                f: report.observed.get(f) for f in report.divergent_fields
            }:
                reconciler.record(resource, report, 'detected')

            decision = reconciler.plan_reconciliation(report, self.policy)
            strategy = {
                MigrationPlan: 'IMPERATIVE_PATCH',
                DeclarativeUpdate: 'DECLARATIVE_UPDATE',
                ManualInterventionRequired: 'MANUAL_INTERVENTION_REQUIRED',
            }[type(decision)]
            fields = ", ".join(report.divergent_fields)
            result.add(ItemResult(name, 'DRIFTED', detail=f"{fields} ({strategy})"))
            result.warnings.append(f"{name} drifted on {fields}")

        self._refresh_drift_status(reconciler, stack)

