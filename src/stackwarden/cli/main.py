"""Main CLI entry point."""

import sys
from contextlib import contextmanager
from typing import Dict, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from stackwarden.config.parser import DEFAULT_CONFIG_FILE, Config, ConfigValidationError
from stackwarden.credentials import Credentials, StsCredentialStore
from stackwarden.orchestrator.lifecycle import LifecycleAction
from stackwarden.orchestrator.orchestrator import ActionResult, ActionStatus, ItemResult, StackOrchestrator
from stackwarden.provisioning.cloudformation import CloudFormationProvisioningAPI
from stackwarden.state.manager import StateManager, state_file_path
from stackwarden.utils.aws_client import AWSClientManager
from stackwarden.utils.errors import OrchestratorError
from stackwarden.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    ActionStatus.SUCCEEDED: ("green", "✓"),
    ActionStatus.NO_OP: ("green", "✓"),
    ActionStatus.SUCCEEDED_WITH_WARNINGS: ("yellow", "⚠"),
    ActionStatus.FAILED: ("red", "✗"),
}


@click.group()
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, envvar='STACKWARDEN_CONFIG',
              help='Path to configuration file')
@click.option('--env', 'environment', default='dev', envvar='STACKWARDEN_ENV', help='Environment name')
@click.option('--log-level', default='warning', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--state-dir', default='.stackwarden/state', help='Directory holding state files')
@click.pass_context
def cli(ctx, config_path, environment, log_level, state_dir):
    """Dependency-aware stack orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['environment'] = environment
    ctx.obj['state_dir'] = state_dir

    setup_logging(log_level)


def load_config(config_path: str) -> Config:
    """Load and validate configuration file."""
    try:
        return Config(config_path).load()
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(1)


def default_api_factory(client_manager: AWSClientManager):
    """Provisioning API factory bound to the environment's base identity."""
    def factory(credentials: Optional[Credentials]):
        if credentials is None:
            return CloudFormationProvisioningAPI(client_manager)
        return CloudFormationProvisioningAPI(AWSClientManager(
            region=client_manager.get_region(),
            credentials=credentials,
        ))
    return factory


def create_orchestrator(ctx) -> StackOrchestrator:
    """Create stack orchestrator with all dependencies."""
    config = load_config(ctx.obj['config_path'])
    env_config = config.get_environment(ctx.obj['environment'])

    state_path = state_file_path(ctx.obj['state_dir'], config.project.name, env_config.name)
    state_manager = StateManager(str(state_path))

    api_factory = ctx.obj.get('api_factory')
    credential_store = ctx.obj.get('credential_store')
    if api_factory is None:
        client_manager = AWSClientManager(profile=env_config.profile, region=env_config.region)
        api_factory = default_api_factory(client_manager)
        if env_config.role_arn and credential_store is None:
            credential_store = StsCredentialStore(client_manager, external_id=env_config.external_id)

    return StackOrchestrator(
        config=config,
        environment=env_config.name,
        state_manager=state_manager,
        api_factory=api_factory,
        credential_store=credential_store,
    )


@contextmanager
def command_errors(action: str):
    """Report errors raised outside an action result and exit non-zero."""
    try:
        yield
    except OrchestratorError as e:
        console.print(f"[red]{action.capitalize()} error:[/red] {e.to_user_message()}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Unexpected error during {action}")
        console.print(f"[red]Unexpected error:[/red] {e}")
        sys.exit(1)


def parse_params(values: Tuple[str, ...]) -> Dict[str, str]:
    """Parse repeated KEY=VALUE options."""
    params = {}
    for item in values:
        key, sep, value = item.partition('=')
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint='--param')
        params[key] = value
    return params


def _item_style(item: ItemResult) -> str:
    if not item.ok:
        return "red"
    if item.changed:
        return "green"
    return "white"


def render_result(result: ActionResult, title: str) -> None:
    """Print item outcomes, warnings and errors for an action."""
    if result.results:
        table = Table(title=title, show_header=True, header_style="bold cyan")
        table.add_column("Name", style="cyan")
        table.add_column("Outcome")
        table.add_column("Detail")
        for item in result.results:
            style = _item_style(item)
            table.add_row(item.name, f"[{style}]{item.outcome}[/{style}]", item.detail)
        console.print(table)

        for item in result.results:
            for diagnostic in item.diagnostics:
                console.print(f"  [red]✗[/red] {item.name}: {diagnostic}")

    for warning in result.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")

    if result.error is not None:
        console.print(f"[red]Error:[/red] {result.error.to_user_message()}")

    colour, mark = STATUS_STYLES[result.status]
    console.print(f"[{colour}]{mark} {result.action} {result.status.value}[/{colour}]")


def finish(result: ActionResult, title: str) -> None:
    render_result(result, title)
    sys.exit(result.exit_code)


def _has_changes(preview: ActionResult) -> bool:
    return any(item.outcome not in ('NO_OP', 'IN_SYNC') for item in preview.results)


@cli.command()
@click.argument('stack')
@click.option('--param', 'params', multiple=True, help='Parameter override KEY=VALUE (repeatable)')
@click.option('--with-dependencies', is_flag=True, help='Deploy the dependency chain in order')
@click.option('--dry-run', is_flag=True, help='Preview changes without applying them')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def deploy(ctx, stack, params, with_dependencies, dry_run, yes):
    """Deploy a stack."""
    overrides = parse_params(params)
    with command_errors('deploy'):
        orchestrator = create_orchestrator(ctx)

        console.print(Panel.fit(
            f"[bold]Deploying {stack} to {orchestrator.environment.name}[/bold]\n"
            f"Project: {orchestrator.config.project.name}\n"
            f"With dependencies: {'yes' if with_dependencies else 'no'}",
            title="Deployment",
            border_style="cyan"
        ))

        if dry_run or not yes:
            preview = orchestrator.deploy(stack, overrides, with_dependencies, dry_run=True)
            if dry_run or preview.status == ActionStatus.FAILED or not _has_changes(preview):
                finish(preview, "Change preview")
            render_result(preview, "Change preview")
            if not click.confirm("Apply these changes?", default=False):
                console.print("[yellow]Deployment cancelled[/yellow]")
                return

        finish(orchestrator.deploy(stack, overrides, with_dependencies), "Deployment")


@cli.command()
@click.argument('resources', nargs=-1, required=True)
@click.option('--dry-run', is_flag=True, help='Show reconciliation plans without executing them')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def migrate(ctx, resources, dry_run, yes):
    """Reconcile drift on resources (STACK/LOGICAL_ID or LOGICAL_ID)."""
    with command_errors('migrate'):
        orchestrator = create_orchestrator(ctx)

        if dry_run or not yes:
            preview = orchestrator.migrate(list(resources), dry_run=True)
            planned = any(item.outcome == 'PLANNED' for item in preview.results)
            if dry_run or preview.status == ActionStatus.FAILED or not planned:
                finish(preview, "Reconciliation plan")
            render_result(preview, "Reconciliation plan")
            if not click.confirm("Execute these migrations?", default=False):
                console.print("[yellow]Migration cancelled[/yellow]")
                return

        finish(orchestrator.migrate(list(resources)), "Migration")


@cli.command()
@click.argument('resource')
@click.argument('action', type=click.Choice(['start', 'stop', 'restart', 'status']))
@click.pass_context
def manage(ctx, resource, action):
    """Start, stop, restart or query a compute resource."""
    with command_errors('manage'):
        orchestrator = create_orchestrator(ctx)
        lifecycle_action = None if action == 'status' else LifecycleAction(action)
        finish(orchestrator.manage(resource, lifecycle_action), f"Instance {action}")


@cli.command()
@click.argument('stacks', nargs=-1, required=True)
@click.option('--dry-run', is_flag=True, help='Show what would be deleted')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, stacks, dry_run, yes):
    """Delete stacks and every deployed stack that depends on them."""
    with command_errors('destroy'):
        orchestrator = create_orchestrator(ctx)

        if dry_run or not yes:
            preview = orchestrator.destroy(list(stacks), dry_run=True)
            doomed = any(item.outcome == 'WOULD_DELETE' for item in preview.results)
            if dry_run or preview.status == ActionStatus.FAILED or not doomed:
                finish(preview, "Destruction plan")

            console.print(Panel.fit(
                "[bold red]⚠ WARNING: This will delete stacks[/bold red]\n\n" + "\n".join(
                    f"Wave {i + 1}: {', '.join(wave)}"
                    for i, wave in enumerate(preview.details.get('waves', []))
                ),
                title="Destruction Plan",
                border_style="red"
            ))
            render_result(preview, "Destruction plan")
            if not click.confirm("Are you sure you want to delete these stacks?", default=False):
                console.print("[yellow]Destruction cancelled[/yellow]")
                return

        finish(orchestrator.destroy(list(stacks)), "Destruction")


@cli.command()
@click.pass_context
def status(ctx):
    """Show stack status refreshed from the provider."""
    with command_errors('status'):
        orchestrator = create_orchestrator(ctx)
        result = orchestrator.status()

        state = result.details.get('state')
        if state is not None:
            for name in sorted(orchestrator.config.stacks):
                stack = state.stacks[name]
                if not stack.resources and not stack.outputs:
                    continue
                table = Table(title=f"Stack: {name}", show_header=True, header_style="bold cyan")
                table.add_column("Resource / Output", style="cyan")
                table.add_column("Kind", style="magenta")
                table.add_column("Value", style="green")
                for logical_id, resource in sorted(stack.resources.items()):
                    table.add_row(logical_id, resource.kind.value, resource.physical_id or "N/A")
                for key, value in sorted(stack.outputs.items()):
                    table.add_row(key, "output", value)
                console.print(table)

        finish(result, "Stacks")


@cli.command()
@click.argument('stack', required=False)
@click.pass_context
def drift(ctx, stack):
    """Detect drift on deployed resources."""
    with command_errors('drift'):
        orchestrator = create_orchestrator(ctx)
        finish(orchestrator.drift(stack), "Drift")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
