from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import click

from agentweave import __version__
from agentweave.coordinator import Coordinator, open_coordinator
from agentweave.errors import CoordinationError, StageError
from agentweave.utils.config import get_settings, load_config
from agentweave.utils.logger import setup_logging

Action = Callable[[Coordinator], Awaitable[Any]]


def _run(ctx: click.Context, action: Action) -> Any:
    """Load configuration, open the coordinator and run ``action`` inside it."""
    obj = ctx.find_root().obj
    settings = get_settings()

    async def _main() -> Any:
        config = load_config(obj["config_path"] or settings.config_path)
        async with open_coordinator(
            config, settings, vcs=obj.get("vcs"), runner=obj.get("runner"), generator=obj.get("generator")
        ) as coordinator:
            return await action(coordinator)

    try:
        return asyncio.run(_main())
    except CoordinationError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(version=__version__, prog_name="agentweave")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Configuration document (default: $AGENTWEAVE_CONFIG or agent-orchestrator.config.json).",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (default: $AGENTWEAVE_LOG_LEVEL or INFO).",
)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """AgentWeave: coordinate AI agents working on one repository."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    setup_logging(log_level or get_settings().log_level)


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Prepare the state directory and update the base branch."""

    async def _init(c: Coordinator) -> None:
        base = c.config.project_master_branch
        await c.vcs.checkout(base)
        await c.vcs.pull(base)
        click.echo(f"State directory ready at {c.config.state_dir}")
        click.echo(f"Audit database at {c.db.db_path}")
        click.echo(f"Agents: {', '.join(c.registry.roles())}")

    _run(ctx, _init)


@main.command()
@click.argument("role")
@click.argument("task_id")
@click.pass_context
def create(ctx: click.Context, role: str, task_id: str) -> None:
    """Create a task branch for an agent."""

    async def _create(c: Coordinator) -> str:
        return await c.tracker.create_branch(role, task_id)

    branch = _run(ctx, _create)
    click.echo(f"Created branch {branch} for {role}")


@main.command()
@click.argument("role")
@click.argument("paths", nargs=-1, required=True)
@click.pass_context
def lock(ctx: click.Context, role: str, paths: tuple[str, ...]) -> None:
    """Lock files for an agent. Paths it may not write are skipped."""

    async def _lock(c: Coordinator) -> list[str]:
        return await c.tracker.claim(role, paths)

    locked = _run(ctx, _lock)
    for path in locked:
        click.echo(f"locked {path}")
    skipped = len(paths) - len(locked)
    if skipped:
        click.echo(f"{skipped} path(s) skipped (outside boundary or held by another agent)")


@main.command()
@click.argument("role")
@click.pass_context
def unlock(ctx: click.Context, role: str) -> None:
    """Release every lock an agent holds."""

    async def _unlock(c: Coordinator) -> list[str]:
        return await c.enforcer.unlock(role)

    released = _run(ctx, _unlock)
    click.echo(f"Released {len(released)} lock(s) for {role}")


@main.command()
@click.argument("role", required=False)
@click.pass_context
def sync(ctx: click.Context, role: str | None) -> None:
    """Rebase one agent's branch (or all of them) onto the base branch."""

    async def _sync(c: Coordinator) -> dict[str, bool | str]:
        if role:
            return {role: await c.tracker.sync(role)}
        return await c.tracker.sync_all()

    results = _run(ctx, _sync)
    for name, outcome in results.items():
        if outcome is True:
            click.echo(f"{name}: synced")
        elif outcome is False:
            click.echo(f"{name}: skipped")
        else:
            click.echo(f"{name}: failed - {outcome}")


@main.command()
@click.argument("role")
@click.argument("message", nargs=-1)
@click.pass_context
def merge(ctx: click.Context, role: str, message: tuple[str, ...]) -> None:
    """Commit and push an agent's branch and open a pull request."""

    async def _merge(c: Coordinator):
        return await c.tracker.merge(role, " ".join(message) or None)

    report = _run(ctx, _merge)
    click.echo(f"Pushed {report.branch}")
    if report.pr_url:
        click.echo(f"Pull request: {report.pr_url}")
    else:
        click.echo("Create PR manually.")
    if report.released:
        click.echo(f"Released {len(report.released)} lock(s)")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show agents, locks and recent integration runs."""

    async def _status(c: Coordinator) -> None:
        tasks = await c.tracker.status()
        stale = {task.role for task in await c.tracker.stale_tasks()}
        click.echo("Agents:")
        for definition in c.registry.all():
            task = tasks.get(definition.role)
            line = f"  {definition.display_name}: "
            line += f"{task.status} on {task.current_branch}" if task else "idle"
            if definition.role in stale:
                line += " (stale)"
            click.echo(line)

        locks = await c.enforcer.locks()
        click.echo(f"Locks: {len(locks)}")
        for path, held in sorted(locks.items()):
            click.echo(f"  {path} -> {held.owner}")

        runs = await c.db.get_workflow_runs(limit=5)
        if runs:
            click.echo("Recent integrations:")
            for run in runs:
                failed = f" at {run['failed_stage']}" if run["failed_stage"] else ""
                click.echo(f"  {run['id']}: {run['status']}{failed}")

    _run(ctx, _status)


@main.command()
@click.pass_context
def watch(ctx: click.Context) -> None:
    """Sync every active agent branch on the configured interval."""

    async def _watch(c: Coordinator) -> None:
        scheduler = c.scheduler()
        click.echo(f"Syncing every {c.config.sync_interval}. Ctrl+C to stop.")
        await scheduler.run_forever()

    try:
        _run(ctx, _watch)
    except KeyboardInterrupt:
        click.echo("Stopped.")


@main.command()
@click.option(
    "--fatal-boundaries",
    is_flag=True,
    default=None,
    help="Fail the run on any boundary violation for this run only.",
)
@click.pass_context
def integrate(ctx: click.Context, fatal_boundaries: bool | None) -> None:
    """Review, merge, validate and push every ready agent branch."""
    from agentweave.services.pipeline import summary_lines

    async def _integrate(c: Coordinator) -> None:
        pipeline = c.pipeline(boundaries_fatal=fatal_boundaries)

        def _trace(event: dict) -> None:
            kind = event["type"]
            if kind == "stage_started":
                click.echo(f"-> {event['stage']}")
            elif kind == "stage_failed":
                click.echo(f"!! {event['stage']}: {event['error']}")
            elif kind == "branch_merged":
                click.echo(f"   merged {event['branch']} ({event['status']})")
            elif kind == "rollback":
                click.echo("   rolling back")

        c.events.subscribe("*", _trace)
        try:
            await pipeline.run()
        except StageError:
            for line in summary_lines(pipeline.state):
                click.echo(line)
            raise
        for line in summary_lines(pipeline.state):
            click.echo(line)

    _run(ctx, _integrate)


@main.command()
@click.argument("role")
@click.argument("path")
@click.argument("task", nargs=-1, required=True)
@click.pass_context
def generate(ctx: click.Context, role: str, path: str, task: tuple[str, ...]) -> None:
    """Generate a file for an agent inside its boundary."""

    async def _generate(c: Coordinator):
        return await c.worker().apply(role, path, " ".join(task))

    target = _run(ctx, _generate)
    click.echo(f"Wrote {target}")


@main.command()
def version() -> None:
    """Print the version and exit."""
    click.echo(f"agentweave {__version__}")


if __name__ == "__main__":
    main()
