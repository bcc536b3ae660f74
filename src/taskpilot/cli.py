"""Command line interface for taskpilot."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .agents.detector import PatternMultiActionDetector, needs_multiple_steps
from .agents.orchestrator import Orchestrator
from .config import ConfigError, ProjectConfig
from .errors import TaskpilotError
from .observability.logging import setup_logging

app = typer.Typer(help="Task orchestration and workflow scheduling CLI")
console = Console()


def _load(config_path: Optional[Path]) -> ProjectConfig:
    try:
        config = ProjectConfig.from_file(config_path) if config_path else ProjectConfig()
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/] {escape(str(exc))}")
        raise typer.Exit(code=2) from exc
    setup_logging(config.logging.level, config.logging.format)
    return config


def _parse_vars(items: List[str]) -> Dict[str, str]:
    variables: Dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{item}'")
        variables[key.strip()] = value
    return variables


def _render_status(status: Dict) -> None:
    table = Table(title=f"Schedules (active: {status['active_schedules']})", show_lines=True)
    table.add_column("Schedule ID")
    table.add_column("Workflow")
    table.add_column("Cron")
    table.add_column("Runs")
    table.add_column("State")
    table.add_column("Next run")
    for item in status["schedules"]:
        limit = item["max_executions"] or "∞"
        table.add_row(
            item["id"],
            item["workflow_name"],
            f"{item['cron_expression']} ({item['timezone']})",
            f"{item['execution_count']}/{limit}",
            item["state"],
            item["next_run_at"] or "-",
        )
    console.print(table)


@app.command()
def schedule(
    config_path: Path = typer.Argument(..., help="Path to YAML configuration"),
    workflow_id: Optional[str] = typer.Argument(None, help="Workflow to schedule; omit to use the config's schedules"),
    cron: str = typer.Option("* * * * *", help="Cron expression (5 fields, or 6 with seconds first)"),
    timezone: str = typer.Option("UTC", help="IANA timezone the cron expression is evaluated in"),
    max_executions: Optional[int] = typer.Option(None, min=1, help="Stop after this many runs"),
    name: str = typer.Option("Scheduled Workflow", help="Display name for the schedule"),
    poll: float = typer.Option(1.0, help="Seconds between status refreshes"),
) -> None:
    """Run workflows on a cron schedule in the foreground until every schedule stops."""

    config = _load(config_path)
    orchestrator = Orchestrator(config)

    async def main() -> None:
        scheduler = orchestrator.scheduler
        scheduler.start()
        if workflow_id:
            await scheduler.schedule_workflow(
                workflow_id, cron_expression=cron, timezone=timezone, max_executions=max_executions, name=name
            )
        else:
            await orchestrator.schedule_configured()
        _render_status(scheduler.get_status())
        try:
            with Progress(SpinnerColumn(style="cyan"), TextColumn("{task.description}"), transient=True) as progress:
                waiting = progress.add_task("waiting for schedules...")
                while scheduler.get_status()["active_schedules"]:
                    runs = sum(item["execution_count"] for item in scheduler.get_status()["schedules"])
                    progress.update(waiting, description=f"{runs} firings so far")
                    await asyncio.sleep(poll)
        finally:
            await scheduler.shutdown()

    try:
        asyncio.run(main())
    except TaskpilotError as exc:
        console.print(f"[red]{escape(str(exc))}[/]")
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt:
        console.print("[yellow]Stopped all schedules.[/]")
        return
    console.print("[bold green]All schedules finished.[/]")


@app.command("run-workflow")
def run_workflow(
    config_path: Path = typer.Argument(..., help="Path to YAML configuration"),
    workflow_id: str = typer.Argument(..., help="Stored workflow id"),
    var: List[str] = typer.Option([], "--var", help="Workflow variable as key=value (repeatable)"),
) -> None:
    """Run a stored workflow once and print each step's outcome."""

    config = _load(config_path)
    orchestrator = Orchestrator(config)
    try:
        result = asyncio.run(orchestrator.run_workflow(workflow_id, _parse_vars(var)))
    except TaskpilotError as exc:
        console.print(f"[red]{escape(str(exc))}[/]")
        raise typer.Exit(code=1) from exc

    if result.summary is not None:
        table = Table(title=f"Workflow {workflow_id}", show_lines=True)
        table.add_column("Step")
        table.add_column("Description")
        table.add_column("Outcome")
        results, errors = result.summary.results, result.summary.errors
        for step in result.summary.steps:
            if step.step_number in results:
                outcome = f"[green]✅ {results[step.step_number]}[/]"
            elif step.step_number in errors:
                outcome = f"[red]❌ {errors[step.step_number]}[/]"
            else:
                outcome = "[yellow]⏳ not run[/]"
            table.add_row(str(step.step_number), step.description, outcome)
        console.print(table)
    if result.success:
        console.print("[bold green]Workflow completed successfully.[/]")
        return
    console.print(f"[red]Workflow failed:[/] {escape(result.error or '')}")
    raise typer.Exit(code=1)


@app.command()
def detect(
    text: str = typer.Argument(..., help="User request to classify"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Optional YAML configuration"),
) -> None:
    """Show whether a request would be treated as multi-action."""

    config = _load(config_path)
    detector = PatternMultiActionDetector(
        config.enforcer.repeated_patterns, config.enforcer.coordinating_words or None
    )
    detection = detector.detect(text)
    verdict = "[bold yellow]multi-action[/]" if detection else "[bold green]single action[/]"
    console.print(f"Detector: {verdict} {detection.reason}".rstrip())
    if detection.targets:
        console.print("Targets: " + ", ".join(detection.targets))
    complexity = "multiple steps" if needs_multiple_steps(text) else "single step"
    console.print(f"Complexity heuristic: {complexity}")


@app.command()
def inspect(config_path: Path = typer.Argument(..., help="Config to inspect")) -> None:
    """Print the tools, workflows, and schedules defined by a configuration file."""

    config = _load(config_path)
    orchestrator = Orchestrator(config)
    console.print(f"[bold]Project:[/] {config.name}\n{config.description or ''}")

    tools = Table(title="Tools", show_lines=True)
    tools.add_column("Name")
    tools.add_column("Guarded")
    tools.add_column("Description")
    enforcer = orchestrator.enforcer
    for definition in orchestrator.tool_definitions():
        guarded = "yes" if enforcer and enforcer.guards(definition["name"]) else ""
        summary = (definition["description"] or "").strip().splitlines()
        tools.add_row(definition["name"], guarded, summary[0] if summary else "")
    console.print(tools)

    console.print("[bold]Workflows[/]")
    for workflow_id in orchestrator.workflow_store.list():
        console.print(f"- {workflow_id}")
    console.print("[bold]Schedules[/]")
    for spec in config.schedules:
        limit = spec.max_executions or "∞"
        console.print(f"- {spec.name}: {spec.workflow_id} @ '{spec.cron}' {spec.timezone} (max {limit})")


if __name__ == "__main__":  # pragma: no cover
    app()
