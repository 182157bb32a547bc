"""CLI entry point for cdflow.

Commands:
- cdflow init: Write a default engine config and a sample delivery pipeline
- cdflow validate: Check a pipeline file and expand its stage tree
- cdflow visualize: Show the stage tree and its concurrency waves
- cdflow run: Execute a pipeline
- cdflow history: List recorded runs
- cdflow events: Show the event log of one run
- cdflow version: Show version information
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from cdflow import __version__
from cdflow.adapters.channels import (
    AutoApprovalChannel,
    ConsoleApprovalChannel,
    ConsoleNotificationChannel,
)
from cdflow.adapters.kubectl import KubectlDeploymentTarget
from cdflow.adapters.quality import CommandQualityGate
from cdflow.cli_ui.graph_renderer import RunTableRenderer, StageTreeRenderer
from cdflow.core.builder import StageGraphBuilder, analyze_parallelism
from cdflow.core.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    DEFAULT_CONFIG_YAML,
    EngineConfig,
    load_config,
)
from cdflow.core.declaration import PipelineDecl
from cdflow.core.engine import PipelineEngine
from cdflow.core.errors import ConfigurationError
from cdflow.core.models import (
    PipelineRun,
    RunBindings,
    RunStatus,
    StageKind,
    StageNode,
    substitute,
)
from cdflow.core.state import Database
from cdflow.sandbox.executor import (
    DockerProvider,
    DockerStepInvoker,
    LocalProvider,
    LocalStepInvoker,
)

console = Console()

STATE_DB = "state.db"
SAMPLE_PIPELINE = "pipeline.yaml"

SAMPLE_PIPELINE_YAML = """# Sample delivery pipeline
name: delivery
description: Build, verify and promote the application image

context:
  label: docker
  image: "node:20"

environment:
  IMAGE_REF: "${REGISTRY}/${IMAGE}:${BUILD_NUMBER}"

stages:
  - name: Checkout
    steps:
      - git rev-parse HEAD

  - name: Build & Test
    matrix:
      axes:
        NODE_VERSION: ["18", "20"]
        OS: [linux, alpine]
    context:
      label: "${OS}"
      image: "node:${NODE_VERSION}"
    steps:
      - npm ci
      - npm test

  - name: Verify
    parallel:
      - name: Lint
        steps: [npm run lint]
      - name: Build
        steps: [npm run build]

  - name: Quality Gate
    steps:
      - sonar-scanner -Dsonar.projectKey=${APP}
    gate:
      project_key: "${APP}"

  - name: Security Scan
    steps:
      - run: trivy fs --exit-code 1 .
        best_effort: true

  - name: Publish
    steps:
      - docker build -t ${IMAGE_REF} .
      - docker push ${IMAGE_REF}

  - name: Deploy Canary
    deploy:
      deployment: "${APP}-canary"
      image: "${IMAGE_REF}"
      rollback: false

  - name: Promote
    approval:
      message: Promote this build to production?
      allowed_responders: [release-manager]
      timeout: 1800
    stages:
      - name: Deploy Production
        deploy:
          deployment: "${APP}"
          image: "${IMAGE_REF}"

post:
  always:
    - echo "Build ${BUILD_NUMBER} on ${BRANCH_NAME} finished"
"""


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)
        ],
        force=True,
    )


def _load_tree(pipeline_file: str) -> tuple[PipelineDecl, StageNode]:
    """Load and expand a pipeline file, exiting with code 1 on a bad declaration."""
    try:
        declaration = PipelineDecl.from_yaml(pipeline_file)
        root = StageGraphBuilder().build(declaration)
    except ConfigurationError as e:
        console.print("[red]Invalid pipeline:[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    return declaration, root


def _build_engine(
    config: EngineConfig, db: Database, auto_approve: bool
) -> PipelineEngine:
    if config.provider == "docker":
        provider = DockerProvider(config.docker)
        invoker = DockerStepInvoker()
    else:
        provider = LocalProvider()
        invoker = LocalStepInvoker()

    approval_channel = AutoApprovalChannel() if auto_approve else ConsoleApprovalChannel(console)
    return PipelineEngine(
        provider,
        invoker,
        db,
        config,
        quality_gate=CommandQualityGate(config.quality_gate),
        deployment_target=KubectlDeploymentTarget(config.kubectl),
        approval_channel=approval_channel,
        notifier=ConsoleNotificationChannel(console),
    )


def _parse_assignments(assignments: tuple[str, ...]) -> dict[str, str]:
    values = {}
    for item in assignments:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint="--set")
        values[key] = value
    return values


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def main(verbose: bool) -> None:
    """cdflow - continuous-delivery pipeline orchestration engine."""
    _configure_logging(verbose)


@main.command()
def init() -> None:
    """Write a default config and a sample pipeline."""
    repo_path = get_repo_path()
    config_dir = repo_path / CONFIG_DIR
    config_path = config_dir / CONFIG_FILE

    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    config_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)
    console.print(f"[green]Created {CONFIG_DIR}/{CONFIG_FILE}[/green]")

    pipeline_path = repo_path / SAMPLE_PIPELINE
    if not pipeline_path.exists():
        pipeline_path.write_text(SAMPLE_PIPELINE_YAML)
        console.print(f"[green]Created {SAMPLE_PIPELINE}[/green]")


@main.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
def validate(pipeline_file: str) -> None:
    """Validate a pipeline file and expand its stage tree."""
    try:
        load_config(get_repo_path())
    except ConfigurationError as e:
        console.print(f"[red]Invalid config:[/red] {escape(str(e))}")
        sys.exit(1)

    declaration, root = _load_tree(pipeline_file)
    nodes = [node for node in root.walk() if node.path]
    cells = sum(1 for node in nodes if node.kind == StageKind.MATRIX_CELL)
    waves = analyze_parallelism(root)

    console.print(f"[green]✓ Pipeline '{escape(declaration.name)}' is valid[/green]")
    console.print(f"  Stages: {len(nodes)}")
    console.print(f"  Matrix cells: {cells}")
    console.print(f"  Waves: {len(waves)}")


@main.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--steps", "show_steps", is_flag=True, help="Show the steps of each stage")
def visualize(pipeline_file: str, show_steps: bool) -> None:
    """Show the stage tree and the stages that may run concurrently."""
    _, root = _load_tree(pipeline_file)
    renderer = StageTreeRenderer(console)

    console.print(renderer.render_as_tree(root, show_steps=show_steps))
    console.print()
    console.print("[bold]Waves:[/]")
    console.print(renderer.render_waves(root))


@main.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--build-number", type=int, envvar="BUILD_NUMBER", help="Build number")
@click.option("--branch", help="Branch name (default: $BRANCH_NAME or main)")
@click.option("--registry", help="Image registry (default: $REGISTRY)")
@click.option("--image", help="Image name (default: $IMAGE)")
@click.option("--namespace", help="Deployment namespace (default: $NAMESPACE)")
@click.option("--app", help="Application name (default: $APP)")
@click.option(
    "--provider",
    type=click.Choice(["local", "docker"]),
    help="Execution backend (default: from config)",
)
@click.option("--auto-approve", is_flag=True, help="Approve every manual gate")
@click.option("--set", "assignments", multiple=True, help="Extra binding KEY=VALUE")
def run(
    pipeline_file: str,
    build_number: int | None,
    branch: str | None,
    registry: str | None,
    image: str | None,
    namespace: str | None,
    app: str | None,
    provider: str | None,
    auto_approve: bool,
    assignments: tuple[str, ...],
) -> None:
    """Execute a pipeline."""
    repo_path = get_repo_path()
    try:
        config = load_config(repo_path)
    except ConfigurationError as e:
        console.print(f"[red]Invalid config:[/red] {escape(str(e))}")
        sys.exit(1)
    if provider:
        config.provider = provider

    declaration, root = _load_tree(pipeline_file)
    db = Database(repo_path / CONFIG_DIR / STATE_DB)

    bindings = RunBindings.from_env(
        build_number or db.next_build_number(),
        branch=branch,
        registry=registry,
        image=image,
        namespace=namespace,
        app=app,
    )
    base = bindings.as_env()
    extra = {key: substitute(value, base) for key, value in declaration.environment.items()}
    extra.update(_parse_assignments(assignments))
    bindings = bindings.model_copy(update={"extra": extra})

    engine = _build_engine(config, db, auto_approve)
    pipeline_run = PipelineRun.create(bindings, root)
    console.print(
        f"[blue]Build #{pipeline_run.run_id} of '{escape(declaration.name)}' "
        f"on {escape(bindings.branch)}[/blue]"
    )

    try:
        status = asyncio.run(engine.run(pipeline_run))
    except KeyboardInterrupt:
        console.print("[yellow]Run interrupted[/yellow]")
        sys.exit(130)

    console.print(RunTableRenderer(console).render_stage_table(pipeline_run))
    if status == RunStatus.SUCCEEDED:
        console.print("[green]Pipeline succeeded[/green]")
    else:
        console.print(f"[red]{escape(pipeline_run.summary())}[/red]")
        sys.exit(1)


@main.command()
@click.option("--limit", "-n", type=int, default=20, help="Number of runs to show")
def history(limit: int) -> None:
    """List recorded runs, newest first."""
    db_path = get_repo_path() / CONFIG_DIR / STATE_DB
    if not db_path.exists():
        console.print("[yellow]No runs recorded yet[/yellow]")
        return

    records = Database(db_path).list_runs(limit)
    if not records:
        console.print("[yellow]No runs recorded yet[/yellow]")
        return
    console.print(RunTableRenderer(console).render_history(records))


@main.command()
@click.argument("run_id", type=int)
def events(run_id: int) -> None:
    """Show the event log of a run."""
    db_path = get_repo_path() / CONFIG_DIR / STATE_DB
    if not db_path.exists():
        console.print("[yellow]No runs recorded yet[/yellow]")
        return

    db = Database(db_path)
    log = db.get_events(run_id)
    if not log:
        click.secho(f"Run #{run_id} not found", fg="red")
        sys.exit(1)

    table = Table(title=f"Events of build #{run_id}")
    table.add_column("#", justify="right")
    table.add_column("Time")
    table.add_column("Event", style="cyan")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Details", max_width=60)
    for event in log:
        details = ", ".join(
            f"{key}={value}" for key, value in event.payload.items() if value not in (None, "", [])
        )
        table.add_row(
            str(event.id),
            event.timestamp.strftime("%H:%M:%S"),
            event.event_type.value,
            escape(event.stage or ""),
            event.status or "",
            escape(details[:200]),
        )
    console.print(table)


@main.command()
def version() -> None:
    """Show version information."""

    console.print(f"cdflow v{__version__}")
    console.print("Continuous-delivery pipeline orchestration engine")


if __name__ == "__main__":
    main()
