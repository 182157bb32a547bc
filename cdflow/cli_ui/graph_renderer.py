"""Terminal rendering of stage trees using Rich."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from cdflow.core.builder import analyze_parallelism
from cdflow.core.models import NodeStatus, PipelineRun, StageKind, StageNode


class StageTreeRenderer:
    """Render a stage tree as a Rich Tree or as topological waves.

    All user-controlled strings (stage names, commands) are escaped to
    prevent Rich markup injection.
    """

    KIND_STYLES = {
        StageKind.SEQUENTIAL: ("[S]", "white"),
        StageKind.PARALLEL: ("[P]", "green"),
        StageKind.MATRIX: ("[M]", "blue"),
        StageKind.MATRIX_CELL: ("[C]", "blue"),
        StageKind.GATE: ("[G]", "yellow"),
        StageKind.APPROVAL: ("[H]", "red"),
        StageKind.DEPLOY: ("[D]", "magenta"),
        StageKind.LEAF: ("[ ]", "cyan"),
    }

    STATUS_COLORS = {
        "pending": "dim",
        "running": "blue bold",
        "succeeded": "green",
        "failed": "red bold",
        "aborted": "yellow bold",
        "skipped": "dim strikethrough",
    }

    STATUS_INDICATORS = {
        "succeeded": " ✓",
        "failed": " ✗",
        "aborted": " ■",
        "running": " ⟳",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_as_tree(self, root: StageNode, show_steps: bool = False) -> Tree:
        tree = Tree(f"[bold]{escape(root.name)}[/]")
        for child in root.children:
            self._add_node(tree, child, show_steps)
        return tree

    def _add_node(self, parent: Tree, node: StageNode, show_steps: bool) -> None:
        branch = parent.add(self._label(node))
        if show_steps:
            for step in node.steps:
                marker = " [dim](best-effort)[/]" if step.best_effort else ""
                branch.add(f"[dim]$[/] {escape(step.display_name)}{marker}")
        for child in node.children:
            self._add_node(branch, child, show_steps)

    def _label(self, node: StageNode) -> str:
        symbol, color = self.KIND_STYLES.get(node.kind, ("[ ]", "white"))
        safe_name = escape(node.name)
        details = []
        if node.gate:
            details.append(f"gate: {escape(node.gate.project_key)}")
        if node.deploy:
            details.append(f"deploy: {escape(node.deploy.deployment)}")
            if not node.deploy.rollback:
                details.append("no rollback")
        if node.continue_on_error:
            details.append("continue-on-error")
        if node.retries:
            details.append(f"retries={node.retries}")
        suffix = f" [dim]({', '.join(details)})[/]" if details else ""

        status = node.status.value
        if node.status == NodeStatus.PENDING:
            return f"[{color}]{escape(symbol)} {safe_name}[/]{suffix}"
        status_color = self.STATUS_COLORS.get(status, "white")
        indicator = self.STATUS_INDICATORS.get(status, "")
        return f"[{status_color}]{escape(symbol)} {safe_name}{indicator}[/]{suffix}"

    def render_waves(self, root: StageNode) -> str:
        """One line per wave of stages that may run concurrently."""
        lines = []
        waves = analyze_parallelism(root)
        for index, wave in enumerate(waves, start=1):
            stages = "  |  ".join(escape(path) for path in wave)
            lines.append(f"[bold]{index:>2}[/] {stages}")
        return "\n".join(lines)


class RunTableRenderer:
    """Render run outcomes and run history as Rich tables."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    @staticmethod
    def _status_text(status: str) -> str:
        if status == "succeeded":
            return "[green]✓ Succeeded[/]"
        if status == "failed":
            return "[red]✗ Failed[/]"
        if status == "aborted":
            return "[yellow]■ Aborted[/]"
        if status == "running":
            return "[blue]⟳ Running[/]"
        if status == "skipped":
            return "[dim]⊘ Skipped[/]"
        return "[dim]○ Pending[/]"

    def render_stage_table(self, run: PipelineRun) -> Table:
        table = Table(title=f"Build #{run.run_id} ({escape(run.branch)})")
        table.add_column("Stage", style="cyan")
        table.add_column("Kind", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Steps", justify="right")
        table.add_column("Error", max_width=50)

        for node in run.root.walk():
            if not node.path:
                continue
            depth = node.path.count("/")
            error = escape(str(node.error).splitlines()[0]) if node.error else ""
            tolerated = f" [yellow]({len(node.tolerated)} tolerated)[/]" if node.tolerated else ""
            table.add_row(
                "  " * depth + escape(node.name),
                node.kind.value,
                self._status_text(node.status.value),
                f"{len(node.step_results)}{tolerated}",
                error,
            )
        return table

    def render_history(self, records: list[Any]) -> Table:
        table = Table(title="Run history")
        table.add_column("Build", justify="right")
        table.add_column("Pipeline", style="cyan")
        table.add_column("Branch")
        table.add_column("Status", justify="center")
        table.add_column("Failed stage")
        table.add_column("Error kind", style="magenta")
        table.add_column("Started")

        for record in records:
            table.add_row(
                str(record.run_id),
                escape(record.pipeline),
                escape(record.branch),
                self._status_text(record.status),
                escape(record.failed_stage or ""),
                record.error_kind or "",
                record.started_at.strftime("%Y-%m-%d %H:%M:%S") if record.started_at else "",
            )
        return table
