"""Expansion of a pipeline declaration into the executable stage tree.

The builder is the only place where declarations are validated structurally;
every problem it finds is raised as ConfigurationError before the engine
acquires any execution context.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping, Sequence

import networkx as nx

from cdflow.core.declaration import MatrixDecl, PipelineDecl, StageDecl
from cdflow.core.errors import ConfigurationError
from cdflow.core.models import ContextSpec, StageKind, StageNode, substitute

logger = logging.getLogger(__name__)


def expand_matrix(matrix: MatrixDecl, stage: str = "<matrix>") -> list[dict[str, str]]:
    """Return one mapping per combination of axis values, in declaration order.

    Raises:
        ConfigurationError: If there are no axes, an axis has no values, or an
            axis repeats a value (which would produce duplicate cells)
    """
    if not matrix.axes:
        raise ConfigurationError(f"Matrix of stage '{stage}' declares no axes", stage)

    for axis, values in matrix.axes.items():
        if not values:
            raise ConfigurationError(
                f"Matrix axis '{axis}' of stage '{stage}' has no values", stage
            )
        if len(set(values)) != len(values):
            raise ConfigurationError(
                f"Matrix axis '{axis}' of stage '{stage}' repeats a value: {values}", stage
            )

    names = list(matrix.axes)
    return [
        dict(zip(names, combination, strict=True))
        for combination in itertools.product(*(matrix.axes[n] for n in names))
    ]


def cell_name(values: Mapping[str, str]) -> str:
    return ", ".join(f"{axis}={value}" for axis, value in values.items())


class StageGraphBuilder:
    """Build a StageNode tree from a PipelineDecl.

    USAGE:
        builder = StageGraphBuilder()
        root = builder.build(PipelineDecl.from_yaml("pipeline.yaml"))
    """

    def __init__(self, default_context: ContextSpec | None = None):
        self.default_context = default_context

    def build(self, declaration: PipelineDecl) -> StageNode:
        if not declaration.stages:
            raise ConfigurationError(f"Pipeline '{declaration.name}' declares no stages")

        context = declaration.context or self.default_context
        root = StageNode(
            name=declaration.name,
            kind=StageKind.SEQUENTIAL,
            path="",
            context=context,
            hooks=declaration.post,
        )
        root.children = self._build_scope(declaration.stages, root, context, {})
        logger.debug(
            f"Built pipeline '{declaration.name}' with "
            f"{sum(1 for _ in root.walk()) - 1} stage nodes"
        )
        return root

    def _build_scope(
        self,
        decls: Sequence[StageDecl],
        parent: StageNode,
        context: ContextSpec | None,
        values: Mapping[str, str],
    ) -> list[StageNode]:
        seen: set[str] = set()
        nodes = []
        for decl in decls:
            if decl.name in seen:
                scope = parent.path or parent.name
                raise ConfigurationError(
                    f"Duplicate stage name '{decl.name}' in scope '{scope}'", decl.name
                )
            seen.add(decl.name)
            nodes.append(self._build_stage(decl, parent, context, values))
        return nodes

    def _build_stage(
        self,
        decl: StageDecl,
        parent: StageNode,
        inherited_context: ContextSpec | None,
        values: Mapping[str, str],
    ) -> StageNode:
        path = f"{parent.path}/{decl.name}" if parent.path else decl.name
        context = decl.context or inherited_context

        node = StageNode(
            name=decl.name,
            kind=StageKind.LEAF,
            path=path,
            context=context.render(values) if context else None,
            hooks=decl.post.render(values),
            continue_on_error=decl.continue_on_error,
            retries=decl.retries,
            parent=parent,
        )

        if decl.retries and decl.steps is None:
            raise ConfigurationError(
                f"Stage '{path}' sets retries but declares no steps to retry", path
            )

        if decl.matrix is not None:
            self._check_matrix_shape(decl, path)
            node.kind = StageKind.MATRIX
            # Axis placeholders only make sense inside a cell
            node.context = inherited_context.render(values) if inherited_context else None
            node.children = self._build_cells(decl, node, context, values)
            return node

        forms = [f for f in (decl.steps, decl.stages, decl.parallel) if f is not None]
        if len(forms) > 1:
            raise ConfigurationError(
                f"Stage '{path}' declares more than one of steps/stages/parallel", path
            )
        policies = [p for p in (decl.gate, decl.approval, decl.deploy) if p is not None]
        if len(policies) > 1:
            raise ConfigurationError(
                f"Stage '{path}' may declare only one of gate/approval/deploy", path
            )

        if decl.approval is not None:
            if decl.steps is not None or decl.parallel is not None:
                raise ConfigurationError(
                    f"Approval stage '{path}' may only guard nested 'stages'", path
                )
            node.kind = StageKind.APPROVAL
            node.approval = decl.approval
            node.children = self._build_scope(decl.stages or [], node, context, values)
        elif decl.gate is not None or decl.deploy is not None:
            if decl.stages is not None or decl.parallel is not None:
                raise ConfigurationError(
                    f"Stage '{path}' with gate/deploy may only declare 'steps'", path
                )
            node.steps = [s.render(values) for s in decl.steps or []]
            if decl.gate is not None:
                node.kind = StageKind.GATE
                node.gate = decl.gate.model_copy(
                    update={"project_key": substitute(decl.gate.project_key, values)}
                )
            else:
                node.kind = StageKind.DEPLOY
                node.deploy = decl.deploy.model_copy(
                    update={
                        "deployment": substitute(decl.deploy.deployment, values),
                        "image": substitute(decl.deploy.image, values),
                        "namespace": substitute(decl.deploy.namespace, values)
                        if decl.deploy.namespace
                        else None,
                    }
                )
        elif decl.steps is not None:
            if not decl.steps:
                raise ConfigurationError(f"Stage '{path}' declares an empty steps list", path)
            node.steps = [s.render(values) for s in decl.steps]
        elif decl.stages is not None:
            if not decl.stages:
                raise ConfigurationError(f"Stage '{path}' declares no nested stages", path)
            node.kind = StageKind.SEQUENTIAL
            node.children = self._build_scope(decl.stages, node, context, values)
        elif decl.parallel is not None:
            if not decl.parallel:
                raise ConfigurationError(f"Stage '{path}' declares an empty parallel group", path)
            node.kind = StageKind.PARALLEL
            node.children = self._build_scope(decl.parallel, node, context, values)
        else:
            raise ConfigurationError(f"Stage '{path}' declares no body", path)

        return node

    def _check_matrix_shape(self, decl: StageDecl, path: str) -> None:
        if decl.parallel is not None or any(
            p is not None for p in (decl.gate, decl.approval, decl.deploy)
        ):
            raise ConfigurationError(
                f"Matrix stage '{path}' cannot declare parallel/gate/approval/deploy", path
            )
        if (decl.steps is None) == (decl.stages is None):
            raise ConfigurationError(
                f"Matrix stage '{path}' needs exactly one of 'steps' or 'stages'", path
            )

    def _build_cells(
        self,
        decl: StageDecl,
        matrix_node: StageNode,
        context: ContextSpec | None,
        values: Mapping[str, str],
    ) -> list[StageNode]:
        cells = []
        for combination in expand_matrix(decl.matrix, matrix_node.path):
            cell_values = {**values, **combination}
            name = cell_name(combination)
            cell_context = context or ContextSpec()
            cell_context = cell_context.model_copy(
                update={"parameters": {**cell_context.parameters, **combination}}
            ).render(cell_values)
            cell = StageNode(
                name=name,
                kind=StageKind.MATRIX_CELL,
                path=f"{matrix_node.path}/{name}",
                context=cell_context,
                matrix_values=dict(combination),
                retries=decl.retries,
                parent=matrix_node,
            )
            if decl.steps is not None:
                if not decl.steps:
                    raise ConfigurationError(
                        f"Matrix stage '{matrix_node.path}' declares an empty steps list",
                        matrix_node.path,
                    )
                cell.steps = [s.render(cell_values) for s in decl.steps]
            else:
                cell.children = self._build_scope(decl.stages, cell, cell_context, cell_values)
            cells.append(cell)

        logger.debug(f"Matrix '{matrix_node.path}' expanded into {len(cells)} cells")
        return cells


# ========== Graph Analysis ==========


def to_networkx(root: StageNode) -> nx.DiGraph:
    """Precedence graph of the executable units of a stage tree.

    Units are nodes without children plus approval nodes. An edge A -> B means
    B cannot start before A is terminal.
    """
    graph = nx.DiGraph()
    _link(root, graph)
    return graph


def _link(node: StageNode, graph: nx.DiGraph) -> tuple[list[str], list[str]]:
    """Add ``node``'s units to ``graph`` and return its (entry, exit) units."""
    label = node.path or node.name
    if not node.children:
        graph.add_node(label, kind=node.kind.value)
        return [label], [label]

    if node.kind in (StageKind.PARALLEL, StageKind.MATRIX):
        entries: list[str] = []
        exits: list[str] = []
        for child in node.children:
            child_entries, child_exits = _link(child, graph)
            entries.extend(child_entries)
            exits.extend(child_exits)
        return entries, exits

    entries = []
    previous: list[str] = []
    if node.kind == StageKind.APPROVAL:
        graph.add_node(label, kind=node.kind.value)
        entries = previous = [label]
    for child in node.children:
        child_entries, child_exits = _link(child, graph)
        if previous:
            graph.add_edges_from((p, e) for p in previous for e in child_entries)
        else:
            entries = child_entries
        previous = child_exits
    return entries, previous


def analyze_parallelism(root: StageNode) -> list[list[str]]:
    """Group executable units into waves that may run concurrently."""
    graph = to_networkx(root)
    return [sorted(level) for level in nx.topological_generations(graph)]
