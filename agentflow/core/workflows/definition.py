"""
Workflow definition editing, validated at edit time.

Connections are checked for self loops, duplicates, foreign nodes and
cycles when they are added, and validate_workflow_definition() checks
the whole graph, so the engine can rely on a DAG at run time without
validating again.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.errors import (
    AgentflowError,
    ErrorCode,
    ValidationReport,
    WorkflowValidationError,
    not_found,
    raise_collected,
)
from agentflow.core.models.app import RunContext
from agentflow.core.models.task_pg import TaskDefinitionModel
from agentflow.core.models.workflow_pg import (
    WorkflowConnectionModel,
    WorkflowDefinitionModel,
    WorkflowNodeModel,
)
from agentflow.core.workflows.levels import (
    Edge,
    compute_levels,
    sink_nodes,
    starting_nodes,
    topological_order,
    transitive_dependents,
)


@dataclass
class WorkflowGraph:
    """Nodes (in creation order) and connections of one definition."""

    definition: WorkflowDefinitionModel
    nodes: dict[str, WorkflowNodeModel]
    connections: list[WorkflowConnectionModel]

    @property
    def node_ids(self) -> list[str]:
        return list(self.nodes)

    @property
    def edges(self) -> list[Edge]:
        return [(c.source_node_id, c.target_node_id) for c in self.connections]

    def levels(self) -> dict[str, int]:
        return compute_levels(self.node_ids, self.edges)

    def starting_nodes(self) -> list[str]:
        return starting_nodes(self.node_ids, self.edges)

    def sink_nodes(self) -> list[str]:
        return sink_nodes(self.node_ids, self.edges)

    def dependents_of(self, node_id: str) -> list[str]:
        return transitive_dependents(self.node_ids, self.edges, node_id)


async def load_graph(session: AsyncSession, definition: WorkflowDefinitionModel) -> WorkflowGraph:
    nodes = await session.execute(
        select(WorkflowNodeModel)
        .where(WorkflowNodeModel.workflow_definition_id == definition.id)
        .order_by(WorkflowNodeModel.created_at.asc(), WorkflowNodeModel.id.asc())
    )
    connections = await session.execute(
        select(WorkflowConnectionModel)
        .where(WorkflowConnectionModel.workflow_definition_id == definition.id)
        .order_by(WorkflowConnectionModel.id.asc())
    )
    return WorkflowGraph(
        definition=definition,
        nodes={node.id: node for node in nodes.scalars()},
        connections=list(connections.scalars()),
    )


async def get_workflow_definition(
    session: AsyncSession, ctx: RunContext, definition_id: str
) -> WorkflowDefinitionModel:
    definition = await session.get(WorkflowDefinitionModel, definition_id)
    if definition is None or definition.team_id != ctx.team_id:
        raise not_found('workflow definition', definition_id)
    return definition


async def get_workflow_definition_by_key(
    session: AsyncSession, ctx: RunContext, key: str
) -> WorkflowDefinitionModel:
    """Resolve a definition by name (the key features use) or by id."""
    result = await session.execute(
        select(WorkflowDefinitionModel)
        .where(WorkflowDefinitionModel.team_id == ctx.team_id)
        .where(or_(WorkflowDefinitionModel.name == key, WorkflowDefinitionModel.id == key))
        .limit(1)
    )
    definition = result.scalar_one_or_none()
    if definition is None:
        raise not_found('workflow definition', key)
    return definition


async def create_workflow_definition(
    session: AsyncSession,
    ctx: RunContext,
    name: str,
    description: Optional[str] = None,
) -> WorkflowDefinitionModel:
    if not name or not name.strip():
        raise WorkflowValidationError(
            message='workflow definition name is required',
            code=ErrorCode.WORKFLOW_NO_NAME,
            help_text='the name is the key features use to start runs of this workflow',
        )
    definition = WorkflowDefinitionModel(team_id=ctx.team_id, name=name, description=description)
    session.add(definition)
    await session.flush()
    return definition


async def add_node(
    session: AsyncSession,
    ctx: RunContext,
    definition: WorkflowDefinitionModel,
    name: str,
    task_definition: TaskDefinitionModel,
    *,
    settings: Optional[dict[str, Any]] = None,
    params: Optional[dict[str, Any]] = None,
) -> WorkflowNodeModel:
    if task_definition.team_id != ctx.team_id or definition.team_id != ctx.team_id:
        raise not_found('task definition', task_definition.id)

    existing = await session.execute(
        select(WorkflowNodeModel.id)
        .where(WorkflowNodeModel.workflow_definition_id == definition.id)
        .where(WorkflowNodeModel.name == name)
    )
    if existing.first() is not None:
        raise WorkflowValidationError(
            message=f"duplicate node name '{name}'",
            code=ErrorCode.WORKFLOW_DUPLICATE_NODE_NAME,
            help_text='node names must be unique within a workflow definition',
        )

    node = WorkflowNodeModel(
        workflow_definition_id=definition.id,
        name=name,
        task_definition_id=task_definition.id,
        settings=dict(settings or {'x': 0, 'y': 0}),
        params=dict(params or {}),
    )
    session.add(node)
    await session.flush()
    return node


async def add_connection(
    session: AsyncSession,
    ctx: RunContext,
    definition: WorkflowDefinitionModel,
    source: WorkflowNodeModel,
    target: WorkflowNodeModel,
    *,
    source_output_port: str = 'output',
    target_input_port: str = 'input',
) -> WorkflowConnectionModel:
    """Connect two nodes of `definition`, refusing edges that break the DAG."""
    if definition.team_id != ctx.team_id:
        raise not_found('workflow definition', definition.id)
    foreign = [
        node.name
        for node in (source, target)
        if node.workflow_definition_id != definition.id
    ]
    if foreign:
        raise WorkflowValidationError(
            message='connection crosses workflow definitions',
            code=ErrorCode.WORKFLOW_CROSS_DEFINITION_CONNECTION,
            notes=[f'nodes not in {definition.name!r}: {foreign}'],
        )
    if source.id == target.id:
        raise WorkflowValidationError(
            message=f"node '{source.name}' cannot connect to itself",
            code=ErrorCode.WORKFLOW_SELF_CONNECTION,
        )

    graph = await load_graph(session, definition)
    for connection in graph.connections:
        if (
            connection.source_node_id == source.id
            and connection.target_node_id == target.id
            and connection.source_output_port == source_output_port
            and connection.target_input_port == target_input_port
        ):
            raise WorkflowValidationError(
                message=f"connection '{source.name}' -> '{target.name}' already exists",
                code=ErrorCode.WORKFLOW_DUPLICATE_CONNECTION,
            )

    try:
        topological_order(graph.node_ids, graph.edges + [(source.id, target.id)])
    except WorkflowValidationError as exc:
        raise exc.with_note(f"adding '{source.name}' -> '{target.name}' closes a loop")

    connection = WorkflowConnectionModel(
        workflow_definition_id=definition.id,
        source_node_id=source.id,
        source_output_port=source_output_port,
        target_node_id=target.id,
        target_input_port=target_input_port,
    )
    session.add(connection)
    await session.flush()
    return connection


async def validate_workflow_definition(
    session: AsyncSession, ctx: RunContext, definition: WorkflowDefinitionModel
) -> WorkflowGraph:
    """Check the whole graph; all independent problems are raised together."""
    report = ValidationReport('workflow definition')
    graph = await load_graph(session, definition)

    if not definition.name or not definition.name.strip():
        report.add(
            WorkflowValidationError(
                message='workflow definition name is required',
                code=ErrorCode.WORKFLOW_NO_NAME,
            )
        )
    if not graph.nodes:
        report.add(
            WorkflowValidationError(
                message=f"workflow '{definition.name}' has no nodes",
                code=ErrorCode.WORKFLOW_NO_NODES,
                help_text='add at least one node bound to a task definition',
            )
        )
        raise_collected(report)
        return graph

    names = [node.name for node in graph.nodes.values()]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        report.add(
            WorkflowValidationError(
                message='duplicate node names',
                code=ErrorCode.WORKFLOW_DUPLICATE_NODE_NAME,
                notes=[f'duplicated: {duplicates}'],
            )
        )

    for connection in graph.connections:
        unknown = [
            node_id
            for node_id in (connection.source_node_id, connection.target_node_id)
            if node_id not in graph.nodes
        ]
        if unknown:
            report.add(
                WorkflowValidationError(
                    message='connection references unknown node',
                    code=ErrorCode.WORKFLOW_UNKNOWN_NODE,
                    notes=[f'connection {connection.id}: unknown {unknown}'],
                )
            )
        elif connection.source_node_id == connection.target_node_id:
            report.add(
                WorkflowValidationError(
                    message=f"node '{graph.nodes[connection.source_node_id].name}' connects to itself",
                    code=ErrorCode.WORKFLOW_SELF_CONNECTION,
                )
            )

    if not graph.starting_nodes():
        report.add(
            WorkflowValidationError(
                message='workflow has no starting node',
                code=ErrorCode.WORKFLOW_NO_STARTING_NODES,
                help_text='at least one node must have no incoming connection',
            )
        )
    try:
        topological_order(graph.node_ids, graph.edges)
    except AgentflowError as exc:
        report.add(exc)

    task_ids = {node.task_definition_id for node in graph.nodes.values()}
    found = await session.execute(
        select(TaskDefinitionModel.id)
        .where(TaskDefinitionModel.id.in_(task_ids))
        .where(TaskDefinitionModel.team_id == ctx.team_id)
    )
    missing = task_ids - set(found.scalars())
    if missing:
        report.add(
            WorkflowValidationError(
                message='nodes reference unknown task definitions',
                code=ErrorCode.WORKFLOW_UNKNOWN_NODE,
                notes=[f'missing task definitions: {sorted(missing)}'],
            )
        )

    raise_collected(report)
    return graph
