"""Workflow definitions, runs and listeners over a DAG of task definitions."""

from agentflow.core.workflows.definition import (
    WorkflowGraph,
    add_connection,
    add_node,
    create_workflow_definition,
    get_workflow_definition,
    get_workflow_definition_by_key,
    validate_workflow_definition,
)
from agentflow.core.workflows.engine import (
    create_workflow_run,
    final_output_artifacts,
    get_workflow_run,
    resume_workflow_run,
    start_workflow_run,
    stop_workflow_run,
    workflow_progress,
)
from agentflow.core.workflows.lifecycle import run_workflow
from agentflow.core.workflows.listeners import (
    ListenerRef,
    ListenerRegistry,
    find_for_listener_and_type,
    find_for_workflow_run,
    on_workflow_complete,
)

__all__ = [
    'WorkflowGraph',
    'add_connection',
    'add_node',
    'create_workflow_definition',
    'get_workflow_definition',
    'get_workflow_definition_by_key',
    'validate_workflow_definition',
    'create_workflow_run',
    'final_output_artifacts',
    'get_workflow_run',
    'resume_workflow_run',
    'start_workflow_run',
    'stop_workflow_run',
    'workflow_progress',
    'run_workflow',
    'ListenerRef',
    'ListenerRegistry',
    'find_for_listener_and_type',
    'find_for_workflow_run',
    'on_workflow_complete',
]
