"""agentflow - multi-tenant task and workflow orchestration for AI agents"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.models.app import AppConfig, DatabaseConfig, QueueConfig, RunContext
from .core.models.retry import ProcessRetryPolicy
from .core.models.usage import UsageSummary
from .core.models.runner_config import (
    AgentRunnerConfig,
    ApiRunnerConfig,
    FileOrganizationRunnerConfig,
)
from .core.types.status import ArtifactMode, ListenerStatus, RunStatus
from .core.errors import (
    AgentflowError,
    ErrorCode,
    MultipleValidationErrors,
    ValidationReport,
)
from .core.store import Store
from .core.runtime import Runtime
from .core.registry import Registry
from .core.dispatch.queue import DatabaseJobQueue, InMemoryJobQueue, Job, JobQueue
from .core.artifacts.store import ArtifactDraft, create_artifact
from .core.tasks.definition import create_task_definition
from .core.tasks.runner import (
    input_artifacts,
    mark_timed_out_processes,
    output_artifacts,
    rerun_task_run,
    resume_task_run,
    run_task,
    stop_task_run,
)
from .core.worker.context import ProcessContext, ProcessHandler, ProcessOutput
from .core.worker.worker import ProcessWorker
from .core.workflows import (
    ListenerRef,
    ListenerRegistry,
    add_connection,
    add_node,
    create_workflow_definition,
    on_workflow_complete,
    run_workflow,
    validate_workflow_definition,
)

__all__ = [
    # Configuration
    'AppConfig',
    'DatabaseConfig',
    'QueueConfig',
    'RunContext',
    'ProcessRetryPolicy',
    'AgentRunnerConfig',
    'ApiRunnerConfig',
    'FileOrganizationRunnerConfig',
    # Values
    'UsageSummary',
    'ArtifactMode',
    'ListenerStatus',
    'RunStatus',
    # Errors
    'AgentflowError',
    'ErrorCode',
    'MultipleValidationErrors',
    'ValidationReport',
    # Runtime
    'Store',
    'Runtime',
    'Registry',
    'DatabaseJobQueue',
    'InMemoryJobQueue',
    'Job',
    'JobQueue',
    'ProcessWorker',
    'ProcessContext',
    'ProcessHandler',
    'ProcessOutput',
    # Artifacts and tasks
    'ArtifactDraft',
    'create_artifact',
    'create_task_definition',
    'run_task',
    'rerun_task_run',
    'stop_task_run',
    'resume_task_run',
    'mark_timed_out_processes',
    'input_artifacts',
    'output_artifacts',
    # Workflows
    'ListenerRef',
    'ListenerRegistry',
    'add_connection',
    'add_node',
    'create_workflow_definition',
    'validate_workflow_definition',
    'on_workflow_complete',
    'run_workflow',
]
