"""ORM models and value types. Importing this package registers every table."""

from agentflow.core.models.base import Base
from agentflow.core.models.artifact_pg import ArtifactModel
from agentflow.core.models.audit_pg import AuditLogModel
from agentflow.core.models.jobs_pg import JobModel
from agentflow.core.models.task_pg import (
    TaskDefinitionModel,
    TaskProcessAttemptModel,
    TaskProcessModel,
    TaskRunAttemptModel,
    TaskRunModel,
)
from agentflow.core.models.workflow_pg import (
    WorkflowConnectionModel,
    WorkflowDefinitionModel,
    WorkflowListenerModel,
    WorkflowNodeModel,
    WorkflowRunModel,
)

__all__ = [
    'Base',
    'ArtifactModel',
    'AuditLogModel',
    'JobModel',
    'TaskDefinitionModel',
    'TaskProcessAttemptModel',
    'TaskProcessModel',
    'TaskRunAttemptModel',
    'TaskRunModel',
    'WorkflowConnectionModel',
    'WorkflowDefinitionModel',
    'WorkflowListenerModel',
    'WorkflowNodeModel',
    'WorkflowRunModel',
]
