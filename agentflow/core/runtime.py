"""Collaborators the engine needs beyond the session: queue, runners, listeners."""

from __future__ import annotations

from dataclasses import dataclass, field

from agentflow.core.dispatch.queue import JobQueue
from agentflow.core.registry import Registry
from agentflow.core.runners.base import AgentTaskRunner, ApiTaskRunner, TaskRunner
from agentflow.core.runners.file_organization import FileOrganizationRunner
from agentflow.core.workflows.listeners import ListenerRegistry


def default_runners() -> Registry[TaskRunner]:
    runners: Registry[TaskRunner] = Registry('task runner')
    for runner in (AgentTaskRunner(), ApiTaskRunner(), FileOrganizationRunner()):
        runners.register(runner.kind, runner)
    return runners


@dataclass
class Runtime:
    """
    Passed alongside the session and RunContext into every engine call
    that dispatches work or finishes runs.

    queue: where process dispatches go
    runners: runner kind -> TaskRunner (process expansion and follow-ups)
    listeners: listener type -> loader and completion callbacks
    """

    queue: JobQueue
    runners: Registry[TaskRunner] = field(default_factory=default_runners)
    listeners: ListenerRegistry = field(default_factory=ListenerRegistry)

    def runner_for(self, runner_kind: str) -> TaskRunner:
        return self.runners[runner_kind]
