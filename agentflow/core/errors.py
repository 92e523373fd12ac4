"""Rust-style error display for agentflow definition, config and state errors."""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes for validation and engine state errors.

    Organized by category:
    - E001-E099: Workflow definition errors
    - E100-E199: Task definition / runner config errors
    - E200-E299: Configuration errors
    - E300-E399: Registry errors
    - E400-E499: Runtime state errors
    """

    # Workflow definition (E001-E099)
    WORKFLOW_NO_NAME = 'E001'
    WORKFLOW_NO_NODES = 'E002'
    WORKFLOW_UNKNOWN_NODE = 'E003'
    WORKFLOW_DUPLICATE_NODE_NAME = 'E004'
    WORKFLOW_NO_STARTING_NODES = 'E005'
    WORKFLOW_SELF_CONNECTION = 'E006'
    WORKFLOW_CYCLE_DETECTED = 'E007'
    WORKFLOW_DUPLICATE_CONNECTION = 'E008'
    WORKFLOW_CROSS_DEFINITION_CONNECTION = 'E009'

    # Task definition (E100-E199)
    TASK_INVALID_RUNNER_KIND = 'E100'
    TASK_INVALID_RUNNER_CONFIG = 'E101'
    TASK_INVALID_TIMEOUT = 'E102'
    TASK_INVALID_QUEUE = 'E103'
    TASK_INVALID_ARTIFACT_LEVELS = 'E104'
    TASK_INVALID_WINDOW = 'E105'

    # Config (E200-E299)
    CONFIG_INVALID_DATABASE_URL = 'E200'
    CONFIG_INVALID_QUEUES = 'E201'
    CONFIG_INVALID_DEFAULT_QUEUE = 'E202'
    CONFIG_INVALID_ENV = 'E203'

    # Registry (E300-E399)
    NOT_REGISTERED = 'E300'
    DUPLICATE_REGISTRATION = 'E301'

    # Runtime state (E400-E499)
    ILLEGAL_TRANSITION = 'E400'
    ARTIFACT_IMMUTABLE = 'E401'
    ARTIFACT_LINEAGE = 'E402'
    NOT_FOUND = 'E403'
    TEAM_MISMATCH = 'E404'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('AGENTFLOW_FORCE_COLOR'):
        return True
    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


@dataclass
class AgentflowError(Exception):
    """Base exception for agentflow validation and state errors.

    Carries an error code, free-form notes and a help line, and renders
    itself the way rustc renders diagnostics.
    """

    message: str
    code: ErrorCode | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def with_note(self, note: str) -> AgentflowError:
        """Add a note to the error (fluent API)."""
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> AgentflowError:
        """Set help text (fluent API)."""
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error in Rust style."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        lines: list[str] = ['']

        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        for note in self.notes:
            first, *rest = note.split('\n')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {first}')
            lines.extend(f'          {line}' for line in rest)

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            lines.extend(f'        {line}' for line in self.help_text.split('\n'))

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain text rendering, safe for logs and database columns."""
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _agentflow_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Print AgentflowError instances in Rust style, defer everything else."""
    if _env_flag('AGENTFLOW_PLAIN_ERRORS') or not isinstance(exc_value, AgentflowError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _env_flag('AGENTFLOW_VERBOSE'):
        print(file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _agentflow_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


# =============================================================================
# Specific Error Classes
# =============================================================================


@dataclass
class WorkflowValidationError(AgentflowError):
    """Raised when a workflow definition is invalid."""

    pass


@dataclass
class TaskDefinitionError(AgentflowError):
    """Raised when a task definition or its runner config is invalid."""

    pass


@dataclass
class ConfigurationError(AgentflowError):
    """Raised when app/database/queue configuration is invalid."""

    pass


@dataclass
class RegistryError(AgentflowError):
    """Raised when a registry lookup or registration fails."""

    pass


@dataclass
class StateTransitionError(AgentflowError):
    """Raised when an operation is not allowed in the entity's current status."""

    pass


@dataclass
class ArtifactImmutableError(AgentflowError):
    """Raised when content of an artifact owned by a completed process is changed."""

    pass


@dataclass
class NotFoundError(AgentflowError):
    """Raised when a referenced entity does not exist for the current team."""

    pass


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple AgentflowError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[AgentflowError] = []

    def add(self, error: AgentflowError) -> None:
        """Append an error to the report."""
        self.errors.append(error)

    def has_errors(self) -> bool:
        """Return True if any errors were collected."""
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format all collected errors, then append an aborting summary."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting {self.phase_name} '
            f'due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(AgentflowError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        super().__post_init__()

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Delegate formatting to the underlying report."""
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op
    - 1 error: raises the original error (keeps except clauses precise)
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def not_found(entity: str, entity_id: str) -> NotFoundError:
    """Create a NotFoundError for an entity id."""
    return NotFoundError(
        message=f'{entity} {entity_id!r} not found',
        code=ErrorCode.NOT_FOUND,
        help_text='check the id and the team the current RunContext is bound to',
    )


def illegal_transition(entity: str, entity_id: str, status: str, action: str) -> StateTransitionError:
    """Create a StateTransitionError for an action refused in the current status."""
    return StateTransitionError(
        message=f'cannot {action} {entity} {entity_id!r} in status {status}',
        code=ErrorCode.ILLEGAL_TRANSITION,
    )
