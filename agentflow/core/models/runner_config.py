"""Per-runner-kind configuration, decoded from the task_runner_config JSON bag.

Each runner kind owns one concrete pydantic model. The union is
discriminated on ``runner_kind`` so a definition is decoded once, when it
is saved or loaded, instead of being re-interpreted on every call.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from typing_extensions import Self

from agentflow.core.defaults import (
    DEFAULT_ADJACENCY_BOUNDARY_THRESHOLD,
    DEFAULT_GROUP_CONFIDENCE_THRESHOLD,
    DEFAULT_NAME_SIMILARITY_THRESHOLD,
    DEFAULT_WINDOW_OVERLAP,
    DEFAULT_WINDOW_SIZE,
    MAX_WINDOW_SIZE,
    MIN_WINDOW_SIZE,
)
from agentflow.core.errors import ErrorCode, TaskDefinitionError


class _RunnerConfigBase(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)

    # Fragment selectors used to partition input artifacts in split mode,
    # e.g. ['meta.customer_id', 'json_content.document.type']
    group_by: list[str] = Field(default_factory=list)


class AgentRunnerConfig(_RunnerConfigBase):
    """An LLM agent call per process."""

    runner_kind: Literal['agent'] = 'agent'
    model: str | None = None
    prompt: str | None = None
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)


class ApiRunnerConfig(_RunnerConfigBase):
    """A call to an external tool or API per process."""

    runner_kind: Literal['api'] = 'api'
    tool_id: str
    options: dict[str, Any] = Field(default_factory=dict)


class FileOrganizationRunnerConfig(_RunnerConfigBase):
    """Windowed page grouping followed by a deterministic merge.

    window_size / window_overlap: comparison window geometry.
    vote_strategy: 'majority' counts votes per group (ties by summed
        confidence, then earliest window); 'confidence' takes the single
        most confident vote (ties to the earliest window).
    overrides: page number -> group name, applied before any vote.
    blank_page_handling: what to do with pages no window named.
    deduplicate: run a duplicate-group resolution process when similar
        group names are detected.
    """

    runner_kind: Literal['file_organization'] = 'file_organization'
    window_size: int = DEFAULT_WINDOW_SIZE
    window_overlap: int = DEFAULT_WINDOW_OVERLAP
    vote_strategy: Literal['majority', 'confidence'] = 'majority'
    group_confidence_threshold: int = DEFAULT_GROUP_CONFIDENCE_THRESHOLD
    adjacency_boundary_threshold: int = DEFAULT_ADJACENCY_BOUNDARY_THRESHOLD
    blank_page_handling: Literal['join_previous', 'create_blank_group', 'discard'] = (
        'join_previous'
    )
    name_similarity_threshold: float = Field(
        default=DEFAULT_NAME_SIMILARITY_THRESHOLD, ge=0.0, le=1.0
    )
    overrides: dict[int, str] = Field(default_factory=dict)
    deduplicate: bool = True

    @model_validator(mode='after')
    def validate_window(self) -> Self:
        if not MIN_WINDOW_SIZE <= self.window_size <= MAX_WINDOW_SIZE:
            raise TaskDefinitionError(
                message='window_size out of range',
                code=ErrorCode.TASK_INVALID_WINDOW,
                notes=[f'got window_size={self.window_size}'],
                help_text=f'use a value between {MIN_WINDOW_SIZE} and {MAX_WINDOW_SIZE}',
            )
        if not 1 <= self.window_overlap < self.window_size:
            raise TaskDefinitionError(
                message='window_overlap must be at least 1 and below window_size',
                code=ErrorCode.TASK_INVALID_WINDOW,
                notes=[
                    f'got window_overlap={self.window_overlap}, '
                    f'window_size={self.window_size}'
                ],
            )
        return self


RunnerConfig = Annotated[
    Union[AgentRunnerConfig, ApiRunnerConfig, FileOrganizationRunnerConfig],
    Field(discriminator='runner_kind'),
]

RUNNER_KINDS: tuple[str, ...] = ('agent', 'api', 'file_organization')

_runner_config_adapter: TypeAdapter[Any] = TypeAdapter(RunnerConfig)


def decode_runner_config(
    runner_kind: str, data: Mapping[str, Any] | None
) -> AgentRunnerConfig | ApiRunnerConfig | FileOrganizationRunnerConfig:
    """Decode the JSON bag of a task definition into its runner's config type."""
    if runner_kind not in RUNNER_KINDS:
        raise TaskDefinitionError(
            message=f"unknown runner kind '{runner_kind}'",
            code=ErrorCode.TASK_INVALID_RUNNER_KIND,
            notes=[f'known runner kinds: {", ".join(RUNNER_KINDS)}'],
        )
    payload = dict(data or {})
    payload['runner_kind'] = runner_kind
    try:
        return _runner_config_adapter.validate_python(payload)
    except ValidationError as exc:
        raise TaskDefinitionError(
            message=f"invalid task_runner_config for runner kind '{runner_kind}'",
            code=ErrorCode.TASK_INVALID_RUNNER_CONFIG,
            notes=[
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            ],
        ) from exc


def encode_runner_config(config: BaseModel) -> dict[str, Any]:
    """JSON form stored in task_definitions.task_runner_config (kind lives in its own column)."""
    return config.model_dump(mode='json', exclude={'runner_kind'})
