"""Retry policy for task processes."""

from __future__ import annotations

import random
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, model_validator
from typing_extensions import Self


class ProcessRetryPolicy(BaseModel):
    """
    Bounded re-dispatch of a failed task process.

    Two strategies supported:
    1. Fixed: uses intervals exactly as specified, clamped to the last one
    2. Exponential: uses intervals[0] as base, doubling per attempt

    Fields:
        max_retries: re-dispatch attempts after the first one (0 disables retries)
        intervals: delay in seconds before each re-dispatch
        backoff_strategy: 'fixed' uses intervals as-is, 'exponential' uses intervals[0] as base
        jitter: whether to add ±25% randomization to delays

    Timeouts and explicit stops are never retried, whatever the policy says.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    max_retries: Annotated[
        int, Field(ge=0, le=20, description='Number of retry attempts (0-20)')
    ] = 2
    intervals: Annotated[
        list[Annotated[NonNegativeInt, Field(le=86400)]],
        Field(min_length=1, max_length=20, description='Retry intervals in seconds'),
    ] = [0]
    backoff_strategy: Literal['fixed', 'exponential'] = 'fixed'
    jitter: bool = False

    @model_validator(mode='after')
    def validate_strategy_consistency(self) -> Self:
        """Exponential backoff takes exactly one base interval."""
        if self.backoff_strategy == 'exponential' and len(self.intervals) != 1:
            raise ValueError(
                f'Exponential backoff strategy requires exactly one base interval, '
                f'got {len(self.intervals)} intervals.'
            )
        return self

    def allows_retry(self, attempt_count: int) -> bool:
        """Whether a process that already used attempt_count retries may retry again."""
        return attempt_count < self.max_retries

    def delay_seconds(self, retry_attempt: int) -> float:
        """Delay before retry number retry_attempt (1-based)."""
        if self.backoff_strategy == 'fixed':
            base_delay = float(self.intervals[min(retry_attempt - 1, len(self.intervals) - 1)])
        else:
            base_delay = float(self.intervals[0] * (2 ** (retry_attempt - 1)))

        if self.jitter and base_delay > 0:
            jitter_range = base_delay * 0.25
            base_delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, base_delay)

    @classmethod
    def none(cls) -> ProcessRetryPolicy:
        """A policy that never retries."""
        return cls(max_retries=0)
