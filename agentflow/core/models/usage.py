"""Usage summary value type stored on processes, task runs and workflow runs."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class UsageSummary(BaseModel):
    """Token, cost and time metrics for one entity.

    Derived data: processes report their own usage, every level above is
    recomputed as the sum of its children.
    """

    model_config = ConfigDict(frozen=True, extra='ignore')

    count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0
    run_time_ms: int = 0
    request_count: int = 0
    data_volume: int = Field(default=0, description='Bytes exchanged with external services')

    def __add__(self, other: UsageSummary) -> UsageSummary:
        return UsageSummary(
            count=self.count + other.count,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            input_cost=self.input_cost + other.input_cost,
            output_cost=self.output_cost + other.output_cost,
            total_cost=self.total_cost + other.total_cost,
            run_time_ms=self.run_time_ms + other.run_time_ms,
            request_count=self.request_count + other.request_count,
            data_volume=self.data_volume + other.data_volume,
        )

    @classmethod
    def from_json(cls, data: Mapping[str, Any] | None) -> UsageSummary:
        """Decode a stored summary; missing or malformed data counts as zero."""
        if not data:
            return cls()
        try:
            return cls.model_validate(dict(data))
        except ValidationError:
            # Aggregation is best-effort over partially failed children
            return cls()

    def to_json(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def total(cls, summaries: Iterable[UsageSummary]) -> UsageSummary:
        result = cls()
        for summary in summaries:
            result = result + summary
        return result

    @classmethod
    def for_request(
        cls,
        *,
        input_tokens: int = 0,
        output_tokens: int = 0,
        input_cost: float = 0.0,
        output_cost: float = 0.0,
        run_time_ms: int = 0,
        data_volume: int = 0,
    ) -> UsageSummary:
        """Usage of a single external request, with total_cost derived."""
        return cls(
            count=1,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=input_cost + output_cost,
            run_time_ms=run_time_ms,
            request_count=1,
            data_volume=data_volume,
        )
