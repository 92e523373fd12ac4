"""Unit tests for UsageSummary arithmetic and decoding."""

from __future__ import annotations

import pytest

from agentflow.core.models.usage import UsageSummary


@pytest.mark.unit
class TestUsageSummary:
    def test_for_request_derives_total_cost(self) -> None:
        usage = UsageSummary.for_request(
            input_tokens=100, output_tokens=20, input_cost=0.25, output_cost=0.5, run_time_ms=40
        )
        assert usage.count == 1
        assert usage.request_count == 1
        assert usage.total_cost == 0.75
        assert usage.run_time_ms == 40

    def test_addition_sums_every_field(self) -> None:
        first = UsageSummary.for_request(input_tokens=10, input_cost=1.0, data_volume=5)
        second = UsageSummary.for_request(output_tokens=7, output_cost=2.0)
        total = first + second
        assert total.count == 2
        assert (total.input_tokens, total.output_tokens) == (10, 7)
        assert total.total_cost == 3.0
        assert total.data_volume == 5

    def test_total_of_nothing_is_zero(self) -> None:
        assert UsageSummary.total([]) == UsageSummary()

    def test_total(self) -> None:
        summaries = [UsageSummary.for_request(input_tokens=10) for _ in range(3)]
        total = UsageSummary.total(summaries)
        assert total.input_tokens == 30
        assert total.count == 3

    def test_rolling_up_a_total_again_is_stable(self) -> None:
        processes = [
            UsageSummary.for_request(input_tokens=10, input_cost=0.5),
            UsageSummary.for_request(output_tokens=3, output_cost=0.25),
        ]
        task_run = UsageSummary.total(processes)
        stored = task_run.to_json()
        assert UsageSummary.total([UsageSummary.from_json(stored)]) == task_run
        assert UsageSummary.total([task_run, UsageSummary()]) == task_run

    @pytest.mark.parametrize('data', [None, {}, {'input_tokens': 'lots'}])
    def test_from_json_treats_bad_data_as_zero(self, data: object) -> None:
        assert UsageSummary.from_json(data) == UsageSummary()  # type: ignore[arg-type]

    def test_from_json_ignores_unknown_keys(self) -> None:
        usage = UsageSummary.from_json({'input_tokens': 4, 'model': 'gpt'})
        assert usage.input_tokens == 4

    def test_to_json_keys(self) -> None:
        assert set(UsageSummary().to_json()) == {
            'count',
            'input_tokens',
            'output_tokens',
            'input_cost',
            'output_cost',
            'total_cost',
            'run_time_ms',
            'request_count',
            'data_volume',
        }
