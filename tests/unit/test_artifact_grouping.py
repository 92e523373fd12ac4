"""Unit tests for fragment selectors and process grouping."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest

from agentflow.core.artifacts.grouping import (
    get_fragment,
    group_artifacts,
    grouping_key,
    split_by_key,
)
from agentflow.core.types.status import ArtifactMode

pytestmark = pytest.mark.unit


@dataclass
class FakeArtifact:
    id: str
    name: str = ''
    position: int = 0
    text_content: Any = None
    json_content: Any = None
    meta: Any = field(default_factory=dict)


def _invoice(artifact_id: str, customer: str, **json: Any) -> FakeArtifact:
    return FakeArtifact(
        id=artifact_id,
        name=artifact_id,
        json_content={'document': {'type': 'invoice', **json}, 'lines': [10, 20]},
        meta={'customer_id': customer},
    )


class TestGetFragment:
    def test_walks_dicts_and_lists(self) -> None:
        artifact = _invoice('a', 'c-1')
        assert get_fragment(artifact, 'meta.customer_id') == 'c-1'
        assert get_fragment(artifact, 'json_content.document.type') == 'invoice'
        assert get_fragment(artifact, 'json_content.lines.1') == 20
        assert get_fragment(artifact, 'json_content.lines.-1') == 20

    def test_bare_selector_reads_json_content(self) -> None:
        assert get_fragment(_invoice('a', 'c-1'), 'document.type') == 'invoice'

    def test_top_level_field(self) -> None:
        assert get_fragment(FakeArtifact(id='a', name='doc'), 'name') == 'doc'

    def test_missing_paths_give_none(self) -> None:
        artifact = _invoice('a', 'c-1')
        assert get_fragment(artifact, 'meta.missing') is None
        assert get_fragment(artifact, 'json_content.lines.7') is None
        assert get_fragment(artifact, 'json_content.document.type.deeper') is None


class TestGroupingKey:
    def test_equal_fragments_share_a_key(self) -> None:
        first = _invoice('a', 'c-1', total=1)
        second = _invoice('b', 'c-1', total=2)
        assert grouping_key(first, ['meta.customer_id']) == grouping_key(
            second, ['meta.customer_id']
        )

    def test_dict_order_does_not_matter(self) -> None:
        first = FakeArtifact(id='a', json_content={'x': {'p': 1, 'q': 2}})
        second = FakeArtifact(id='b', json_content={'x': {'q': 2, 'p': 1}})
        assert grouping_key(first, ['x']) == grouping_key(second, ['x'])

    def test_no_selectors_isolates_every_artifact(self) -> None:
        assert grouping_key(FakeArtifact(id='a'), []) != grouping_key(FakeArtifact(id='b'), [])


class TestGroupArtifacts:
    def test_split_groups_by_key_in_first_appearance_order(self) -> None:
        artifacts = [
            _invoice('a', 'c-2'),
            _invoice('b', 'c-1'),
            _invoice('c', 'c-2'),
        ]
        groups = group_artifacts(artifacts, ArtifactMode.SPLIT, ['meta.customer_id'])
        assert [[a.id for a in group] for group in groups] == [['a', 'c'], ['b']]

    def test_split_without_selectors_is_one_per_artifact(self) -> None:
        artifacts = [FakeArtifact(id='a'), FakeArtifact(id='b')]
        assert [[a.id for a in g] for g in split_by_key(artifacts, [])] == [['a'], ['b']]

    def test_split_of_nothing_is_no_groups(self) -> None:
        assert group_artifacts([], ArtifactMode.SPLIT) == []

    @pytest.mark.parametrize('mode', [ArtifactMode.SINGLE, ArtifactMode.MERGE])
    def test_single_and_merge_are_one_group(self, mode: ArtifactMode) -> None:
        artifacts = [FakeArtifact(id='a'), FakeArtifact(id='b')]
        assert group_artifacts(artifacts, mode) == [artifacts]
        assert group_artifacts([], mode) == [[]]
