"""Partition artifacts into process groups.

Split mode groups artifacts by a key built from fragment selectors; an
artifact's key is the md5 of the JSON encoding of the selected values, so
equal fragments always land in the same group regardless of dict order.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Protocol, Sequence, TypeVar

from agentflow.core.types.status import ArtifactMode


class _ArtifactLike(Protocol):
    id: str
    name: str
    position: int
    text_content: Any
    json_content: Any
    meta: Any


A = TypeVar('A', bound=_ArtifactLike)

_MISSING = object()


def get_fragment(artifact: _ArtifactLike, selector: str) -> Any:
    """Resolve a dotted selector against an artifact.

    The first segment names an artifact field ('name', 'position',
    'text_content', 'json_content', 'meta'); further segments walk into
    dicts (by key) and lists (by integer index). Missing paths give None.
    """
    head, _, rest = selector.partition('.')
    if head not in ('name', 'position', 'text_content', 'json_content', 'meta'):
        # Bare selectors read from json_content, the common case
        head, rest = 'json_content', selector

    value: Any = getattr(artifact, head, None)
    for part in filter(None, rest.split('.')):
        if isinstance(value, dict):
            value = value.get(part, _MISSING)
        elif isinstance(value, list) and part.lstrip('-').isdigit():
            index = int(part)
            value = value[index] if -len(value) <= index < len(value) else _MISSING
        else:
            value = _MISSING
        if value is _MISSING:
            return None
    return value


def grouping_key(artifact: _ArtifactLike, selectors: Sequence[str]) -> str:
    """Stable key of an artifact for the given selectors."""
    if not selectors:
        # No selector: every artifact is its own group
        return f'artifact:{artifact.id}'
    values = [get_fragment(artifact, selector) for selector in selectors]
    encoded = json.dumps(values, sort_keys=True, default=str, separators=(',', ':'))
    return hashlib.md5(encoded.encode('utf-8')).hexdigest()


def split_by_key(artifacts: Sequence[A], selectors: Sequence[str]) -> list[list[A]]:
    """Groups in order of first appearance; members keep their input order."""
    groups: dict[str, list[A]] = {}
    for artifact in artifacts:
        groups.setdefault(grouping_key(artifact, selectors), []).append(artifact)
    return list(groups.values())


def group_artifacts(
    artifacts: Sequence[A],
    mode: ArtifactMode,
    selectors: Sequence[str] = (),
) -> list[list[A]]:
    """Partition one batch of artifacts into process groups.

    - split: one group per grouping key (no artifacts -> no groups)
    - single / merge: the whole batch is one group (possibly empty)
    """
    if mode == ArtifactMode.SPLIT:
        return split_by_key(artifacts, selectors)
    return [list(artifacts)]
