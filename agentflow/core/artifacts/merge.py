"""Deterministic merge of window group assignments, plus duplicate-group detection.

Windows overlap, so one page is usually judged by several windows. The
merge resolves every page to exactly one group:

1. collect group votes and adjacency votes per page (windows in index order)
2. adjacency score = max belongs_to_previous across windows
3. initial assignment: explicit override, else the configured vote strategy
4. low-confidence pages follow adjacency (ties go to the previous group)
5. blank pages (no group name) are joined, kept or discarded
6. groups are emitted in order of their first page

Everything is a pure function of the window outputs and the policy, so
re-running the merge without re-running the windows yields identical
output.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

from rapidfuzz.distance import Levenshtein

from agentflow.core.defaults import (
    DEFAULT_ADJACENCY_BOUNDARY_THRESHOLD,
    DEFAULT_GROUP_CONFIDENCE_THRESHOLD,
    DEFAULT_NAME_SIMILARITY_THRESHOLD,
    DEFAULT_VOTE_CONFIDENCE,
)

BLANK_GROUP = ''

BlankPageHandling = Literal['join_previous', 'create_blank_group', 'discard']
VoteStrategy = Literal['majority', 'confidence']


@dataclass(frozen=True)
class MergePolicy:
    vote_strategy: VoteStrategy = 'majority'
    group_confidence_threshold: int = DEFAULT_GROUP_CONFIDENCE_THRESHOLD
    adjacency_boundary_threshold: int = DEFAULT_ADJACENCY_BOUNDARY_THRESHOLD
    blank_page_handling: BlankPageHandling = 'join_previous'
    overrides: Mapping[int, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Any) -> MergePolicy:
        """Build from a FileOrganizationRunnerConfig (or anything with the same fields)."""
        return cls(
            vote_strategy=config.vote_strategy,
            group_confidence_threshold=config.group_confidence_threshold,
            adjacency_boundary_threshold=config.adjacency_boundary_threshold,
            blank_page_handling=config.blank_page_handling,
            overrides=dict(config.overrides),
        )


@dataclass(frozen=True)
class WindowResult:
    """Group assignments one comparison window produced.

    files: [{page_number, group_name, group_name_confidence,
             belongs_to_previous, belongs_to_previous_reason, group_explanation}]
    """

    window_index: int
    window_start: int
    window_end: int
    files: tuple[Mapping[str, Any], ...]

    @property
    def label(self) -> str:
        return f'{self.window_start}-{self.window_end}'


@dataclass(frozen=True)
class GroupVote:
    group_name: str
    confidence: int
    explanation: str
    window_index: int


@dataclass
class _PageData:
    page_number: int
    votes: list[GroupVote] = field(default_factory=list)
    adjacency_votes: list[int] = field(default_factory=list)
    belongs_to_previous_reason: str | None = None
    group_name: str = BLANK_GROUP
    confidence: int = 0
    explanation: str = ''
    overridden: bool = False


def _normalize_group_name(value: Any) -> str:
    return str(value).strip() if value is not None else BLANK_GROUP


def _collect_pages(window_results: Sequence[WindowResult]) -> dict[int, _PageData]:
    pages: dict[int, _PageData] = {}
    for window in sorted(window_results, key=lambda w: w.window_index):
        for file in window.files:
            if file.get('page_number') is None:
                continue
            page_number = int(file['page_number'])
            data = pages.setdefault(page_number, _PageData(page_number))
            confidence = file.get('group_name_confidence')
            data.votes.append(
                GroupVote(
                    group_name=_normalize_group_name(file.get('group_name')),
                    confidence=int(confidence) if confidence is not None else DEFAULT_VOTE_CONFIDENCE,
                    explanation=str(file.get('group_explanation') or ''),
                    window_index=window.window_index,
                )
            )
            if file.get('belongs_to_previous') is not None:
                data.adjacency_votes.append(int(file['belongs_to_previous']))
            if file.get('belongs_to_previous_reason'):
                data.belongs_to_previous_reason = str(file['belongs_to_previous_reason'])
    return pages


def select_vote(votes: Sequence[GroupVote], strategy: VoteStrategy) -> GroupVote:
    """Pick the winning vote for one page.

    confidence: highest confidence, ties to the earliest window.
    majority: most votes for a group name; ties by summed confidence, then
    by the earliest window that named the group. The returned vote is the
    most confident vote for the winning group.
    """
    ordered = sorted(votes, key=lambda v: v.window_index)
    if strategy == 'confidence':
        best = ordered[0]
        for vote in ordered[1:]:
            if vote.confidence > best.confidence:
                best = vote
        return best

    counts = Counter(vote.group_name for vote in ordered)
    confidence_sums: dict[str, int] = {}
    first_seen: dict[str, int] = {}
    for vote in ordered:
        confidence_sums[vote.group_name] = confidence_sums.get(vote.group_name, 0) + vote.confidence
        first_seen.setdefault(vote.group_name, vote.window_index)

    winner = min(
        counts,
        key=lambda name: (-counts[name], -confidence_sums[name], first_seen[name]),
    )
    candidates = [vote for vote in ordered if vote.group_name == winner]
    best = candidates[0]
    for vote in candidates[1:]:
        if vote.confidence > best.confidence:
            best = vote
    return best


def _adjacency_scores(pages: Mapping[int, _PageData]) -> dict[int, int | None]:
    return {
        number: (max(data.adjacency_votes) if data.adjacency_votes else None)
        for number, data in pages.items()
    }


def _resolve_with_adjacency(
    order: Sequence[int],
    pages: Mapping[int, _PageData],
    assignments: dict[int, str],
    adjacency: Mapping[int, int | None],
    policy: MergePolicy,
) -> None:
    for index, page_number in enumerate(order):
        data = pages[page_number]
        if data.overridden or assignments[page_number] == BLANK_GROUP:
            continue
        if data.confidence > policy.group_confidence_threshold:
            continue

        to_previous = adjacency.get(page_number)
        if to_previous is None:
            continue

        from_next = adjacency.get(order[index + 1]) if index + 1 < len(order) else None
        if from_next is not None and from_next > to_previous:
            assignments[page_number] = assignments[order[index + 1]]
            continue

        if to_previous >= policy.adjacency_boundary_threshold and index > 0:
            assignments[page_number] = assignments[order[index - 1]]


def _nearest_named_group(
    order: Sequence[int], assignments: Mapping[int, str], index: int, step: int
) -> str | None:
    cursor = index + step
    while 0 <= cursor < len(order):
        name = assignments.get(order[cursor], BLANK_GROUP)
        if name != BLANK_GROUP:
            return name
        cursor += step
    return None


def _handle_blank_pages(
    order: Sequence[int], assignments: dict[int, str], handling: BlankPageHandling
) -> None:
    if handling == 'create_blank_group':
        return
    for index, page_number in enumerate(order):
        if assignments.get(page_number) != BLANK_GROUP:
            continue
        if handling == 'discard':
            del assignments[page_number]
            continue
        target = _nearest_named_group(order, assignments, index, -1)
        if target is None:
            target = _nearest_named_group(order, assignments, index, 1)
        if target is not None:
            assignments[page_number] = target


def format_page_range(page_numbers: Sequence[int]) -> str:
    """[1, 2, 3] -> '1-3'; [1, 3, 4, 5] -> '1, 3-5'."""
    numbers = sorted(set(page_numbers))
    if not numbers:
        return ''
    ranges: list[str] = []
    start = previous = numbers[0]
    for number in numbers[1:]:
        if number == previous + 1:
            previous = number
            continue
        ranges.append(str(start) if start == previous else f'{start}-{previous}')
        start = previous = number
    ranges.append(str(start) if start == previous else f'{start}-{previous}')
    return ', '.join(ranges)


def describe_group(group_name: str, page_numbers: Sequence[int]) -> str:
    if group_name == BLANK_GROUP:
        return 'Blank pages'
    count = len(page_numbers)
    noun = 'page' if count == 1 else 'pages'
    return f'{group_name} ({count} {noun}: {format_page_range(page_numbers)})'


def merge_window_results(
    window_results: Sequence[WindowResult], policy: MergePolicy | None = None
) -> dict[str, Any]:
    """Merge window outputs into final groups.

    Returns {'groups': [{name, files, description}],
             'file_to_group_mapping': [{page_number, group_name, confidence, ...}],
             'low_confidence_pages': [page_number, ...]}
    """
    policy = policy or MergePolicy()
    pages = _collect_pages(window_results)
    if not pages:
        return {'groups': [], 'file_to_group_mapping': [], 'low_confidence_pages': []}

    order = sorted(pages)
    adjacency = _adjacency_scores(pages)
    overrides = {int(page): _normalize_group_name(name) for page, name in policy.overrides.items()}

    assignments: dict[int, str] = {}
    for page_number in order:
        data = pages[page_number]
        best = select_vote(data.votes, policy.vote_strategy)
        data.confidence = best.confidence
        data.explanation = best.explanation
        if page_number in overrides:
            data.overridden = True
            assignments[page_number] = overrides[page_number]
        else:
            assignments[page_number] = best.group_name
        data.group_name = assignments[page_number]

    _resolve_with_adjacency(order, pages, assignments, adjacency, policy)
    _handle_blank_pages(order, assignments, policy.blank_page_handling)

    members: dict[str, list[int]] = {}
    for page_number in order:
        if page_number in assignments:
            members.setdefault(assignments[page_number], []).append(page_number)

    groups = [
        {'name': name, 'files': files, 'description': describe_group(name, files)}
        for name, files in sorted(members.items(), key=lambda item: item[1][0])
    ]
    mapping = [
        {
            'page_number': page_number,
            'group_name': assignments[page_number],
            'confidence': pages[page_number].confidence,
            'explanation': pages[page_number].explanation,
            'overridden': pages[page_number].overridden,
            'belongs_to_previous': adjacency[page_number],
            'belongs_to_previous_reason': pages[page_number].belongs_to_previous_reason,
        }
        for page_number in order
        if page_number in assignments
    ]
    low_confidence = [
        entry['page_number']
        for entry in mapping
        if not entry['overridden']
        and entry['group_name'] != BLANK_GROUP
        and entry['confidence'] <= policy.group_confidence_threshold
    ]
    return {
        'groups': groups,
        'file_to_group_mapping': mapping,
        'low_confidence_pages': low_confidence,
    }


def find_mismatches(window_results: Sequence[WindowResult]) -> dict[int, list[dict[str, Any]]]:
    """Pages that different windows assigned to different groups.

    {page_number: [{window, group_name, confidence}, ...]} in page order.
    """
    assignments: dict[int, list[dict[str, Any]]] = {}
    for window in sorted(window_results, key=lambda w: w.window_index):
        for file in window.files:
            if file.get('page_number') is None:
                continue
            assignments.setdefault(int(file['page_number']), []).append(
                {
                    'window': window.label,
                    'group_name': _normalize_group_name(file.get('group_name')),
                    'confidence': file.get('group_name_confidence'),
                }
            )
    return {
        page: votes
        for page, votes in sorted(assignments.items())
        if len({vote['group_name'] for vote in votes}) > 1
    }


# =============================================================================
# Duplicate group detection and resolution
# =============================================================================


def normalize_name(name: str) -> str:
    """Lowercase, strip common punctuation, collapse whitespace (parentheses kept)."""
    normalized = name.lower()
    for char in ',.:;':
        normalized = normalized.replace(char, '')
    return re.sub(r'\s+', ' ', normalized).strip()


def is_location_variant(name1: str, name2: str) -> bool:
    """'ABC Medical' vs 'ABC Medical (Northglenn)'."""
    first, second = normalize_name(name1), normalize_name(name2)
    has_parens1 = '(' in first and ')' in first
    has_parens2 = '(' in second and ')' in second
    if has_parens1 == has_parens2:
        return False
    with_parens, without_parens = (first, second) if has_parens1 else (second, first)
    return with_parens[: with_parens.index('(')].strip() == without_parens


def name_similarity(name1: str, name2: str) -> float:
    """Similarity between two group names in [0, 1]."""
    first, second = normalize_name(name1), normalize_name(name2)
    if first == second:
        return 1.0
    if first and second and (first in second or second in first):
        shorter, longer = sorted((len(first), len(second)))
        return max(0.85, shorter / longer)
    if is_location_variant(name1, name2):
        return 0.95
    return Levenshtein.normalized_similarity(first, second)


def identify_duplicate_candidates(
    groups: Sequence[Mapping[str, Any]],
    threshold: float = DEFAULT_NAME_SIMILARITY_THRESHOLD,
) -> list[dict[str, Any]]:
    """Pairs of similarly named groups, in group order."""
    names = [str(group['name']) for group in groups]
    candidates: list[dict[str, Any]] = []
    for i, first in enumerate(names):
        for second in names[i + 1:]:
            if first == BLANK_GROUP or second == BLANK_GROUP:
                continue
            similarity = name_similarity(first, second)
            if similarity >= threshold:
                candidates.append(
                    {'group1': first, 'group2': second, 'similarity': round(similarity, 4)}
                )
    return candidates


def apply_group_merges(
    merge_result: Mapping[str, Any], decisions: Sequence[Mapping[str, str]]
) -> dict[str, Any]:
    """Fold groups into canonical names: decisions are [{'from': name, 'into': name}].

    Chains (a -> b, b -> c) resolve to the final target; a decision that
    would create a cycle is ignored. Output keeps the merge result's shape.
    """
    target: dict[str, str] = {}
    for decision in decisions:
        source, into = str(decision['from']), str(decision['into'])
        if source == into:
            continue
        # Refuse decisions whose target already resolves back to the source
        cursor, seen = into, {source}
        while cursor in target and cursor not in seen:
            seen.add(cursor)
            cursor = target[cursor]
        if cursor in seen:
            continue
        target[source] = into

    def resolve(name: str) -> str:
        while name in target:
            name = target[name]
        return name

    mapping = [
        {**entry, 'group_name': resolve(entry['group_name'])}
        for entry in merge_result.get('file_to_group_mapping', [])
    ]
    members: dict[str, list[int]] = {}
    for group in merge_result.get('groups', []):
        members.setdefault(resolve(group['name']), []).extend(group['files'])

    groups = [
        {
            'name': name,
            'files': sorted(files),
            'description': describe_group(name, files),
        }
        for name, files in sorted(members.items(), key=lambda item: min(item[1]))
    ]
    return {**merge_result, 'groups': groups, 'file_to_group_mapping': mapping}


def default_merge_decisions(
    candidates: Sequence[Mapping[str, Any]], groups: Sequence[Mapping[str, Any]]
) -> list[dict[str, str]]:
    """Fold each candidate pair into the group holding more pages.

    Equal sizes keep the group that appears first. Used when no
    resolver process is configured for duplicate groups.
    """
    order = {str(group['name']): index for index, group in enumerate(groups)}
    sizes = {str(group['name']): len(group['files']) for group in groups}
    decisions: list[dict[str, str]] = []
    for candidate in candidates:
        first, second = str(candidate['group1']), str(candidate['group2'])
        if (sizes.get(second, 0), -order.get(second, 0)) > (sizes.get(first, 0), -order.get(first, 0)):
            first, second = second, first
        decisions.append({'from': second, 'into': first})
    return decisions
