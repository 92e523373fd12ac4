"""Overlapping comparison windows over paginated sources."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from agentflow.core.defaults import MAX_WINDOW_SIZE, MIN_WINDOW_SIZE
from agentflow.core.errors import ErrorCode, TaskDefinitionError


@dataclass(frozen=True)
class PageRef:
    """One page of a paginated source: the artifact holding it and its page number."""

    artifact_id: str
    page_number: int


@dataclass(frozen=True)
class Window:
    """A contiguous run of pages compared by one process."""

    index: int
    start: int
    end: int
    pages: tuple[PageRef, ...] = field(default_factory=tuple)

    @property
    def name(self) -> str:
        return f'Compare Files {self.start}-{self.end}'

    def to_meta(self) -> dict[str, Any]:
        return {
            'window_index': self.index,
            'window_start': self.start,
            'window_end': self.end,
            'files': [
                {'artifact_id': page.artifact_id, 'page_number': page.page_number}
                for page in self.pages
            ],
        }


def validate_window_geometry(window_size: int, window_overlap: int) -> None:
    if not MIN_WINDOW_SIZE <= window_size <= MAX_WINDOW_SIZE:
        raise TaskDefinitionError(
            message='window_size out of range',
            code=ErrorCode.TASK_INVALID_WINDOW,
            notes=[f'got window_size={window_size}'],
            help_text=f'use a value between {MIN_WINDOW_SIZE} and {MAX_WINDOW_SIZE}',
        )
    if not 1 <= window_overlap < window_size:
        raise TaskDefinitionError(
            message='window_overlap must be at least 1 and below window_size',
            code=ErrorCode.TASK_INVALID_WINDOW,
            notes=[f'got window_overlap={window_overlap}, window_size={window_size}'],
        )


def page_number_of(artifact: Any) -> int:
    """Page number from the first stored file, falling back to the artifact position."""
    for stored_file in artifact.files or []:
        page = stored_file.get('page_number') if isinstance(stored_file, dict) else None
        if page is not None:
            return int(page)
    return int(artifact.position or 0)


def pages_from_artifacts(artifacts: Sequence[Any]) -> list[PageRef]:
    """Page references sorted by page number (ties keep input order)."""
    pages = [PageRef(artifact.id, page_number_of(artifact)) for artifact in artifacts]
    return sorted(pages, key=lambda page: page.page_number)


def create_overlapping_windows(
    pages: Sequence[PageRef], window_size: int, window_overlap: int = 1
) -> list[Window]:
    """Cut pages into windows of up to window_size sharing window_overlap pages.

    10 pages, size 5, overlap 1 -> [1-5], [5-9], [9-10]
    10 pages, size 5, overlap 2 -> [1-5], [4-8], [7-10]
    4 pages, size 5, overlap 1  -> [1-4]
    1 page                       -> [1-1]
    A trailing window holding a single page is not created; that page is
    already covered by the previous window's overlap.
    """
    validate_window_geometry(window_size, window_overlap)

    windows: list[Window] = []
    step = window_size - window_overlap
    start_index = 0
    while start_index < len(pages):
        chunk = tuple(pages[start_index:start_index + window_size])
        if not chunk or (len(chunk) < 2 and windows):
            break
        numbers = [page.page_number for page in chunk]
        windows.append(
            Window(index=len(windows), start=min(numbers), end=max(numbers), pages=chunk)
        )
        if start_index + window_size >= len(pages):
            break
        start_index += step
    return windows
