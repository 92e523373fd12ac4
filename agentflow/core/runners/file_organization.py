"""
File organization: group the pages of paginated sources into documents.

Pipeline of one task run:

    comparison_window x N  ->  merge  ->  [duplicate_group_resolution]
      (agent, intermediate)    (built in)        (optional)

Window processes are supplied by the application (usually an agent call
registered under 'file_organization:comparison_window'); each emits one
artifact whose json_content is {'files': [{page_number, group_name,
group_name_confidence, belongs_to_previous, ...}]}. The merge and the
duplicate resolution are built in and deterministic, which is what makes
rerun_merge / rerun_dedup / reset_from_windows safe maintenance
operations.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.artifacts.merge import (
    MergePolicy,
    WindowResult,
    apply_group_merges,
    default_merge_decisions,
    find_mismatches,
    identify_duplicate_candidates,
    merge_window_results,
)
from agentflow.core.artifacts.store import ArtifactDraft, get_artifacts
from agentflow.core.artifacts.windows import create_overlapping_windows, pages_from_artifacts
from agentflow.core.errors import illegal_transition
from agentflow.core.logging import get_logger
from agentflow.core.models.artifact_pg import ArtifactModel
from agentflow.core.models.task_pg import TaskDefinitionModel, TaskProcessModel, TaskRunModel
from agentflow.core.registry import Registry
from agentflow.core.runners.base import ProcessPlan, TaskRunner
from agentflow.core.tasks.runner import (
    begin_new_attempt,
    create_processes,
    current_processes,
    get_task_run,
    lock_task_run,
)
from agentflow.core.types.status import RunStatus
from agentflow.core.worker.context import ProcessContext, ProcessHandler, ProcessOutput

if TYPE_CHECKING:
    from agentflow.core.models.app import RunContext
    from agentflow.core.runtime import Runtime

logger = get_logger('runner.file_org')

RUNNER_KIND = 'file_organization'
OP_WINDOW = 'comparison_window'
OP_MERGE = 'merge'
OP_DEDUP = 'duplicate_group_resolution'

DedupResolver = Callable[
    [ProcessContext, list[dict[str, Any]], dict[str, Any]], Awaitable[ProcessOutput]
]


class FileOrganizationRunner(TaskRunner):
    kind = RUNNER_KIND

    def plan_processes(
        self,
        definition: TaskDefinitionModel,
        batches: Sequence[Sequence[ArtifactModel]],
    ) -> list[ProcessPlan]:
        config = definition.runner_config()
        pages = pages_from_artifacts([artifact for batch in batches for artifact in batch])
        windows = create_overlapping_windows(pages, config.window_size, config.window_overlap)
        return [
            ProcessPlan(
                input_artifact_ids=[page.artifact_id for page in window.pages],
                operation=OP_WINDOW,
                name=window.name,
                meta=window.to_meta(),
                is_intermediate=True,
            )
            for window in windows
        ]

    async def after_process_terminal(
        self,
        session: AsyncSession,
        ctx: RunContext,
        task_run: TaskRunModel,
        definition: TaskDefinitionModel,
        process: TaskProcessModel,
        processes: Sequence[TaskProcessModel],
    ) -> list[ProcessPlan]:
        if process.operation == OP_WINDOW:
            windows = [p for p in processes if p.operation == OP_WINDOW]
            if any(p.operation == OP_MERGE for p in processes):
                return []
            if not all(p.status == RunStatus.COMPLETED for p in windows):
                return []
            logger.info(f'All {len(windows)} window(s) of task run {task_run.id[:8]} done, merging')
            return [merge_plan(windows)]

        if process.operation == OP_MERGE and process.status == RunStatus.COMPLETED:
            candidates = process.meta.get('groups_for_deduplication') or []
            if candidates and not any(p.operation == OP_DEDUP for p in processes):
                logger.info(
                    f'{len(candidates)} duplicate candidate(s) in task run {task_run.id[:8]}'
                )
                return [dedup_plan(process)]
        return []


def merge_plan(windows: Sequence[TaskProcessModel]) -> ProcessPlan:
    """Merge process over the outputs of completed window processes."""
    ordered = sorted(windows, key=lambda p: p.meta.get('window_index', p.sequence))
    window_meta: list[dict[str, Any]] = []
    page_artifacts: dict[str, str] = {}
    input_ids: list[str] = []
    for window in ordered:
        window_meta.append(
            {
                'window_index': window.meta.get('window_index', window.sequence),
                'window_start': window.meta.get('window_start'),
                'window_end': window.meta.get('window_end'),
                'artifact_ids': list(window.output_artifact_ids),
            }
        )
        input_ids.extend(window.output_artifact_ids)
        for page in window.meta.get('files', []):
            page_artifacts.setdefault(str(page['page_number']), page['artifact_id'])
    return ProcessPlan(
        input_artifact_ids=input_ids,
        operation=OP_MERGE,
        name='Merge Groups',
        meta={'windows': window_meta, 'page_artifacts': page_artifacts},
    )


def dedup_plan(merge_process: TaskProcessModel) -> ProcessPlan:
    return ProcessPlan(
        input_artifact_ids=[],
        operation=OP_DEDUP,
        name='Resolve Duplicate Groups',
        meta={
            'merge_process_id': merge_process.id,
            'page_artifacts': dict(merge_process.meta.get('page_artifacts', {})),
            'merge_result': merge_process.meta.get('merge_result', {}),
            'groups_for_deduplication': list(
                merge_process.meta.get('groups_for_deduplication', [])
            ),
        },
    )


# =============================================================================
# Built-in handlers
# =============================================================================


def window_results_from(
    windows_meta: Sequence[Mapping[str, Any]], artifacts: Sequence[ArtifactModel]
) -> list[WindowResult]:
    by_id = {artifact.id: artifact for artifact in artifacts}
    results: list[WindowResult] = []
    for window in windows_meta:
        files: list[Mapping[str, Any]] = []
        for artifact_id in window.get('artifact_ids', []):
            artifact = by_id.get(artifact_id)
            content = artifact.json_content if artifact is not None else None
            if isinstance(content, dict):
                files.extend(content.get('files', []))
            elif isinstance(content, list):
                files.extend(content)
        results.append(
            WindowResult(
                window_index=int(window['window_index']),
                window_start=int(window.get('window_start') or 0),
                window_end=int(window.get('window_end') or 0),
                files=tuple(files),
            )
        )
    return results


async def group_drafts(
    context: ProcessContext, merge_result: Mapping[str, Any]
) -> list[ArtifactDraft]:
    """One artifact per group; its children are copies of the grouped pages."""
    page_artifacts: Mapping[str, str] = context.meta.get('page_artifacts', {})
    wanted = [
        page_artifacts[str(page)]
        for group in merge_result.get('groups', [])
        for page in group['files']
        if str(page) in page_artifacts
    ]
    pages = {artifact.id: artifact for artifact in await context.load_artifacts(wanted)}

    drafts: list[ArtifactDraft] = []
    for position, group in enumerate(merge_result.get('groups', [])):
        children: list[ArtifactDraft] = []
        for child_position, page_number in enumerate(group['files']):
            page = pages.get(page_artifacts.get(str(page_number), ''))
            if page is None:
                continue
            children.append(
                ArtifactDraft(
                    name=page.name,
                    position=child_position,
                    text_content=page.text_content,
                    json_content=page.json_content,
                    files=list(page.files or []),
                    meta=dict(page.meta or {}),
                    original_artifact_id=page.original_artifact_id or page.id,
                )
            )
        drafts.append(
            ArtifactDraft(
                name=group['name'],
                position=position,
                json_content={
                    'group_name': group['name'],
                    'description': group['description'],
                    'page_numbers': list(group['files']),
                },
                children=children,
            )
        )
    return drafts


async def merge_windows(context: ProcessContext) -> ProcessOutput:
    """Built-in 'merge' step: deterministic for the same window outputs and config."""
    config = context.runner_config
    results = window_results_from(context.meta.get('windows', []), context.input_artifacts)
    merge_result = merge_window_results(results, MergePolicy.from_config(config))

    candidates: list[dict[str, Any]] = []
    if config.deduplicate:
        candidates = identify_duplicate_candidates(
            merge_result['groups'], config.name_similarity_threshold
        )
    meta = {'merge_result': merge_result, 'groups_for_deduplication': candidates}
    if candidates:
        # Final groups come from the duplicate resolution process
        return ProcessOutput(meta=meta)
    return ProcessOutput(artifacts=await group_drafts(context, merge_result), meta=meta)


async def resolve_by_page_count(
    context: ProcessContext, candidates: list[dict[str, Any]], merge_result: dict[str, Any]
) -> ProcessOutput:
    decisions = default_merge_decisions(candidates, merge_result.get('groups', []))
    return ProcessOutput(meta={'merge_decisions': decisions})


def make_dedup_handler(resolver: Optional[DedupResolver] = None) -> ProcessHandler:
    """Built-in 'duplicate_group_resolution' step around a pluggable resolver.

    The resolver decides which groups are the same document and returns
    them as meta['merge_decisions'] = [{'from': name, 'into': name}]; its
    usage is charged to this process.
    """
    resolve = resolver or resolve_by_page_count

    async def resolve_duplicate_groups(context: ProcessContext) -> ProcessOutput:
        merge_result = dict(context.meta.get('merge_result', {}))
        candidates = list(context.meta.get('groups_for_deduplication', []))
        decision_output = await resolve(context, candidates, merge_result)
        decisions = list(decision_output.meta.get('merge_decisions', []))
        final_result = apply_group_merges(merge_result, decisions)
        return ProcessOutput(
            artifacts=await group_drafts(context, final_result),
            usage=decision_output.usage,
            meta={'merge_decisions': decisions, 'final_result': final_result},
            agent_thread_id=decision_output.agent_thread_id,
        )

    return resolve_duplicate_groups


def register_file_organization_handlers(
    handlers: Registry[ProcessHandler],
    *,
    window_handler: Optional[ProcessHandler] = None,
    dedup_resolver: Optional[DedupResolver] = None,
) -> None:
    handlers.register(f'{RUNNER_KIND}:{OP_MERGE}', merge_windows, replace=True)
    handlers.register(f'{RUNNER_KIND}:{OP_DEDUP}', make_dedup_handler(dedup_resolver), replace=True)
    if window_handler is not None:
        handlers.register(f'{RUNNER_KIND}:{OP_WINDOW}', window_handler, replace=True)


# =============================================================================
# Maintenance operations
# =============================================================================


def _by_operation(processes: Sequence[TaskProcessModel], operation: str) -> list[TaskProcessModel]:
    return [process for process in processes if process.operation == operation]


async def _load_file_org_run(
    session: AsyncSession, ctx: RunContext, task_run_id: str
) -> tuple[TaskRunModel, TaskDefinitionModel, list[TaskProcessModel]]:
    task_run = await lock_task_run(session, ctx, task_run_id)
    definition = await session.get(TaskDefinitionModel, task_run.task_definition_id)
    if definition is None or definition.runner_kind != RUNNER_KIND:
        raise illegal_transition('task run', task_run.id, task_run.status.value, 'run file maintenance on')
    return task_run, definition, await current_processes(session, task_run.id)


async def rerun_merge(
    session: AsyncSession, ctx: RunContext, runtime: Runtime, task_run_id: str
) -> TaskProcessModel:
    """
    Run the merge again over the same window outputs, without rerunning windows.

    The current merge and duplicate resolution processes are archived and
    a new merge process is created with the exact same inputs, so the new
    canonical output is identical unless the merge config changed.
    """
    task_run, definition, processes = await _load_file_org_run(session, ctx, task_run_id)
    merges = _by_operation(processes, OP_MERGE)
    if not merges:
        raise illegal_transition('task run', task_run.id, task_run.status.value, 'rerun merge of')
    merge = merges[-1]

    archived = merges + _by_operation(processes, OP_DEDUP)
    await begin_new_attempt(
        session, ctx, task_run, archived, reason='rerun_merge', status=RunStatus.RUNNING
    )
    plan = ProcessPlan(
        input_artifact_ids=list(merge.input_artifact_ids),
        operation=OP_MERGE,
        name=merge.name,
        meta={key: merge.meta[key] for key in ('windows', 'page_artifacts') if key in merge.meta},
    )
    created = await create_processes(session, ctx, runtime, task_run, definition, [plan])
    logger.info(f'Merge of task run {task_run.id[:8]} rerun as process {created[0].id[:8]}')
    return created[0]


async def rerun_dedup(
    session: AsyncSession, ctx: RunContext, runtime: Runtime, task_run_id: str
) -> TaskProcessModel:
    """Run duplicate resolution again on the groups kept by the merge process."""
    task_run, definition, processes = await _load_file_org_run(session, ctx, task_run_id)
    merges = [p for p in _by_operation(processes, OP_MERGE) if p.status == RunStatus.COMPLETED]
    if not merges or not merges[-1].meta.get('groups_for_deduplication'):
        raise illegal_transition('task run', task_run.id, task_run.status.value, 'rerun dedup of')

    await begin_new_attempt(
        session,
        ctx,
        task_run,
        _by_operation(processes, OP_DEDUP),
        reason='rerun_dedup',
        status=RunStatus.RUNNING,
    )
    created = await create_processes(
        session, ctx, runtime, task_run, definition, [dedup_plan(merges[-1])]
    )
    logger.info(f'Dedup of task run {task_run.id[:8]} rerun as process {created[0].id[:8]}')
    return created[0]


async def reset_from_windows(
    session: AsyncSession, ctx: RunContext, runtime: Runtime, task_run_id: str
) -> TaskProcessModel:
    """
    Drop everything after the windows and merge their current outputs again.

    Unlike rerun_merge the merge inputs are rebuilt from the window
    processes, which picks up windows that were fixed in the meantime.
    Every window must be Completed.
    """
    task_run, definition, processes = await _load_file_org_run(session, ctx, task_run_id)
    windows = _by_operation(processes, OP_WINDOW)
    if not windows or any(p.status != RunStatus.COMPLETED for p in windows):
        raise illegal_transition('task run', task_run.id, task_run.status.value, 'reset from windows')

    archived = _by_operation(processes, OP_MERGE) + _by_operation(processes, OP_DEDUP)
    await begin_new_attempt(
        session, ctx, task_run, archived, reason='reset_from_windows', status=RunStatus.RUNNING
    )
    created = await create_processes(
        session, ctx, runtime, task_run, definition, [merge_plan(windows)]
    )
    logger.info(f'Task run {task_run.id[:8]} reset from {len(windows)} window(s)')
    return created[0]


async def show_mismatches(
    session: AsyncSession, ctx: RunContext, task_run_id: str
) -> dict[int, list[dict[str, Any]]]:
    """Pages that different windows put into different groups."""
    task_run = await get_task_run(session, ctx, task_run_id)
    windows = [
        p
        for p in _by_operation(await current_processes(session, task_run.id), OP_WINDOW)
        if p.status == RunStatus.COMPLETED
    ]
    plan = merge_plan(windows)
    artifacts = await get_artifacts(session, plan.input_artifact_ids)
    return find_mismatches(window_results_from(plan.meta['windows'], artifacts))
