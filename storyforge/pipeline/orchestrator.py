"""Pipeline orchestrator — runs the analysis stages over one piece of text.

Run flow:
  1. Validate the requested stage ids (unknown id → UnknownStageError).
  2. For each stage, strictly in order:
       render instruction  → template + text + prior outputs + workspace context
       generate            → via generate_with_retry (timeouts, backoff)
       repair + coerce     → always yields a well-formed StageOutput
       merge               → output becomes visible to every later stage
  3. Extraction output gets stable ids, is absorbed into the workspace
     context, and is written to the graph store under a timeout.

A stage that fails hard (retries exhausted, broken template) is replaced by a
flagged empty output and recorded as "<stage>: <message>"; the run carries
on. Graph write failures never fail a run; they are reported as warnings.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel, Field, SerializeAsAny

from storyforge.context import ContextStore, WorkspaceContext
from storyforge.graph import GraphStore
from storyforge.llm import LLM
from storyforge.models import Extraction, StageOutput
from storyforge.prompts import PromptError
from storyforge.retry import GenerationError, RetryPolicy, generate_with_retry
from storyforge.stages import DEFAULT_STAGES, Stage, UnknownStageError, get_stage

logger = logging.getLogger(__name__)


class PipelineContext(BaseModel):
    """Outputs accumulated so far in one run, keyed by stage id."""

    workspace_id: str
    outputs: dict[str, SerializeAsAny[StageOutput]] = Field(default_factory=dict)

    def merge(self, stage_id: str, output: StageOutput) -> None:
        self.outputs[stage_id] = output

    def payloads(self) -> dict[str, dict[str, Any]]:
        return {k: v.payload() for k, v in self.outputs.items()}


class PipelineResult(BaseModel):
    results: dict[str, SerializeAsAny[StageOutput]] = Field(default_factory=dict)
    context: PipelineContext
    success: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


async def run_pipeline(
    text: str,
    *,
    llm: LLM,
    workspace_id: str,
    stages: Sequence[str] | None = None,
    manuscript: str | None = None,
    contexts: ContextStore | None = None,
    graph: GraphStore | None = None,
    policy: RetryPolicy | None = None,
    templates: Mapping[str, str] | None = None,
    custom_instructions: str | None = None,
    graph_timeout: float = 30.0,
) -> PipelineResult:
    """Run the requested stages over `text` and return every stage's output.

    Raises:
        ValueError:        `text` is empty.
        UnknownStageError: a stage id (or a template override key) is unknown.
    """
    if not text or not text.strip():
        raise ValueError("Input text must not be empty")

    selected = [get_stage(s) for s in (DEFAULT_STAGES if stages is None else stages)]
    templates = dict(templates or {})
    for key in templates:
        get_stage(key)

    contexts = contexts if contexts is not None else ContextStore()
    workspace = contexts.get(workspace_id)
    context = PipelineContext(workspace_id=workspace.workspace_id)
    result = PipelineResult(context=context)

    logger.info(
        "pipeline start workspace=%s stages=%s text_len=%d",
        workspace.workspace_id, ",".join(s.id for s in selected), len(text),
    )

    for stage in selected:
        output = await _run_stage(
            stage,
            text,
            llm=llm,
            context=context,
            workspace=workspace,
            policy=policy,
            manuscript=manuscript,
            template=templates.get(stage.id),
            custom_instructions=custom_instructions,
            errors=result.errors,
        )

        if output.diagnostics.fallback and output.diagnostics.error is None:
            result.warnings.append(f"{stage.id}: output could not be parsed; using empty result")

        if stage.persist and isinstance(output, Extraction) and not output.degraded:
            output.assign_ids()
            workspace.absorb(output)
            if graph is not None and not output.is_empty:
                await _persist(graph, stage, output, workspace.workspace_id, graph_timeout, result.warnings)

        context.merge(stage.id, output)
        result.results[stage.id] = output

    result.success = not result.errors
    logger.info(
        "pipeline done workspace=%s success=%s errors=%d warnings=%d",
        workspace.workspace_id, result.success, len(result.errors), len(result.warnings),
    )
    return result


async def _run_stage(
    stage: Stage,
    text: str,
    *,
    llm: LLM,
    context: PipelineContext,
    workspace: WorkspaceContext,
    policy: RetryPolicy | None,
    manuscript: str | None,
    template: str | None,
    custom_instructions: str | None,
    errors: list[str],
) -> StageOutput:
    try:
        prompt = stage.build_prompt(
            text,
            manuscript=manuscript,
            prior=context.payloads(),
            workspace=workspace.summary(),
            custom_instructions=custom_instructions,
            template=template,
        )
        raw = await generate_with_retry(llm, stage.id, prompt, policy)
    except (GenerationError, PromptError) as e:
        logger.error("stage=%s failed: %s", stage.id, e)
        errors.append(f"{stage.id}: {e}")
        return stage.fallback(error=str(e))

    output = stage.parse(raw)
    logger.info(
        "stage=%s done repaired=%s partial=%s fallback=%s",
        stage.id, output.diagnostics.repaired, output.diagnostics.partial,
        output.diagnostics.fallback,
    )
    return output


async def _persist(
    graph: GraphStore,
    stage: Stage,
    output: Extraction,
    workspace_id: str,
    timeout: float,
    warnings: list[str],
) -> None:
    try:
        await asyncio.wait_for(
            asyncio.to_thread(graph.write, output, workspace_id, source=stage.id),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("stage=%s graph write timed out after %.1fs", stage.id, timeout)
        warnings.append(f"{stage.id}: graph write timed out after {timeout:.1f}s")
    except Exception as e:
        logger.warning("stage=%s graph write failed: %s", stage.id, e)
        warnings.append(f"{stage.id}: graph write failed: {e}")


__all__ = [
    "PipelineContext",
    "PipelineResult",
    "UnknownStageError",
    "run_pipeline",
]
