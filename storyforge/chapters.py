"""Incremental, chapter-by-chapter analysis.

Unlike run_pipeline, which analyses a text in isolation, analyze_chapter
prompts the generator with everything the workspace context already knows
and asks what changed. Re-analysing the same chapter number produces a new
version of that chapter; the context keeps every version so they can be
diffed.
"""

from __future__ import annotations

import asyncio
import logging

from storyforge.context import ContextStore
from storyforge.graph import GraphStore
from storyforge.ids import chapter_id
from storyforge.llm import LLM
from storyforge.models import ChapterAnalysis
from storyforge.prompts import PromptError
from storyforge.retry import GenerationError, RetryPolicy, generate_with_retry
from storyforge.stages import CHAPTER_STAGE

logger = logging.getLogger(__name__)


async def analyze_chapter(
    text: str,
    chapter_number: int,
    *,
    llm: LLM,
    workspace_id: str,
    contexts: ContextStore,
    graph: GraphStore | None = None,
    policy: RetryPolicy | None = None,
    template: str | None = None,
    custom_instructions: str | None = None,
    graph_timeout: float = 30.0,
) -> ChapterAnalysis:
    """Analyse one chapter against the workspace's accumulated context.

    On success the analysis is recorded as the chapter's next version, its
    entities are written to the graph and each state change becomes a
    snapshot. If the generator fails, a flagged fallback is returned, the
    context is left untouched and its `version` is the latest recorded one
    (0 if the chapter was never analysed).
    """
    if not text or not text.strip():
        raise ValueError("Chapter text must not be empty")
    if chapter_number < 1:
        raise ValueError("chapter_number must be 1 or greater")

    workspace = contexts.get(workspace_id)
    cid = chapter_id(chapter_number)

    try:
        prompt = CHAPTER_STAGE.build_prompt(
            text,
            workspace=workspace.summary(),
            custom_instructions=custom_instructions,
            template=template,
            chapter_number=chapter_number,
        )
        raw = await generate_with_retry(llm, CHAPTER_STAGE.id, prompt, policy)
    except (GenerationError, PromptError) as e:
        logger.error("chapter analysis failed workspace=%s chapter=%s: %s",
                     workspace.workspace_id, cid, e)
        fallback: ChapterAnalysis = CHAPTER_STAGE.fallback(error=str(e))
        fallback.chapter_id = cid
        fallback.chapter_number = chapter_number
        fallback.version = workspace.version_count(cid)
        return fallback

    analysis: ChapterAnalysis = CHAPTER_STAGE.parse(raw)
    analysis.chapter_id = cid
    analysis.chapter_number = chapter_number
    if analysis.degraded:
        logger.warning("chapter %s output could not be parsed; context unchanged", cid)
        analysis.version = workspace.version_count(cid)
        return analysis

    analysis.assign_ids()
    version = workspace.record_chapter(analysis)
    logger.info(
        "chapter %s v%d workspace=%s: %d state change(s), tension=%s",
        cid, version, workspace.workspace_id, len(analysis.state_changes), analysis.tension,
    )

    if graph is not None:
        await _persist(graph, analysis, workspace.workspace_id, graph_timeout)
    return analysis


async def _persist(
    graph: GraphStore, analysis: ChapterAnalysis, workspace_id: str, timeout: float
) -> None:
    source = f"{analysis.chapter_id}@v{analysis.version}"

    def write() -> None:
        # the Chapter node is recorded even when nothing was extracted
        graph.write(analysis, workspace_id, source=source)
        if analysis.state_changes:
            graph.append_state_changes(analysis.state_changes, workspace_id, source=source)

    try:
        await asyncio.wait_for(asyncio.to_thread(write), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("graph write for %s timed out after %.1fs", source, timeout)
    except Exception as e:
        logger.warning("graph write for %s failed: %s", source, e)
