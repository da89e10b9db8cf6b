"""StoryForge — one object wiring the generator, context store and graph store.

    forge = StoryForge(load_settings(".env"))
    result = await forge.analyze(text, workspace_id="my-novel")
    graph = forge.read_graph("my-novel")
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from storyforge.chapters import analyze_chapter
from storyforge.config import Settings, build_llm, retry_policy
from storyforge.context import ContextStore
from storyforge.graph import GraphData, GraphNode, GraphStore
from storyforge.llm import LLM
from storyforge.models import ChapterAnalysis, StateSnapshot
from storyforge.pipeline import PipelineResult, run_pipeline

logger = logging.getLogger(__name__)


class StoryForge:
    """Long-lived facade over the analysis pipeline.

    Args:
        settings: Runtime configuration.
        llm:      Generator to use instead of the HTTP client built from settings.
    """

    def __init__(self, settings: Settings | None = None, *, llm: LLM | None = None) -> None:
        self.settings = settings or Settings()
        self.llm: LLM = llm if llm is not None else build_llm(self.settings)
        self.policy = retry_policy(self.settings)
        self.contexts = ContextStore(
            ttl=self.settings.context_ttl,
            sweep_interval=self.settings.sweep_interval,
        )
        self.graph = GraphStore(self.settings.data_dir)
        logger.debug("StoryForge ready data_dir=%s", self.settings.data_dir)

    async def analyze(
        self,
        text: str,
        *,
        workspace_id: str,
        stages: Sequence[str] | None = None,
        manuscript: str | None = None,
        templates: Mapping[str, str] | None = None,
        custom_instructions: str | None = None,
    ) -> PipelineResult:
        return await run_pipeline(
            text,
            llm=self.llm,
            workspace_id=workspace_id,
            stages=stages,
            manuscript=manuscript,
            contexts=self.contexts,
            graph=self.graph,
            policy=self.policy,
            templates=templates,
            custom_instructions=custom_instructions,
            graph_timeout=self.settings.graph_timeout,
        )

    async def analyze_chapter(
        self,
        text: str,
        chapter_number: int,
        *,
        workspace_id: str,
        custom_instructions: str | None = None,
    ) -> ChapterAnalysis:
        return await analyze_chapter(
            text,
            chapter_number,
            llm=self.llm,
            workspace_id=workspace_id,
            contexts=self.contexts,
            graph=self.graph,
            policy=self.policy,
            custom_instructions=custom_instructions,
            graph_timeout=self.settings.graph_timeout,
        )

    def read_graph(self, workspace_id: str, *, include_states: bool = True) -> GraphData:
        return self.graph.read(workspace_id, include_states=include_states)

    def read_chapter(self, workspace_id: str, chapter_number: int) -> GraphData:
        return self.graph.read_chapter(workspace_id, chapter_number)

    def chapters(self, workspace_id: str) -> list[GraphNode]:
        return self.graph.chapters(workspace_id)

    def timeline(self, entity_id: str, workspace_id: str) -> list[StateSnapshot]:
        return self.graph.timeline(entity_id, workspace_id)

    def clear_graph(self, workspace_id: str | None = None) -> int:
        return self.graph.clear(workspace_id)

    def reset_context(self, workspace_id: str) -> bool:
        return self.contexts.reset(workspace_id)
