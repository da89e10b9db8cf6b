"""Pipeline orchestrator tests with a scripted generator.

Each test scripts the generator's answers per stage and checks what the run
returns: stage order, what each stage was shown, how failures degrade, and
what reaches the context and graph stores.
"""

import asyncio
import time

import pytest

from storyforge.context import ContextStore
from storyforge.ids import partition_name
from storyforge.llm import LLMError
from storyforge.pipeline import run_pipeline
from storyforge.retry import RetryPolicy
from storyforge.stages import DEFAULT_STAGES, UnknownStageError

FAST = RetryPolicy(max_attempts=2, base_delay=0, max_delay=0, timeout=5)

CLASSIFICATION = {"genre": "gothic", "themes": ["isolation"], "setting": "moorland manor"}
EXTRACTION = {
    "characters": [{"name": "Eleanor", "role": "protagonist"}, {"name": "Mr. Hale"}],
    "locations": [{"name": "Thornfield"}],
    "relationships": [{"source": "Eleanor", "target": "Mr. Hale", "type": "distrusts",
                       "sentiment": "negative", "strength": 0.7}],
}
TEXT = "Eleanor arrived at Thornfield on a night of rain. Mr. Hale did not greet her."


# ── Helpers ──────────────────────────────────────────────


class BrokenGraph:
    def write(self, extraction, workspace_id, *, source=None):
        raise OSError("disk full")


class MisbehavingGraph:
    def write(self, extraction, workspace_id, *, source=None):
        raise KeyError("id")


class SlowGraph:
    def write(self, extraction, workspace_id, *, source=None):
        time.sleep(0.5)


# ── Ordering & context ──────────────────────────────────


async def test_runs_every_stage_in_order(stub_llm):
    llm = stub_llm({"classification": CLASSIFICATION, "extraction": EXTRACTION})
    result = await run_pipeline(TEXT, llm=llm, workspace_id="w", policy=FAST)

    assert llm.stages == list(DEFAULT_STAGES)
    assert list(result.results) == list(DEFAULT_STAGES)
    assert result.success
    assert result.errors == []
    assert list(result.context.outputs) == list(DEFAULT_STAGES)


async def test_later_stages_see_earlier_outputs(stub_llm):
    llm = stub_llm({"classification": CLASSIFICATION, "extraction": EXTRACTION})
    await run_pipeline(TEXT, llm=llm, workspace_id="w", policy=FAST)

    [extraction_prompt] = llm.prompts_for("extraction")
    assert '"genre": "gothic"' in extraction_prompt
    [timeline_prompt] = llm.prompts_for("timeline")
    assert "Eleanor" in timeline_prompt and '"relationships"' in timeline_prompt
    [suggestions_prompt] = llm.prompts_for("suggestions")
    assert "classification:" in suggestions_prompt and "validation:" in suggestions_prompt


async def test_subset_of_stages(stub_llm):
    llm = stub_llm({"extraction": EXTRACTION})
    result = await run_pipeline(TEXT, llm=llm, workspace_id="w", stages=["extraction"])
    assert llm.stages == ["extraction"]
    assert list(result.results) == ["extraction"]


# ── Graceful degradation ─────────────────────────────────


async def test_failed_middle_stage_degrades_gracefully(stub_llm):
    llm = stub_llm({
        "classification": CLASSIFICATION,
        "extraction": LLMError("backend down"),
    })
    result = await run_pipeline(
        TEXT, llm=llm, workspace_id="w", policy=FAST,
        stages=["classification", "extraction", "suggestions"],
    )

    assert list(result.results) == ["classification", "extraction", "suggestions"]
    assert result.success is False
    assert len(result.errors) == 1
    assert result.errors[0].startswith("extraction: ")
    assert result.results["extraction"].degraded
    assert result.results["extraction"].characters == []
    assert llm.stages.count("extraction") == 2

    [suggestions_prompt] = llm.prompts_for("suggestions")
    assert '"genre": "gothic"' in suggestions_prompt


async def test_broken_template_fails_only_its_stage(stub_llm):
    llm = stub_llm({"classification": CLASSIFICATION})
    result = await run_pipeline(
        TEXT, llm=llm, workspace_id="w", policy=FAST,
        stages=["classification", "timeline"],
        templates={"timeline": "{{> no_such_partial}}"},
    )
    assert result.results["classification"].genre == "gothic"
    assert result.errors[0].startswith("timeline: Template error")
    assert "timeline" not in llm.stages


async def test_unparseable_output_is_a_warning_not_an_error(stub_llm):
    llm = stub_llm({"classification": "I'd rather not."})
    result = await run_pipeline(TEXT, llm=llm, workspace_id="w", stages=["classification"])
    assert result.success
    assert result.results["classification"].diagnostics.fallback
    assert result.warnings == ["classification: output could not be parsed; using empty result"]


# ── Validation up front ──────────────────────────────────


async def test_unknown_stage_rejected_before_any_call(stub_llm):
    llm = stub_llm()
    with pytest.raises(UnknownStageError):
        await run_pipeline(TEXT, llm=llm, workspace_id="w", stages=["classification", "vibes"])
    assert llm.calls == []


async def test_unknown_template_key_rejected(stub_llm):
    with pytest.raises(UnknownStageError):
        await run_pipeline(TEXT, llm=stub_llm(), workspace_id="w", templates={"vibes": "x"})


@pytest.mark.parametrize("text", ["", "   \n"])
async def test_empty_text_rejected(stub_llm, text):
    with pytest.raises(ValueError):
        await run_pipeline(text, llm=stub_llm(), workspace_id="w")


# ── Context & persistence ────────────────────────────────


async def test_extraction_is_absorbed_and_persisted(stub_llm, contexts, graph):
    llm = stub_llm({"extraction": EXTRACTION})
    result = await run_pipeline(
        TEXT, llm=llm, workspace_id="gothic", stages=["extraction"],
        contexts=contexts, graph=graph,
    )

    ids = [c.id for c in result.results["extraction"].characters]
    assert ids == ["char-eleanor", "char-mr-hale"]
    assert contexts.get("gothic").active_characters == ["Eleanor", "Mr. Hale"]
    assert contexts.get("gothic").current_location == "Thornfield"

    data = graph.read("gothic")
    assert {n.id for n in data.nodes_of("Character")} == {"char-eleanor", "char-mr-hale"}
    [rel] = data.edges_of("RELATES_TO")
    assert (rel.source, rel.target) == ("char-eleanor", "char-mr-hale")


async def test_workspace_context_reaches_the_next_run(stub_llm, contexts):
    await run_pipeline(
        TEXT, llm=stub_llm({"extraction": EXTRACTION}), workspace_id="gothic",
        stages=["extraction"], contexts=contexts,
    )
    llm = stub_llm()
    await run_pipeline("Chapter two.", llm=llm, workspace_id="gothic",
                       stages=["classification"], contexts=contexts)
    [prompt] = llm.prompts_for("classification")
    assert "- Eleanor\n" in prompt


async def test_failed_extraction_is_not_persisted(stub_llm, graph):
    llm = stub_llm({"extraction": "total nonsense"})
    await run_pipeline(TEXT, llm=llm, workspace_id="w", stages=["extraction"], graph=graph)
    assert graph.workspaces() == []


async def test_graph_failure_is_a_warning(stub_llm):
    result = await run_pipeline(
        TEXT, llm=stub_llm({"extraction": EXTRACTION}), workspace_id="w",
        stages=["extraction"], graph=BrokenGraph(),
    )
    assert result.success
    assert result.warnings == ["extraction: graph write failed: disk full"]


async def test_unexpected_graph_error_is_a_warning(stub_llm):
    result = await run_pipeline(
        TEXT, llm=stub_llm({"extraction": EXTRACTION}), workspace_id="w",
        stages=["extraction"], graph=MisbehavingGraph(),
    )
    assert result.success
    assert result.results["extraction"].characters
    assert result.warnings == ["extraction: graph write failed: 'id'"]


@pytest.mark.parametrize("document", ['{"nodes": [{"kind": "Character"}]}', "[]"])
async def test_corrupted_partition_keeps_stage_results(stub_llm, graph, tmp_path, document):
    path = tmp_path / "graph" / f"{partition_name('w')}.json"
    path.write_text(document)

    result = await run_pipeline(
        TEXT, llm=stub_llm({"extraction": EXTRACTION}), workspace_id="w",
        stages=["extraction"], graph=graph,
    )

    assert result.success
    assert [c.name for c in result.results["extraction"].characters] == ["Eleanor", "Mr. Hale"]
    [warning] = result.warnings
    assert warning.startswith("extraction: graph write failed:")
    assert path.read_text() == document


async def test_graph_timeout_is_a_warning(stub_llm):
    result = await run_pipeline(
        TEXT, llm=stub_llm({"extraction": EXTRACTION}), workspace_id="w",
        stages=["extraction"], graph=SlowGraph(), graph_timeout=0.05,
    )
    assert result.success
    assert "timed out" in result.warnings[0]
    # let the abandoned worker thread finish before the loop closes
    await asyncio.sleep(0.5)


async def test_result_serialises_stage_fields(stub_llm):
    llm = stub_llm({"classification": CLASSIFICATION})
    result = await run_pipeline(TEXT, llm=llm, workspace_id="w", stages=["classification"])
    dumped = result.model_dump()
    assert dumped["results"]["classification"]["genre"] == "gothic"
    assert dumped["context"]["outputs"]["classification"]["setting"] == "moorland manor"
