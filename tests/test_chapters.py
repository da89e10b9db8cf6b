"""Tests for storyforge.chapters — incremental chapter analysis."""

import pytest

from storyforge.chapters import analyze_chapter
from storyforge.ids import partition_name
from storyforge.llm import LLMError
from storyforge.retry import RetryPolicy

FAST = RetryPolicy(max_attempts=1)

CHAPTER_ONE = {
    "characters": [{"name": "Maya", "status": "healthy"}, {"name": "Tom"}],
    "locations": [{"name": "Harbor"}],
    "events": [{"name": "Arrival", "participants": ["Maya"]}],
    "summary": "Maya arrives at the harbor.",
    "mood": "hopeful",
    "tension": "low",
}

CHAPTER_TWO = {
    "characters": [{"name": "Maya"}],
    "stateChanges": [
        {"entityName": "Maya", "entityType": "character", "attribute": "status",
         "oldValue": "healthy", "newValue": "wounded", "reason": "ambushed on the pier"},
    ],
    "temporalMarkers": [{"type": "flashback", "description": "her childhood"}],
    "mood": "dark",
    "tension": "HIGH",
}


async def test_first_chapter(stub_llm, contexts, graph):
    llm = stub_llm({"chapter": CHAPTER_ONE})
    analysis = await analyze_chapter(
        "Maya stepped off the ferry.", 1,
        llm=llm, workspace_id="w", contexts=contexts, graph=graph,
    )
    assert analysis.chapter_id == "chapter-1"
    assert analysis.version == 1
    assert analysis.summary == "Maya arrives at the harbor."
    assert [c.id for c in analysis.characters] == ["char-maya", "char-tom"]
    assert contexts.get("w").version_count("chapter-1") == 1
    assert {n.id for n in graph.read("w").nodes_of("Character")} == {"char-maya", "char-tom"}
    assert llm.stages == ["chapter"]
    assert "chapter 1" in llm.calls[0][1]


async def test_state_changes_become_snapshots(stub_llm, contexts, graph):
    await analyze_chapter("One.", 1, llm=stub_llm({"chapter": CHAPTER_ONE}),
                          workspace_id="w", contexts=contexts, graph=graph)
    llm = stub_llm({"chapter": CHAPTER_TWO})
    analysis = await analyze_chapter("Two.", 2, llm=llm,
                                     workspace_id="w", contexts=contexts, graph=graph)

    assert analysis.tension == "high"
    ctx = contexts.get("w")
    assert ctx.mood == "dark"
    assert ctx.current_timeline == "past"
    # chapter two is prompted with what chapter one established
    assert '"Maya"' in llm.calls[0][1]

    history = graph.timeline("char-maya", "w")
    assert [s.version for s in history] == [1, 2, 3]
    assert history[-1].reason == "ambushed on the pier"
    assert history[-1].source == "chapter-2@v1"
    assert graph.read("w").node("char-maya").properties["status"] == "wounded"


async def test_chapter_membership_outlives_the_context(stub_llm, contexts, graph):
    await analyze_chapter("One.", 1, llm=stub_llm({"chapter": CHAPTER_ONE}),
                          workspace_id="w", contexts=contexts, graph=graph)
    contexts.reset("w")

    chapter = graph.read_chapter("w", 1)
    assert {n.id for n in chapter.nodes_of("Character")} == {"char-maya", "char-tom"}
    assert [e.source for e in chapter.edges_of("OCCURS_IN")] == ["evt-arrival"]
    [node] = graph.chapters("w")
    assert node.properties["summary"] == "Maya arrives at the harbor."
    assert node.properties["mood"] == "hopeful"
    assert node.properties["version"] == 1


async def test_corrupted_partition_does_not_fail_the_chapter(stub_llm, contexts, graph, tmp_path):
    path = tmp_path / "graph" / f"{partition_name('w')}.json"
    path.write_text("[]")

    analysis = await analyze_chapter("One.", 1, llm=stub_llm({"chapter": CHAPTER_ONE}),
                                     workspace_id="w", contexts=contexts, graph=graph)

    assert not analysis.degraded
    assert analysis.version == 1
    assert contexts.get("w").version_count("chapter-1") == 1
    assert path.read_text() == "[]"


async def test_reanalysis_increments_version(stub_llm, contexts):
    first = await analyze_chapter("One.", 1, llm=stub_llm({"chapter": CHAPTER_ONE}),
                                  workspace_id="w", contexts=contexts)
    revised = dict(CHAPTER_ONE, characters=[{"name": "Maya"}, {"name": "Ada"}])
    second = await analyze_chapter("One, revised.", 1, llm=stub_llm({"chapter": revised}),
                                   workspace_id="w", contexts=contexts)

    assert (first.version, second.version) == (1, 2)
    diff = contexts.get("w").version_diff("chapter-1")
    assert diff.additions == ["char-ada"]
    assert diff.removals == ["char-tom"]


async def test_generator_failure_returns_flagged_fallback(stub_llm, contexts):
    llm = stub_llm({"chapter": LLMError("backend down")})
    analysis = await analyze_chapter("One.", 1, llm=llm, workspace_id="w",
                                     contexts=contexts, policy=FAST)
    assert analysis.degraded
    assert "backend down" in analysis.diagnostics.error
    assert analysis.chapter_id == "chapter-1"
    assert analysis.version == 0
    assert contexts.get("w").version_count("chapter-1") == 0
    assert contexts.get("w").active_characters == []


async def test_unparseable_chapter_leaves_context_untouched(stub_llm, contexts):
    analysis = await analyze_chapter("One.", 1, llm=stub_llm({"chapter": "nope"}),
                                     workspace_id="w", contexts=contexts)
    assert analysis.diagnostics.fallback
    assert contexts.get("w").version_count("chapter-1") == 0


@pytest.mark.parametrize("text,number", [("", 1), ("Text.", 0)])
async def test_invalid_arguments(stub_llm, contexts, text, number):
    with pytest.raises(ValueError):
        await analyze_chapter(text, number, llm=stub_llm(), workspace_id="w", contexts=contexts)
