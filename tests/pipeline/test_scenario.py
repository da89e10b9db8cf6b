"""End-to-end scenario: the generator runs out of tokens mid-extraction.

The extraction answer is cut off inside the second character. The run must
still succeed, recover exactly the one complete character, flag the result
as partial, and put exactly that character into the graph.
"""

from storyforge.pipeline import run_pipeline

TRUNCATED_EXTRACTION = (
    "```json\n"
    '{"characters": [{"name": "Elena", "role": "protagonist", "traits": ["curious"]}, '
    '{"name": "Marco", "ro'
)

TEXT = "Elena found the letter under the floorboards. Marco watched from the doorway."


async def test_truncated_extraction_end_to_end(stub_llm, contexts, graph):
    llm = stub_llm({"extraction": TRUNCATED_EXTRACTION})
    result = await run_pipeline(
        TEXT, llm=llm, workspace_id="letters", contexts=contexts, graph=graph,
    )

    assert result.success
    assert result.errors == []

    extraction = result.results["extraction"]
    assert [c.name for c in extraction.characters] == ["Elena"]
    assert extraction.characters[0].traits == ["curious"]
    assert extraction.diagnostics.partial
    assert extraction.diagnostics.repaired
    assert not extraction.diagnostics.fallback

    characters = graph.read("letters").nodes_of("Character")
    assert [n.id for n in characters] == ["char-elena"]
    assert [s.version for s in graph.timeline("char-elena", "letters")] == [1]

    assert contexts.get("letters").active_characters == ["Elena"]
    # every later stage was still run and shown the partial result
    assert llm.stages[-3:] == ["timeline", "validation", "suggestions"]
    assert '"name": "Elena"' in llm.prompts_for("timeline")[0]


async def test_rerunning_the_same_text_merges_instead_of_duplicating(stub_llm, contexts, graph):
    for _ in range(2):
        await run_pipeline(
            TEXT, llm=stub_llm({"extraction": TRUNCATED_EXTRACTION}),
            workspace_id="letters", stages=["extraction"], contexts=contexts, graph=graph,
        )
    assert len(graph.read("letters").nodes_of("Character")) == 1
    assert [s.version for s in graph.timeline("char-elena", "letters")] == [1, 2]
