import json
from pathlib import Path

import pytest

from storyforge.context import ContextStore
from storyforge.graph import GraphStore


class StubLLM:
    """Scripted generator: returns canned responses and records every call.

    `script` maps a stage id to a response or a list of responses consumed in
    order (the last one repeats). A response may be a string, a dict (sent as
    JSON), or an exception instance, which is raised instead. Stages missing from the
    script get `default`.
    """

    def __init__(self, script=None, default="{}"):
        self.script = {
            k: list(v) if isinstance(v, (list, tuple)) else [v]
            for k, v in (script or {}).items()
        }
        self.default = default
        self.calls = []  # list of (stage, prompt) tuples

    async def __call__(self, stage, prompt):
        self.calls.append((stage, prompt))
        queue = self.script.get(stage)
        if queue:
            response = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            response = self.default
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return json.dumps(response)
        return response

    @property
    def stages(self):
        return [stage for stage, _ in self.calls]

    def prompts_for(self, stage):
        return [prompt for s, prompt in self.calls if s == stage]


@pytest.fixture
def stub_llm():
    """Factory for StubLLM instances."""
    return StubLLM


@pytest.fixture
def graph(tmp_path: Path) -> GraphStore:
    return GraphStore(tmp_path)


@pytest.fixture
def contexts() -> ContextStore:
    return ContextStore()
