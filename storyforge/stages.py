"""Stage registry: what each analysis stage asks for and how its answer is read.

A Stage bundles an instruction template with the model its output is coerced
into. Coercion never fails; whatever the generator returns, the caller gets a
well-formed StageOutput whose diagnostics say how much of it was real.
"""

from __future__ import annotations

import logging
import typing
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from storyforge import prompts
from storyforge.models import (
    ChapterAnalysis,
    Classification,
    ContinuityReport,
    Diagnostics,
    Extraction,
    StageOutput,
    Suggestions,
    Timeline,
    salvage,
)
from storyforge.repair import RepairResult, RepairStatus, excerpt, fallback_value, repair

logger = logging.getLogger(__name__)


class UnknownStageError(ValueError):
    """Raised when a stage id is not in the registry."""


def _list_item_model(annotation: Any) -> type[BaseModel] | None:
    if typing.get_origin(annotation) is not list:
        return None
    args = typing.get_args(annotation)
    if args and isinstance(args[0], type) and issubclass(args[0], BaseModel):
        return args[0]
    return None


def _list_keys(model: type[BaseModel]) -> tuple[str, ...]:
    keys = []
    for name, info in model.model_fields.items():
        annotation = info.annotation
        # StrList is Annotated[list[str], ...]; pydantic exposes the inner list
        if typing.get_origin(annotation) is list:
            keys.append(info.alias or name)
    return tuple(keys)


def coerce(model: type[StageOutput], value: Any, result: RepairResult | None = None) -> StageOutput:
    """Turn a repaired value into `model`, dropping whatever does not fit.

    Collection items are validated one by one so that a single bad item costs
    only itself. Scalars that fail validation revert to their defaults.
    """
    status = result.status if result is not None else RepairStatus.PARSED
    if not isinstance(value, dict):
        logger.warning("%s output is %s, not an object; using empty result",
                       model.__name__, type(value).__name__)
        value = fallback_value(str(value))
        status = RepairStatus.FALLBACK

    data = dict(value)
    data.pop("diagnostics", None)
    parse_error = bool(data.pop("_parse_error", False))
    data.pop("_error_message", None)
    raw = data.pop("_raw_response", None)

    dropped = 0
    for name, info in model.model_fields.items():
        item_model = _list_item_model(info.annotation)
        if item_model is None:
            continue
        key = info.alias if info.alias in data else name
        items = data.get(key)
        if not isinstance(items, list):
            continue
        kept = [v for v in (salvage(item_model, item) for item in items) if v is not None]
        dropped += len(items) - len(kept)
        data[key] = kept
    if dropped:
        logger.warning("%s: dropped %d invalid item(s)", model.__name__, dropped)

    output = salvage(model, data) or model()
    fallback = status is RepairStatus.FALLBACK or parse_error
    output.diagnostics = Diagnostics(
        repaired=status is not RepairStatus.PARSED,
        partial=status is RepairStatus.PARTIAL,
        fallback=fallback,
        raw_excerpt=raw if fallback else None,
    )
    return output


@dataclass(frozen=True)
class Stage:
    """One analysis step.

    Args:
        id:       Stage identifier, also the fallback shape name.
        model:    StageOutput subclass the answer is coerced into.
        template: Default Handlebars instruction template.
        persist:  Whether the output is written to the graph store.
    """

    id: str
    model: type[StageOutput]
    template: str
    persist: bool = False

    @property
    def collections(self) -> tuple[str, ...]:
        return _list_keys(self.model)

    def build_prompt(
        self,
        text: str,
        *,
        manuscript: str | None = None,
        prior: Mapping[str, Mapping[str, Any]] | None = None,
        workspace: Mapping[str, Any] | None = None,
        custom_instructions: str | None = None,
        template: str | None = None,
        **extra: Any,
    ) -> str:
        ctx = prompts.build_context(
            text,
            manuscript=manuscript,
            prior=prior,
            workspace=workspace,
            custom_instructions=custom_instructions,
            **extra,
        )
        return prompts.render_prompt(template or self.template, ctx)

    def parse(self, raw: str) -> StageOutput:
        result = repair(raw, expected=self.id, collections=self.collections)
        if result.repaired:
            logger.warning("stage=%s output needed repair (%s)", self.id, result.status.value)
        return coerce(self.model, result.value, result)

    def fallback(self, raw: str = "", error: str | None = None) -> StageOutput:
        """An empty, flagged output for a stage that could not run."""
        output = coerce(
            self.model,
            fallback_value(raw, self.id),
            RepairResult(None, RepairStatus.FALLBACK),
        )
        output.diagnostics.error = error
        output.diagnostics.raw_excerpt = excerpt(raw) if raw else None
        return output


STAGES: dict[str, Stage] = {
    "classification": Stage("classification", Classification, prompts.CLASSIFICATION),
    "extraction": Stage("extraction", Extraction, prompts.EXTRACTION, persist=True),
    "timeline": Stage("timeline", Timeline, prompts.TIMELINE),
    "validation": Stage("validation", ContinuityReport, prompts.VALIDATION),
    "suggestions": Stage("suggestions", Suggestions, prompts.SUGGESTIONS),
}

DEFAULT_STAGES: tuple[str, ...] = tuple(STAGES)

CHAPTER_STAGE = Stage("chapter", ChapterAnalysis, prompts.CHAPTER)


def get_stage(stage_id: str) -> Stage:
    try:
        return STAGES[stage_id]
    except KeyError:
        raise UnknownStageError(
            f"Unknown stage {stage_id!r}; expected one of: {', '.join(STAGES)}"
        ) from None
