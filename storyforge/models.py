"""Core domain models.

All pipeline stages, the graph store and the context store operate on these
types. Pydantic is used for validation and serialisation at every data
boundary.

Generator output is untrusted: keys arrive in camelCase (``plotThreads``),
values arrive as ``null``, as a bare string where a list was asked for, or as
a number where a string was asked for. The models absorb all of that;
``salvage()`` handles the rest by dropping fields that still fail.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, TypeVar

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from storyforge.ids import entity_id, slugify

EntityKind = Literal["Character", "Location", "Object", "Event", "PlotThread"]
PlotStatus = Literal["introduced", "developing", "climax", "resolved", "abandoned"]
Sentiment = Literal["positive", "negative", "neutral", "ambiguous"]
Tension = Literal["low", "medium", "high", "critical"]

_PLOT_STATUSES = ("introduced", "developing", "climax", "resolved", "abandoned")
_LEGACY_PLOT_STATUS = {
    "active": "developing",
    "ongoing": "developing",
    "dormant": "abandoned",
    "foreshadowed": "introduced",
}
_SENTIMENTS = ("positive", "negative", "neutral", "ambiguous")
_TENSIONS = ("low", "medium", "high", "critical")
_KINDS = {
    "character": "Character",
    "location": "Location",
    "object": "Object",
    "storyobject": "Object",
    "event": "Event",
    "plotthread": "PlotThread",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalise_kind(value: Any) -> str:
    key = str(value).replace("_", "").replace(" ", "").lower()
    return _KINDS.get(key, "Character")


def _as_str_list(value: Any) -> Any:
    """Accept a bare string, a list of strings, or a list of {"name": ...} dicts."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        out: list[str] = []
        for item in value:
            if isinstance(item, dict):
                item = item.get("name") or item.get("id")
            if item is None or isinstance(item, (list, dict)):
                continue
            text = str(item).strip()
            if text:
                out.append(text)
        return out
    return value


StrList = Annotated[list[str], BeforeValidator(_as_str_list)]


class StoryModel(BaseModel):
    """Base for everything parsed out of generator output."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # null means "not given"; the field default applies
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class NamedEntity(StoryModel):
    id: str = ""
    name: str
    description: str = ""

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


# ---------------------------------------------------------------------------
# Narrative entities
# ---------------------------------------------------------------------------

class Character(NamedEntity):
    role: str = ""
    aliases: StrList = Field(default_factory=list)
    traits: StrList = Field(default_factory=list)
    motivations: StrList = Field(default_factory=list)
    status: str = ""
    first_appearance: str = ""


class Location(NamedEntity):
    type: str = ""
    significance: str = ""
    contained_in: str = ""
    connected_locations: StrList = Field(default_factory=list)


class StoryObject(NamedEntity):
    type: str = ""
    significance: str = ""
    owner: str = ""
    current_location: str = ""


class Event(NamedEntity):
    type: str = "action"
    participants: StrList = Field(default_factory=list)
    location: str = ""
    timestamp: str = ""
    order: int | None = None
    caused_by: StrList = Field(default_factory=list)
    effects: StrList = Field(default_factory=list)
    is_temporal: bool = False
    temporal_type: str = "current"

    @model_validator(mode="before")
    @classmethod
    def _characters_alias(cls, data: Any) -> Any:
        # older prompts call participants "characters"
        if isinstance(data, dict) and "participants" not in data and "characters" in data:
            data = {**data, "participants": data["characters"]}
        return data


class Relationship(StoryModel):
    id: str = ""
    source: str
    target: str
    source_type: EntityKind = "Character"
    target_type: EntityKind = "Character"
    type: str = "related_to"
    description: str = ""
    sentiment: Sentiment = "neutral"
    strength: float = 0.5

    @model_validator(mode="before")
    @classmethod
    def _from_to_alias(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "source" not in data and "from" in data:
                data["source"] = data.pop("from")
            if "target" not in data and "to" in data:
                data["target"] = data.pop("to")
        return data

    @field_validator("source", "target")
    @classmethod
    def _endpoint_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("relationship endpoint must not be blank")
        return v

    @field_validator("source_type", "target_type", mode="before")
    @classmethod
    def _endpoint_kind(cls, v: Any) -> str:
        return _normalise_kind(v)

    @field_validator("sentiment", mode="before")
    @classmethod
    def _normalise_sentiment(cls, v: Any) -> str:
        v = str(v).strip().lower()
        return v if v in _SENTIMENTS else "neutral"

    @field_validator("strength", mode="before")
    @classmethod
    def _clamp_strength(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.5
        return min(max(value, 0.0), 1.0)


class PlotThread(NamedEntity):
    status: PlotStatus = "introduced"
    related_characters: StrList = Field(default_factory=list)
    related_events: StrList = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, v: Any) -> str:
        v = str(v).strip().lower()
        if v in _PLOT_STATUSES:
            return v
        return _LEGACY_PLOT_STATUS.get(v, "introduced")


# ---------------------------------------------------------------------------
# State history (append-only)
# ---------------------------------------------------------------------------

class AttributeChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    attribute: str
    old_value: Any = None
    new_value: Any = None


class StateSnapshot(BaseModel):
    """One immutable entry in an entity's history.

    A new version is appended every time the entity is written; old
    snapshots are never edited or removed.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    entity_id: str
    entity_kind: EntityKind
    workspace_id: str
    version: int
    changes: tuple[AttributeChange, ...] = ()
    source: str | None = None
    reason: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Stage outputs
# ---------------------------------------------------------------------------

class Diagnostics(BaseModel):
    """How a stage output was obtained.

    repaired  — the raw text needed more than a strict parse
    partial   — only complete collection items were salvaged
    fallback  — no data could be recovered; the output is an empty placeholder
    error     — why the stage failed, when it did
    """

    repaired: bool = False
    partial: bool = False
    fallback: bool = False
    error: str | None = None
    raw_excerpt: str | None = None


class StageOutput(StoryModel):
    diagnostics: Diagnostics = Field(default_factory=Diagnostics)

    @property
    def degraded(self) -> bool:
        return self.diagnostics.fallback or self.diagnostics.error is not None

    def payload(self) -> dict[str, Any]:
        """Model data without diagnostics, as it would be shown to the generator."""
        return self.model_dump(by_alias=True, exclude={"diagnostics"})


class Tone(StoryModel):
    formality: str = "mixed"
    sentiment: str = "neutral"
    pacing: str = "steady"


class NarrativeStructure(StoryModel):
    type: str = "three-act"
    current_act: int = 1
    total_acts: int = 3


class WritingStyle(StoryModel):
    perspective: str = "third-person-limited"
    tense: str = "past"
    voice: str = ""


class Classification(StageOutput):
    genre: str = "unknown"
    themes: StrList = Field(default_factory=list)
    tone: Tone = Field(default_factory=Tone)
    narrative_structure: NarrativeStructure = Field(default_factory=NarrativeStructure)
    writing_style: WritingStyle = Field(default_factory=WritingStyle)
    main_conflict: str = ""
    setting: str = ""
    time_period: str = ""


class Extraction(StageOutput):
    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    objects: list[StoryObject] = Field(default_factory=list)
    events: list[Event] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    plot_threads: list[PlotThread] = Field(default_factory=list)

    def entities(self) -> list[tuple[EntityKind, list[NamedEntity]]]:
        return [
            ("Character", self.characters),
            ("Location", self.locations),
            ("Object", self.objects),
            ("Event", self.events),
            ("PlotThread", self.plot_threads),
        ]

    @property
    def is_empty(self) -> bool:
        return not self.relationships and not any(items for _, items in self.entities())

    def assign_ids(self) -> None:
        """Replace generator-supplied ids with stable name-derived ids.

        Cross-references that used the generator's ids ("char-1") are
        rewritten to the new ids; references by name are left alone.
        """
        remap: dict[str, str] = {}
        for kind, items in self.entities():
            for item in items:
                new_id = entity_id(kind, item.name)
                if item.id and item.id != new_id:
                    remap[item.id] = new_id
                item.id = new_id

        def fix(ref: str) -> str:
            return remap.get(ref, ref)

        def fix_all(refs: list[str]) -> list[str]:
            return [fix(r) for r in refs]

        if remap:
            for loc in self.locations:
                loc.contained_in = fix(loc.contained_in)
                loc.connected_locations = fix_all(loc.connected_locations)
            for obj in self.objects:
                obj.owner = fix(obj.owner)
                obj.current_location = fix(obj.current_location)
            for evt in self.events:
                evt.participants = fix_all(evt.participants)
                evt.location = fix(evt.location)
                evt.caused_by = fix_all(evt.caused_by)
            for plot in self.plot_threads:
                plot.related_characters = fix_all(plot.related_characters)
                plot.related_events = fix_all(plot.related_events)
            for rel in self.relationships:
                rel.source = fix(rel.source)
                rel.target = fix(rel.target)

        for rel in self.relationships:
            rel.id = f"rel-{slugify(rel.source)}-{slugify(rel.type)}-{slugify(rel.target)}"


class TemporalShift(StoryModel):
    event_id: str = ""
    narrative_position: int | None = None
    description: str = ""


class CausalChain(StoryModel):
    cause: str
    effects: StrList = Field(default_factory=list)
    validated: bool = False


class TemporalIssue(StoryModel):
    id: str = ""
    type: str = "inconsistency"
    description: str
    severity: str = "low"
    affected_events: StrList = Field(default_factory=list)
    suggestion: str = ""


class Timeline(StageOutput):
    chronological_events: list[Event] = Field(default_factory=list)
    flashbacks: list[TemporalShift] = Field(default_factory=list)
    flash_forwards: list[TemporalShift] = Field(default_factory=list)
    causal_chains: list[CausalChain] = Field(default_factory=list)
    temporal_issues: list[TemporalIssue] = Field(default_factory=list)
    story_duration: str = "unknown"
    narrative_pace: str = "unknown"


class Contradiction(StoryModel):
    id: str = ""
    type: str = ""
    description: str
    locations: StrList = Field(default_factory=list)
    is_intentional: bool = False


class ContinuityIssue(StoryModel):
    id: str = ""
    type: str = ""
    description: str
    severity: str = "low"
    suggestion: str = ""


class ContinuityReport(StageOutput):
    contradictions: list[Contradiction] = Field(default_factory=list)
    intentional_choices: StrList = Field(default_factory=list)
    errors: list[ContinuityIssue] = Field(default_factory=list)
    warnings: StrList = Field(default_factory=list)
    continuity_score: int = 0
    recommendations: StrList = Field(default_factory=list)

    @field_validator("continuity_score", mode="before")
    @classmethod
    def _clamp_score(cls, v: Any) -> int:
        try:
            value = int(float(v))
        except (TypeError, ValueError):
            return 0
        return min(max(value, 0), 100)


class SceneSuggestion(StoryModel):
    title: str
    description: str = ""
    placement: str = ""
    characters: StrList = Field(default_factory=list)
    purpose: str = ""
    emotional_beat: str = ""


class PlotDevelopment(StoryModel):
    idea: str
    rationale: str = ""
    impact: str = ""
    related_threads: StrList = Field(default_factory=list)


class DialogueImprovement(StoryModel):
    original: str = ""
    improved: str
    character: str = ""
    context: str = ""
    reason: str = ""


class CharacterArc(StoryModel):
    character: str
    current_stage: str = ""
    next_steps: StrList = Field(default_factory=list)
    emotional_journey: str = ""
    potential_conflicts: StrList = Field(default_factory=list)


class Suggestions(StageOutput):
    scene_suggestions: list[SceneSuggestion] = Field(default_factory=list)
    plot_developments: list[PlotDevelopment] = Field(default_factory=list)
    dialogue_improvements: list[DialogueImprovement] = Field(default_factory=list)
    character_arc_guidance: list[CharacterArc] = Field(default_factory=list)
    theme_reinforcements: StrList = Field(default_factory=list)
    alternative_scenarios: StrList = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Chapter analysis
# ---------------------------------------------------------------------------

class StateChange(StoryModel):
    entity_name: str
    entity_type: EntityKind = "Character"
    attribute: str
    old_value: str = ""
    new_value: str = ""
    reason: str = ""

    @field_validator("entity_type", mode="before")
    @classmethod
    def _entity_kind(cls, v: Any) -> str:
        return _normalise_kind(v)


class TemporalMarker(StoryModel):
    id: str = ""
    type: str = "timejump"
    description: str = ""
    from_time: str = ""
    to_time: str = ""
    affected_events: StrList = Field(default_factory=list)


class ChapterAnalysis(Extraction):
    chapter_id: str = ""
    chapter_number: int = 0
    version: int = 1
    timestamp: datetime = Field(default_factory=utcnow)
    state_changes: list[StateChange] = Field(default_factory=list)
    temporal_markers: list[TemporalMarker] = Field(default_factory=list)
    summary: str = ""
    mood: str = "neutral"
    tension: Tension = "low"

    @field_validator("tension", mode="before")
    @classmethod
    def _normalise_tension(cls, v: Any) -> str:
        v = str(v).strip().lower()
        return v if v in _TENSIONS else "low"


# ---------------------------------------------------------------------------
# Lenient validation
# ---------------------------------------------------------------------------

M = TypeVar("M", bound=BaseModel)


def salvage(model: type[M], data: Any) -> M | None:
    """Validate `data` as `model`, discarding top-level fields that fail.

    Returns None if `data` is not a mapping or a required field is missing
    or invalid.
    """
    if not isinstance(data, dict):
        return None
    payload = dict(data)
    while True:
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            removable: set[str] = set()
            for err in e.errors():
                if err["loc"]:
                    removable |= _input_keys(model, str(err["loc"][0])) & payload.keys()
            if not removable:
                return None
            for key in removable:
                payload.pop(key)


def _input_keys(model: type[BaseModel], loc: str) -> set[str]:
    # errors are reported by alias; the input may have used the field name
    keys = {loc}
    for name, info in model.model_fields.items():
        if loc in (name, info.alias):
            keys.add(name)
            if info.alias:
                keys.add(info.alias)
    return keys
