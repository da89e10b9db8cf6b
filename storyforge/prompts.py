"""Handlebars instruction templates for the analysis stages."""

import json
from collections.abc import Callable, Mapping
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} — iterate over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    result = []
    for item in list(items or [])[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def build_context(
    text: str,
    *,
    manuscript: str | None = None,
    prior: Mapping[str, Mapping[str, Any]] | None = None,
    workspace: Mapping[str, Any] | None = None,
    custom_instructions: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Assemble template variables for one stage call.

    `prior` maps stage ids to the payloads of stages that already ran; each is
    exposed both as an object (``prior.extraction.characters``) and as
    pre-rendered JSON (``prior_json.extraction``) for embedding verbatim.
    """
    prior = dict(prior or {})
    ctx: dict[str, Any] = {
        "text": text,
        "manuscript": manuscript or "",
        "prior": prior,
        "prior_json": {k: json.dumps(v, indent=2, default=str) for k, v in prior.items()},
        "has_prior": bool(prior),
        "ws": dict(workspace or {}),
        "ws_json": json.dumps(dict(workspace or {}), indent=2, default=str),
        "custom_instructions": custom_instructions or "",
    }
    ctx.update(extra)
    return ctx


# ── Default templates ────────────────────────────────────
#
# Triple-stash ({{{ }}}) everywhere: the generator must see raw text and JSON,
# not HTML-escaped entities.

_PREAMBLE = """\
{{#if manuscript}}Full manuscript for reference:
{{{manuscript}}}

{{/if}}{{#if ws.activeCharacters}}Characters already known in this story:
{{#each ws.activeCharacters}}- {{{this}}}
{{/each}}
{{/if}}{{#if ws.recentEvents}}Most recent events:
{{#last ws.recentEvents 5}}- {{{this}}}
{{/last}}
{{/if}}{{#if custom_instructions}}Additional instructions from the author:
{{{custom_instructions}}}

{{/if}}"""

_JSON_ONLY = "Respond with a single JSON object and nothing else. No markdown, no commentary."

CLASSIFICATION = _PREAMBLE + """\
Classify the following narrative text.

Text:
{{{text}}}

Return JSON with these keys:
  "genre": string
  "themes": [string]
  "tone": {"formality": string, "sentiment": string, "pacing": string}
  "narrativeStructure": {"type": string, "currentAct": number, "totalActs": number}
  "writingStyle": {"perspective": string, "tense": string, "voice": string}
  "mainConflict": string
  "setting": string
  "timePeriod": string

""" + _JSON_ONLY

EXTRACTION = _PREAMBLE + """\
Extract every character, location, object, event, relationship and plot
thread from the text below.

{{#if prior.classification}}Story classification:
{{{prior_json.classification}}}

{{/if}}Text:
{{{text}}}

Return JSON with these keys:
  "characters": [{"name", "role", "description", "aliases", "traits", "motivations", "status"}]
  "locations": [{"name", "type", "description", "significance", "containedIn"}]
  "objects": [{"name", "type", "description", "significance", "owner", "currentLocation"}]
  "events": [{"name", "description", "type", "participants", "location", "timestamp", "order", "causedBy", "effects"}]
  "relationships": [{"source", "target", "sourceType", "targetType", "type", "description", "sentiment", "strength"}]
  "plotThreads": [{"name", "description", "status", "relatedCharacters", "relatedEvents"}]

Refer to other entities by name. "sentiment" is one of positive, negative,
neutral, ambiguous; "strength" is between 0 and 1; "status" of a plot thread
is one of introduced, developing, climax, resolved, abandoned.

""" + _JSON_ONLY

TIMELINE = _PREAMBLE + """\
Reconstruct the chronology of the text below.

{{#if prior.extraction}}Entities and events already extracted:
{{{prior_json.extraction}}}

{{/if}}Text:
{{{text}}}

Return JSON with these keys:
  "chronologicalEvents": [{"name", "description", "order", "timestamp", "participants"}]
  "flashbacks": [{"eventId", "narrativePosition", "description"}]
  "flashForwards": [{"eventId", "narrativePosition", "description"}]
  "causalChains": [{"cause", "effects", "validated"}]
  "temporalIssues": [{"type", "description", "severity", "affectedEvents", "suggestion"}]
  "storyDuration": string
  "narrativePace": string

""" + _JSON_ONLY

VALIDATION = _PREAMBLE + """\
Check the text below for continuity problems: contradictions, characters in
two places at once, objects that appear without explanation, timeline errors.
Distinguish mistakes from intentional narrative choices.

{{#if prior.extraction}}Extracted entities:
{{{prior_json.extraction}}}

{{/if}}{{#if prior.timeline}}Timeline:
{{{prior_json.timeline}}}

{{/if}}Text:
{{{text}}}

Return JSON with these keys:
  "contradictions": [{"type", "description", "locations", "isIntentional"}]
  "intentionalChoices": [string]
  "errors": [{"type", "description", "severity", "suggestion"}]
  "warnings": [string]
  "continuityScore": number from 0 to 100
  "recommendations": [string]

""" + _JSON_ONLY

SUGGESTIONS = _PREAMBLE + """\
Suggest how the author could develop this story further.

{{#if has_prior}}What is known so far:
{{#each prior_json}}{{@key}}:
{{{this}}}

{{/each}}{{/if}}Text:
{{{text}}}

Return JSON with these keys:
  "sceneSuggestions": [{"title", "description", "placement", "characters", "purpose", "emotionalBeat"}]
  "plotDevelopments": [{"idea", "rationale", "impact", "relatedThreads"}]
  "dialogueImprovements": [{"original", "improved", "character", "context", "reason"}]
  "characterArcGuidance": [{"character", "currentStage", "nextSteps", "emotionalJourney", "potentialConflicts"}]
  "themeReinforcements": [string]
  "alternativeScenarios": [string]

""" + _JSON_ONLY

CHAPTER = """\
You are tracking a story chapter by chapter. This is chapter {{chapter_number}}.

Current story state:
{{{ws_json}}}

{{#if custom_instructions}}Additional instructions from the author:
{{{custom_instructions}}}

{{/if}}Chapter text:
{{{text}}}

Return JSON with these keys:
  "characters", "locations", "objects", "events", "relationships", "plotThreads"
      (same fields as a full extraction; refer to entities by name)
  "stateChanges": [{"entityName", "entityType", "attribute", "oldValue", "newValue", "reason"}]
  "temporalMarkers": [{"type", "description", "fromTime", "toTime", "affectedEvents"}]
  "summary": string
  "mood": string
  "tension": one of low, medium, high, critical

""" + _JSON_ONLY

DEFAULT_TEMPLATES: dict[str, str] = {
    "classification": CLASSIFICATION,
    "extraction": EXTRACTION,
    "timeline": TIMELINE,
    "validation": VALIDATION,
    "suggestions": SUGGESTIONS,
    "chapter": CHAPTER,
}
