"""In-memory narrative context, one per workspace.

A WorkspaceContext accumulates what the pipeline has learned about a story so
far (who is on stage, where we are, what just happened) so that later stages
and later chapters can be prompted with it. Contexts live only in memory and
are reclaimed when a workspace goes idle:

    store = ContextStore(ttl=3600, sweep_interval=600)
    ctx = store.get("my-novel")      # created on first use
    ctx.absorb(extraction)
    store.reset("my-novel")          # drop it; graph data is untouched

There is no background timer. Idle entries are swept on access, at most once
per `sweep_interval`.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from storyforge.models import ChapterAnalysis, Extraction, NamedEntity

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE = "default"
RECENT_EVENTS_LIMIT = 10

_CLOSED_PLOT_STATUSES = ("resolved", "abandoned")
_TIMELINE_BY_MARKER = {
    "flashback": "past",
    "flashforward": "future",
    "flash-forward": "future",
}


@dataclass
class VersionDiff:
    """Entity-level difference between the two latest versions of a chapter."""

    chapter_id: str
    from_version: int
    to_version: int
    additions: list[str] = field(default_factory=list)
    removals: list[str] = field(default_factory=list)
    modifications: list[str] = field(default_factory=list)


def _entity_map(analysis: ChapterAnalysis) -> dict[str, dict[str, Any]]:
    return {
        item.id: item.model_dump(exclude={"id"})
        for _, items in analysis.entities()
        for item in items
    }


@dataclass
class WorkspaceContext:
    workspace_id: str
    active_characters: list[str] = field(default_factory=list)
    current_location: str = ""
    current_timeline: str = "present"
    recent_events: list[str] = field(default_factory=list)
    open_plot_threads: list[str] = field(default_factory=list)
    mood: str = "neutral"
    tension: str = "low"
    registry: dict[str, NamedEntity] = field(default_factory=dict)
    versions: dict[str, list[ChapterAnalysis]] = field(default_factory=dict)
    last_accessed: float = 0.0

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def absorb(self, extraction: Extraction) -> None:
        """Fold one extraction result into the running context."""
        for _, items in extraction.entities():
            for item in items:
                if item.id:
                    self.registry[item.id] = item

        for char in extraction.characters:
            if char.name not in self.active_characters:
                self.active_characters.append(char.name)

        if extraction.locations:
            self.current_location = extraction.locations[-1].name

        for event in extraction.events:
            self.recent_events.append(event.name)
        self.recent_events = self.recent_events[-RECENT_EVENTS_LIMIT:]

        for plot in extraction.plot_threads:
            if plot.status in _CLOSED_PLOT_STATUSES:
                if plot.name in self.open_plot_threads:
                    self.open_plot_threads.remove(plot.name)
            elif plot.name not in self.open_plot_threads:
                self.open_plot_threads.append(plot.name)

    def record_chapter(self, analysis: ChapterAnalysis) -> int:
        """Append a new version of a chapter's analysis and absorb it.

        Returns the version number assigned.
        """
        history = self.versions.setdefault(analysis.chapter_id, [])
        analysis.version = len(history) + 1
        history.append(analysis)

        self.absorb(analysis)
        self.mood = analysis.mood or self.mood
        self.tension = analysis.tension
        for marker in analysis.temporal_markers:
            key = marker.type.strip().lower().replace("_", "")
            self.current_timeline = _TIMELINE_BY_MARKER.get(key, "present")
        return analysis.version

    def clear(self) -> None:
        self.active_characters.clear()
        self.current_location = ""
        self.current_timeline = "present"
        self.recent_events.clear()
        self.open_plot_threads.clear()
        self.mood = "neutral"
        self.tension = "low"
        self.registry.clear()
        self.versions.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def entity(self, entity_id: str) -> NamedEntity | None:
        return self.registry.get(entity_id)

    def entities(self) -> list[NamedEntity]:
        return list(self.registry.values())

    def version_count(self, chapter_id: str) -> int:
        return len(self.versions.get(chapter_id, []))

    def version_diff(self, chapter_id: str) -> VersionDiff | None:
        """Compare the two latest versions of a chapter, or None if fewer exist."""
        history = self.versions.get(chapter_id, [])
        if len(history) < 2:
            return None
        old, new = history[-2], history[-1]
        before, after = _entity_map(old), _entity_map(new)
        return VersionDiff(
            chapter_id=chapter_id,
            from_version=old.version,
            to_version=new.version,
            additions=sorted(after.keys() - before.keys()),
            removals=sorted(before.keys() - after.keys()),
            modifications=sorted(
                k for k in after.keys() & before.keys() if after[k] != before[k]
            ),
        )

    def summary(self) -> dict[str, Any]:
        """Prompt-ready view of the context."""
        return {
            "workspaceId": self.workspace_id,
            "activeCharacters": list(self.active_characters),
            "currentLocation": self.current_location,
            "currentTimeline": self.current_timeline,
            "recentEvents": list(self.recent_events),
            "openPlotThreads": list(self.open_plot_threads),
            "mood": self.mood,
            "tension": self.tension,
            "entityCount": len(self.registry),
            "chapters": {cid: len(v) for cid, v in self.versions.items()},
        }


class ContextStore:
    """Workspace-keyed WorkspaceContext registry with idle eviction.

    Args:
        ttl:            Seconds a context may sit unused before eviction.
        sweep_interval: Minimum seconds between two sweeps.
        clock:          Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        ttl: float = 3600.0,
        sweep_interval: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._contexts: dict[str, WorkspaceContext] = {}
        self._last_sweep = clock()

    def __contains__(self, workspace_id: object) -> bool:
        return workspace_id in self._contexts

    def __len__(self) -> int:
        return len(self._contexts)

    def workspaces(self) -> list[str]:
        return list(self._contexts)

    def get(self, workspace_id: str | None) -> WorkspaceContext:
        """Return the context for a workspace, creating it if needed."""
        key = workspace_id or DEFAULT_WORKSPACE
        now = self._clock()
        if now - self._last_sweep >= self._sweep_interval:
            self.sweep(force=True)

        ctx = self._contexts.get(key)
        if ctx is None:
            ctx = WorkspaceContext(workspace_id=key)
            self._contexts[key] = ctx
            logger.debug("created context for workspace %s", key)
        ctx.last_accessed = now
        return ctx

    def reset(self, workspace_id: str | None) -> bool:
        """Drop one workspace's context. Returns False if there was none."""
        key = workspace_id or DEFAULT_WORKSPACE
        ctx = self._contexts.pop(key, None)
        if ctx is None:
            return False
        ctx.clear()
        logger.info("reset context for workspace %s", key)
        return True

    def sweep(self, force: bool = False) -> list[str]:
        """Evict contexts idle longer than the TTL. Returns evicted ids.

        Without `force`, does nothing if the last sweep was too recent.
        """
        now = self._clock()
        if not force and now - self._last_sweep < self._sweep_interval:
            return []
        self._last_sweep = now
        expired = [
            key for key, ctx in self._contexts.items()
            if now - ctx.last_accessed > self._ttl
        ]
        for key in expired:
            self._contexts.pop(key).clear()
        if expired:
            logger.info("evicted %d idle workspace context(s): %s", len(expired), ", ".join(expired))
        return expired
