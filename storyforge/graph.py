"""Temporal knowledge graph, persisted as JSON files.

Each workspace is a separate partition: one JSON document holding its nodes
and edges. Nothing is shared across partitions, so a read for one workspace
can never return another workspace's data.

Directory layout:

    {data_dir}/
      graph/
        {slug}-{hash}.json     ← one partition per workspace

Entities are merged by id: writing "Maya Chen" twice updates one Character
node. Every write also appends a StateSnapshot node linked by HAS_STATE, so
an entity's history is never overwritten:

    char-maya-chen ─HAS_STATE→ char-maya-chen#v1
                   ─HAS_STATE→ char-maya-chen#v2

Chapter analyses add a Chapter node; the entities they mention point at it
with APPEARS_IN (events with OCCURS_IN), so the partition can answer "what
is in chapter 3" long after the in-memory context has expired.

A partition file that is not a well-formed graph document raises ValueError
on load. It is never silently treated as empty and overwritten.

File access is serialised with a process-local lock. Callers that must not
block the event loop run writes in a worker thread.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from storyforge.ids import chapter_id, entity_id, partition_name
from storyforge.models import (
    AttributeChange,
    ChapterAnalysis,
    EntityKind,
    Extraction,
    StateChange,
    StateSnapshot,
    utcnow,
)

logger = logging.getLogger(__name__)

NodeKind = Literal[
    "Character",
    "Location",
    "Object",
    "Event",
    "PlotThread",
    "Chapter",
    "Workspace",
    "StateSnapshot",
]
EdgeKind = Literal[
    "BELONGS_TO",
    "HAS_STATE",
    "OWNS",
    "CONTAINED_IN",
    "AT",
    "INVOLVES",
    "CAUSES",
    "ADVANCES",
    "INCLUDES",
    "RELATES_TO",
    "APPEARS_IN",
    "OCCURS_IN",
]


class GraphNode(BaseModel):
    id: str
    kind: NodeKind
    workspace_id: str
    properties: dict[str, Any] = Field(default_factory=dict)


class GraphEdge(BaseModel):
    source: str
    target: str
    kind: EdgeKind
    workspace_id: str
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str, str, str]:
        # parallel RELATES_TO edges are distinguished by relationship type
        return (self.source, self.kind, self.target, str(self.properties.get("type", "")))


class GraphData(BaseModel):
    workspace_id: str
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)

    def nodes_of(self, kind: NodeKind) -> list[GraphNode]:
        return [n for n in self.nodes if n.kind == kind]

    def edges_of(self, kind: EdgeKind) -> list[GraphEdge]:
        return [e for e in self.edges if e.kind == kind]

    def node(self, node_id: str) -> GraphNode | None:
        return next((n for n in self.nodes if n.id == node_id), None)


class WriteSummary(BaseModel):
    nodes_created: int = 0
    nodes_updated: int = 0
    edges_written: int = 0
    snapshots: int = 0
    skipped_refs: list[str] = Field(default_factory=list)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def workspace_node_id(workspace_id: str) -> str:
    return f"workspace:{workspace_id}"


def snapshot_node_id(entity: str, version: int) -> str:
    return f"{entity}#v{version}"


# ---------------------------------------------------------------------------
# Partition: one workspace's document, loaded for the duration of a call
# ---------------------------------------------------------------------------

class _Partition:
    def __init__(self, workspace_id: str, data: Any = None) -> None:
        self.workspace_id = workspace_id
        self.nodes: dict[str, GraphNode] = {}
        self.edges: dict[tuple, GraphEdge] = {}
        self.summary = WriteSummary()
        if data is None:
            return
        if not isinstance(data, dict):
            raise ValueError(
                f"graph partition for {workspace_id!r} is not a JSON object "
                f"(got {type(data).__name__})"
            )
        raw_nodes = data.get("nodes", [])
        raw_edges = data.get("edges", [])
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise ValueError(f"graph partition for {workspace_id!r} has malformed nodes/edges")
        try:
            for raw in raw_nodes:
                node = GraphNode.model_validate(raw)
                self.nodes[node.id] = node
            for raw in raw_edges:
                edge = GraphEdge.model_validate(raw)
                self.edges[edge.key] = edge
        except ValidationError as e:
            raise ValueError(
                f"graph partition for {workspace_id!r} is corrupted: "
                f"{e.error_count()} invalid field(s)"
            ) from e

    def dump(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "nodes": [n.model_dump(mode="json") for n in self.nodes.values()],
            "edges": [e.model_dump(mode="json") for e in self.edges.values()],
        }

    def ensure_workspace(self) -> str:
        ws_id = workspace_node_id(self.workspace_id)
        if ws_id not in self.nodes:
            self.nodes[ws_id] = GraphNode(
                id=ws_id,
                kind="Workspace",
                workspace_id=self.workspace_id,
                properties={"createdAt": utcnow().isoformat()},
            )
        return ws_id

    def record_chapter(self, analysis: ChapterAnalysis) -> str:
        """Create or refresh the Chapter node for an analysis; return its id."""
        node_id = analysis.chapter_id or chapter_id(analysis.chapter_number)
        props = {
            "number": analysis.chapter_number,
            "version": analysis.version,
            "summary": analysis.summary,
            "mood": analysis.mood,
            "tension": analysis.tension,
            "timestamp": analysis.timestamp.isoformat(),
        }
        node = self.nodes.get(node_id)
        if node is None:
            self.nodes[node_id] = GraphNode(
                id=node_id, kind="Chapter", workspace_id=self.workspace_id, properties=props
            )
            self.summary.nodes_created += 1
        else:
            node.properties.update(props)
            self.summary.nodes_updated += 1
        self.link(node_id, self.ensure_workspace(), "BELONGS_TO")
        return node_id

    def versions(self, node_id: str) -> int:
        return sum(
            1 for e in self.edges.values() if e.kind == "HAS_STATE" and e.source == node_id
        )

    def snapshot(
        self,
        node_id: str,
        kind: EntityKind,
        changes: list[AttributeChange],
        source: str | None,
        reason: str | None = None,
    ) -> StateSnapshot:
        version = self.versions(node_id) + 1
        snap = StateSnapshot(
            id=snapshot_node_id(node_id, version),
            entity_id=node_id,
            entity_kind=kind,
            workspace_id=self.workspace_id,
            version=version,
            changes=tuple(changes),
            source=source,
            reason=reason,
        )
        self.nodes[snap.id] = GraphNode(
            id=snap.id,
            kind="StateSnapshot",
            workspace_id=self.workspace_id,
            properties=snap.model_dump(mode="json"),
        )
        self.link(node_id, snap.id, "HAS_STATE", {"version": version})
        self.summary.snapshots += 1
        return snap

    def upsert(
        self, kind: EntityKind, node_id: str, props: dict[str, Any], source: str | None
    ) -> None:
        """Merge `props` into the node; append a snapshot of what changed."""
        existing = self.nodes.get(node_id)
        changes: list[AttributeChange] = []
        if existing is None:
            clean = {k: v for k, v in props.items() if not _is_empty(v)}
            self.nodes[node_id] = GraphNode(
                id=node_id, kind=kind, workspace_id=self.workspace_id, properties=clean
            )
            changes = [AttributeChange(attribute=k, new_value=v) for k, v in clean.items()]
            self.summary.nodes_created += 1
        else:
            for key, value in props.items():
                if _is_empty(value):
                    continue
                old = existing.properties.get(key)
                if old != value:
                    changes.append(AttributeChange(attribute=key, old_value=old, new_value=value))
                    existing.properties[key] = value
            self.summary.nodes_updated += 1

        self.link(node_id, self.ensure_workspace(), "BELONGS_TO")
        self.snapshot(node_id, kind, changes, source)

    def resolve(self, ref: str, kind: EntityKind) -> str | None:
        """Find the node a reference (id or name) points at, within this partition."""
        if not ref:
            return None
        node = self.nodes.get(ref)
        if node is not None and node.kind == kind:
            return ref
        candidate = entity_id(kind, ref)
        if candidate in self.nodes:
            return candidate
        return None

    def link(
        self,
        source: str,
        target: str,
        kind: EdgeKind,
        properties: dict[str, Any] | None = None,
    ) -> None:
        edge = GraphEdge(
            source=source,
            target=target,
            kind=kind,
            workspace_id=self.workspace_id,
            properties=properties or {},
        )
        self.edges[edge.key] = edge
        self.summary.edges_written += 1

    def link_ref(
        self,
        source: str,
        ref: str,
        target_kind: EntityKind,
        kind: EdgeKind,
        *,
        reverse: bool = False,
    ) -> None:
        """Link `source` to the node `ref` resolves to; skip it if unresolved."""
        if not ref:
            return
        target = self.resolve(ref, target_kind)
        if target is None:
            self.summary.skipped_refs.append(ref)
            logger.debug("skipping unresolved %s reference %r from %s", kind, ref, source)
            return
        if reverse:
            self.link(target, source, kind)
        else:
            self.link(source, target, kind)


# ---------------------------------------------------------------------------
# GraphStore
# ---------------------------------------------------------------------------

class GraphStore:
    def __init__(self, data_dir: Path) -> None:
        self._root = Path(data_dir) / "graph"
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _path(self, workspace_id: str) -> Path:
        return self._root / f"{partition_name(workspace_id)}.json"

    def _load(self, workspace_id: str) -> _Partition:
        path = self._path(workspace_id)
        if not path.exists():
            return _Partition(workspace_id)
        return _Partition(workspace_id, json.loads(path.read_text(encoding="utf-8")))

    def _save(self, part: _Partition) -> None:
        path = self._path(part.workspace_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(part.dump(), indent=2), encoding="utf-8")
        tmp.replace(path)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(
        self, extraction: Extraction, workspace_id: str, *, source: str | None = None
    ) -> WriteSummary:
        """Merge an extraction result into the workspace's partition.

        Entities must already carry their stable ids (Extraction.assign_ids).
        References that do not resolve inside this workspace are skipped and
        listed in the returned summary.
        """
        with self._lock:
            part = self._load(workspace_id)
            part.ensure_workspace()

            chapter = None
            if isinstance(extraction, ChapterAnalysis) and extraction.chapter_number > 0:
                chapter = part.record_chapter(extraction)

            for kind, items in extraction.entities():
                for item in items:
                    node_id = item.id or entity_id(kind, item.name)
                    props = item.model_dump(by_alias=True, exclude={"id"})
                    part.upsert(kind, node_id, props, source)
                    if chapter is not None:
                        part.link(
                            node_id,
                            chapter,
                            "OCCURS_IN" if kind == "Event" else "APPEARS_IN",
                            {"version": extraction.version},
                        )

            for loc in extraction.locations:
                part.link_ref(loc.id, loc.contained_in, "Location", "CONTAINED_IN")
            for obj in extraction.objects:
                part.link_ref(obj.id, obj.owner, "Character", "OWNS", reverse=True)
                part.link_ref(obj.id, obj.current_location, "Location", "AT")
            for evt in extraction.events:
                for ref in evt.participants:
                    part.link_ref(evt.id, ref, "Character", "INVOLVES")
                part.link_ref(evt.id, evt.location, "Location", "AT")
                for ref in evt.caused_by:
                    part.link_ref(evt.id, ref, "Event", "CAUSES", reverse=True)
            for plot in extraction.plot_threads:
                for ref in plot.related_characters:
                    part.link_ref(plot.id, ref, "Character", "INCLUDES")
                for ref in plot.related_events:
                    part.link_ref(plot.id, ref, "Event", "ADVANCES", reverse=True)

            for rel in extraction.relationships:
                src = part.resolve(rel.source, rel.source_type)
                tgt = part.resolve(rel.target, rel.target_type)
                if src is None or tgt is None:
                    part.summary.skipped_refs.append(rel.source if src is None else rel.target)
                    logger.debug("skipping relationship %s: unresolved endpoint", rel.id)
                    continue
                part.link(src, tgt, "RELATES_TO", {
                    "id": rel.id,
                    "type": rel.type,
                    "description": rel.description,
                    "sentiment": rel.sentiment,
                    "strength": rel.strength,
                })

            self._save(part)

        summary = part.summary
        logger.info(
            "graph write workspace=%s created=%d updated=%d edges=%d snapshots=%d skipped=%d",
            workspace_id, summary.nodes_created, summary.nodes_updated,
            summary.edges_written, summary.snapshots, len(summary.skipped_refs),
        )
        return summary

    def append_state_changes(
        self,
        changes: list[StateChange],
        workspace_id: str,
        *,
        source: str | None = None,
    ) -> WriteSummary:
        """Record one snapshot per state change on an existing entity."""
        with self._lock:
            part = self._load(workspace_id)
            for change in changes:
                node_id = part.resolve(change.entity_name, change.entity_type)
                if node_id is None:
                    part.summary.skipped_refs.append(change.entity_name)
                    continue
                node = part.nodes[node_id]
                old = change.old_value or node.properties.get(change.attribute)
                node.properties[change.attribute] = change.new_value
                part.snapshot(
                    node_id,
                    change.entity_type,
                    [AttributeChange(
                        attribute=change.attribute, old_value=old, new_value=change.new_value
                    )],
                    source,
                    reason=change.reason or None,
                )
            if part.summary.snapshots:
                self._save(part)

        logger.info(
            "recorded %d state change(s) for workspace=%s, skipped %d",
            part.summary.snapshots, workspace_id, len(part.summary.skipped_refs),
        )
        return part.summary

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, workspace_id: str, *, include_states: bool = True) -> GraphData:
        """Return the workspace's subgraph; empty if the workspace is unknown."""
        with self._lock:
            part = self._load(workspace_id)
        nodes = [
            n for n in part.nodes.values()
            if n.workspace_id == workspace_id
            and (include_states or n.kind != "StateSnapshot")
        ]
        edges = [
            e for e in part.edges.values()
            if e.workspace_id == workspace_id
            and (include_states or e.kind != "HAS_STATE")
        ]
        return GraphData(workspace_id=workspace_id, nodes=nodes, edges=edges)

    def timeline(self, entity: str, workspace_id: str) -> list[StateSnapshot]:
        """An entity's snapshots in version order."""
        with self._lock:
            part = self._load(workspace_id)
        snaps = [
            StateSnapshot.model_validate(part.nodes[e.target].properties)
            for e in part.edges.values()
            if e.kind == "HAS_STATE" and e.source == entity and e.target in part.nodes
        ]
        return sorted(snaps, key=lambda s: s.version)

    def chapters(self, workspace_id: str) -> list[GraphNode]:
        """The workspace's Chapter nodes, ordered by chapter number."""
        with self._lock:
            part = self._load(workspace_id)
        found = [n for n in part.nodes.values() if n.kind == "Chapter"]
        return sorted(found, key=lambda n: n.properties.get("number", 0))

    def read_chapter(self, workspace_id: str, chapter_number: int) -> GraphData:
        """The subgraph of one chapter.

        Holds the Chapter node, every entity that appears in it, and the edges
        between them. Snapshots are left out; use timeline() for history.
        Empty if the chapter was never written.
        """
        with self._lock:
            part = self._load(workspace_id)
        cid = chapter_id(chapter_number)
        if cid not in part.nodes:
            return GraphData(workspace_id=workspace_id)

        members = {cid} | {
            e.source for e in part.edges.values()
            if e.target == cid and e.kind in ("APPEARS_IN", "OCCURS_IN")
        }
        nodes = [part.nodes[i] for i in members if i in part.nodes]
        edges = [
            e for e in part.edges.values()
            if e.source in members and e.target in members
        ]
        return GraphData(
            workspace_id=workspace_id,
            nodes=sorted(nodes, key=lambda n: n.id),
            edges=edges,
        )

    def workspaces(self) -> list[str]:
        with self._lock:
            found = []
            for path in sorted(self._root.glob("*.json")):
                data = json.loads(path.read_text(encoding="utf-8"))
                if not isinstance(data, dict) or "workspace_id" not in data:
                    logger.warning("ignoring malformed graph partition %s", path.name)
                    continue
                found.append(data["workspace_id"])
        return found

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def clear(self, workspace_id: str | None = None) -> int:
        """Delete one workspace's partition, or every partition if None.

        Returns the number of partitions removed.
        """
        with self._lock:
            if workspace_id is not None:
                paths = [self._path(workspace_id)]
            else:
                paths = list(self._root.glob("*.json"))
            removed = 0
            for path in paths:
                if path.exists():
                    path.unlink()
                    removed += 1
        logger.info("cleared %d graph partition(s)", removed)
        return removed
