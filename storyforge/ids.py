"""Stable identifiers for story entities.

Ids are derived from (kind, name) so that re-extracting the same name inside a
workspace merges into the existing node instead of creating a duplicate.

    entity_id("Character", "Maya Chen")  → "char-maya-chen"
"""

import hashlib
import re
import unicodedata

ID_PREFIXES: dict[str, str] = {
    "Character": "char",
    "Location": "loc",
    "Object": "obj",
    "Event": "evt",
    "PlotThread": "plot",
}


def slugify(title: str) -> str:
    """Convert a name to a filesystem-safe slug.

    "The Cursed Tavern" → "the-cursed-tavern"
    """
    text = unicodedata.normalize("NFKD", title)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"['\"]", "", text)  # strip apostrophes/quotes before hyphenation
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")
    return text or "untitled"


def entity_id(kind: str, name: str) -> str:
    """Return the idempotent id for an entity of `kind` called `name`.

    Names that slugify to nothing (e.g. pure CJK) fall back to a short hash
    so distinct names keep distinct ids.
    """
    prefix = ID_PREFIXES.get(kind, kind.lower())
    slug = slugify(name.strip())
    if slug == "untitled" and name.strip().lower() != "untitled":
        slug = hashlib.sha1(name.strip().lower().encode("utf-8")).hexdigest()[:10]
    return f"{prefix}-{slug}"


def partition_name(workspace_id: str) -> str:
    """File stem for a workspace partition: readable slug plus a hash suffix.

    The hash keeps "My Story" and "my-story" in separate partitions.
    """
    digest = hashlib.sha1(workspace_id.encode("utf-8")).hexdigest()[:8]
    return f"{slugify(workspace_id)}-{digest}"


def chapter_id(chapter_number: int) -> str:
    return f"chapter-{chapter_number}"
