"""JSON-LD export and import of a space's objects and relations."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from rool_sync.errors import ValidationError

JSONLD_CONTEXT = {"@vocab": "https://rool.dev/schema/", "id": "@id"}


@dataclass
class ImportedObject:
    id: str
    data: dict[str, Any]
    relations: list[tuple[str, str]] = field(default_factory=list)


def to_jsonld(state: dict[str, Any]) -> dict[str, Any]:
    """Export every object as a graph node.

    Relations become arrays of target ids. Dangling targets are dropped and
    empty relations are omitted.
    """
    objects = state.get("objects") or {}
    graph = []
    for entry in objects.values():
        node = copy.deepcopy(entry.get("data") or {})
        for relation, targets in (entry.get("links") or {}).items():
            existing = [target for target in targets if target in objects]
            if existing:
                node[relation] = existing
        graph.append(node)
    return {"@context": dict(JSONLD_CONTEXT), "@graph": graph}


def from_jsonld(document: Any) -> list[ImportedObject]:
    """Parse a JSON-LD document into objects and relation edges.

    A string array is a relation only when every value is the id of a node in
    the same graph; anything else stays in the object's data.

    Raises:
        ValidationError: not an object, no ``@graph`` list, or a node
            without an id.
    """
    if not isinstance(document, dict):
        raise ValidationError("Invalid JSON-LD: expected object")
    graph = document.get("@graph")
    if not isinstance(graph, list):
        raise ValidationError("Invalid JSON-LD: missing @graph array")

    nodes = [node for node in graph if isinstance(node, dict)]
    object_ids = {node["id"] for node in nodes if isinstance(node.get("id"), str) and node["id"]}

    parsed = []
    for node in nodes:
        object_id = node.get("id")
        if not isinstance(object_id, str) or not object_id:
            raise ValidationError("Invalid JSON-LD: object missing id")

        data: dict[str, Any] = {"id": object_id}
        relations: list[tuple[str, str]] = []
        for key, value in node.items():
            if key == "id" or key.startswith("@"):
                continue
            if (
                isinstance(value, list)
                and value
                and all(isinstance(item, str) and item in object_ids for item in value)
            ):
                relations.extend((key, target) for target in value)
            else:
                data[key] = copy.deepcopy(value)
        parsed.append(ImportedObject(id=object_id, data=data, relations=relations))
    return parsed
