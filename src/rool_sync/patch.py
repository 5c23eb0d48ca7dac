"""RFC 6902 patch application over plain JSON values.

``apply_patch`` never mutates its input: the document is copied, every op is
applied to the copy, and the copy is returned. A failure anywhere leaves the
caller's document untouched.
"""

from __future__ import annotations

import copy
import json
from typing import Any, Callable, Iterable, Optional

from rool_sync.errors import PatchApplyFailure

VERSION_PATH = "/version"


def parse_pointer(path: str) -> list[str]:
    """Split a JSON pointer into unescaped reference tokens."""
    if path == "":
        return []
    if not path.startswith("/"):
        raise PatchApplyFailure(f"Invalid JSON pointer: {path!r}")
    return [token.replace("~1", "/").replace("~0", "~") for token in path[1:].split("/")]


def _list_index(container: list, token: str, allow_end: bool) -> int:
    if token == "-" and allow_end:
        return len(container)
    if not token.isdigit() or (len(token) > 1 and token.startswith("0")):
        raise PatchApplyFailure(f"Invalid array index: {token!r}")
    index = int(token)
    limit = len(container) if allow_end else len(container) - 1
    if index > limit:
        raise PatchApplyFailure(f"Array index out of range: {index}")
    return index


def _get(doc: Any, tokens: list[str]) -> Any:
    current = doc
    for token in tokens:
        if isinstance(current, dict):
            if token not in current:
                raise PatchApplyFailure(f"Path not found: /{'/'.join(tokens)}")
            current = current[token]
        elif isinstance(current, list):
            current = current[_list_index(current, token, allow_end=False)]
        else:
            raise PatchApplyFailure(f"Cannot traverse into scalar at {token!r}")
    return current


def lookup(doc: Any, path: str) -> Any:
    """Resolve ``path`` leniently. Returns ``None`` when anything is missing."""
    try:
        return _get(doc, parse_pointer(path))
    except PatchApplyFailure:
        return None


def _exists(doc: Any, path: str) -> tuple[bool, Any]:
    try:
        return True, _get(doc, parse_pointer(path))
    except PatchApplyFailure:
        return False, None


def _add(doc: Any, tokens: list[str], value: Any) -> Any:
    if not tokens:
        return value
    parent = _get(doc, tokens[:-1])
    key = tokens[-1]
    if isinstance(parent, dict):
        parent[key] = value
    elif isinstance(parent, list):
        parent.insert(_list_index(parent, key, allow_end=True), value)
    else:
        raise PatchApplyFailure(f"Cannot add to scalar at {key!r}")
    return doc


def _remove(doc: Any, tokens: list[str]) -> tuple[Any, Any]:
    if not tokens:
        raise PatchApplyFailure("Cannot remove the document root")
    parent = _get(doc, tokens[:-1])
    key = tokens[-1]
    if isinstance(parent, dict):
        if key not in parent:
            raise PatchApplyFailure(f"Path not found: /{'/'.join(tokens)}")
        return doc, parent.pop(key)
    if isinstance(parent, list):
        return doc, parent.pop(_list_index(parent, key, allow_end=False))
    raise PatchApplyFailure(f"Cannot remove from scalar at {key!r}")


def _replace(doc: Any, tokens: list[str], value: Any) -> Any:
    if not tokens:
        return value
    parent = _get(doc, tokens[:-1])
    key = tokens[-1]
    if isinstance(parent, dict):
        if key not in parent:
            raise PatchApplyFailure(f"Path not found: /{'/'.join(tokens)}")
        parent[key] = value
    elif isinstance(parent, list):
        parent[_list_index(parent, key, allow_end=False)] = value
    else:
        raise PatchApplyFailure(f"Cannot replace in scalar at {key!r}")
    return doc


def _apply_op(doc: Any, op: dict[str, Any]) -> Any:
    name = op.get("op")
    path = op.get("path")
    if not isinstance(path, str):
        raise PatchApplyFailure(f"Operation has no path: {op!r}")
    tokens = parse_pointer(path)

    if name in ("add", "replace", "test") and "value" not in op:
        raise PatchApplyFailure(f"{name} operation at {path} has no value")

    if name == "add":
        return _add(doc, tokens, copy.deepcopy(op["value"]))
    if name == "remove":
        return _remove(doc, tokens)[0]
    if name == "replace":
        return _replace(doc, tokens, copy.deepcopy(op["value"]))
    if name in ("move", "copy"):
        source = op.get("from")
        if not isinstance(source, str):
            raise PatchApplyFailure(f"{name} operation at {path} has no from")
        from_tokens = parse_pointer(source)
        if name == "move":
            if tokens[: len(from_tokens)] == from_tokens and tokens != from_tokens:
                raise PatchApplyFailure(f"Cannot move {source} into its own child {path}")
            doc, value = _remove(doc, from_tokens)
        else:
            value = copy.deepcopy(_get(doc, from_tokens))
        return _add(doc, tokens, value)
    if name == "test":
        if not json_equal(_get(doc, tokens), op["value"]):
            raise PatchApplyFailure(f"Test failed at {path}")
        return doc
    raise PatchApplyFailure(f"Unknown patch operation: {name!r}")


def apply_patch(doc: Any, ops: Iterable[dict[str, Any]]) -> Any:
    """Return a new document with every op applied.

    Raises:
        PatchApplyFailure: any op is malformed or does not fit the document.
    """
    result = copy.deepcopy(doc)
    for op in ops:
        if not isinstance(op, dict):
            raise PatchApplyFailure(f"Operation is not an object: {op!r}")
        result = _apply_op(result, op)
    return result


def json_equal(left: Any, right: Any) -> bool:
    """Compare as serialized JSON so ``True`` and ``1`` stay distinct."""
    return json.dumps(left, sort_keys=True, default=str) == json.dumps(
        right, sort_keys=True, default=str
    )


def extract_version(ops: Iterable[dict[str, Any]]) -> Optional[int]:
    """Version carried by an ``add``/``replace`` at ``/version``, if any."""
    for op in ops:
        if op.get("path") == VERSION_PATH and op.get("op") in ("add", "replace"):
            value = op.get("value")
            if isinstance(value, int) and not isinstance(value, bool):
                return value
            raise PatchApplyFailure(f"Invalid version value: {value!r}")
    return None


def patch_changes_anything(doc: Any, ops: Iterable[dict[str, Any]]) -> bool:
    """True when at least one content op would alter ``doc``.

    The version op is ignored, so a patch that only confirms an already
    applied local write reports no change.
    """
    for op in ops:
        path = op.get("path")
        if not isinstance(path, str) or path == VERSION_PATH:
            continue
        name = op.get("op")
        present, current = _exists(doc, path)
        if name == "remove":
            if present:
                return True
        elif name in ("add", "replace"):
            if not present or not json_equal(current, op.get("value")):
                return True
        elif name in ("move", "copy"):
            source = op.get("from")
            if not isinstance(source, str):
                return True
            _, incoming = _exists(doc, source)
            if name == "move" or not present or not json_equal(current, incoming):
                return True
    return False


def without_duplicate_adds(
    doc: Any, ops: list[dict[str, Any]], is_set: Callable[[list[str]], bool]
) -> list[dict[str, Any]]:
    """Drop ``add`` ops that insert a value already held by a set-like list.

    ``is_set`` receives the pointer tokens of the list being added to. Ops
    are tracked against a working copy so earlier ops in the same patch
    count. Once an op does not fit, the rest is returned unfiltered and
    ``apply_patch`` reports the failure.
    """
    working = copy.deepcopy(doc)
    kept: list[dict[str, Any]] = []
    for index, op in enumerate(ops):
        if not isinstance(op, dict):
            return kept + list(ops[index:])
        if op.get("op") == "add" and isinstance(op.get("path"), str) and "value" in op:
            try:
                tokens = parse_pointer(op["path"])
            except PatchApplyFailure:
                tokens = []
            if len(tokens) >= 2 and is_set(tokens[:-1]):
                try:
                    container = _get(working, tokens[:-1])
                except PatchApplyFailure:
                    container = None
                if isinstance(container, list) and any(
                    json_equal(item, op["value"]) for item in container
                ):
                    continue
        kept.append(op)
        try:
            working = _apply_op(working, op)
        except PatchApplyFailure:
            return kept + list(ops[index + 1:])
    return kept
