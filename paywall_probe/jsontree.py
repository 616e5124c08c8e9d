"""
Structured-data walker.

Parsed JSON is converted into a tagged tree before it is searched, so the
search never depends on what Python happens to put in a payload and the depth
bound is an explicit parameter.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Optional, Pattern, Tuple, Union

DEFAULT_MAX_DEPTH = 5
DEFAULT_MAX_NODES = 10_000


class NodeKind(Enum):
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    SEQUENCE = "sequence"
    MAPPING = "mapping"


@dataclass(frozen=True)
class JsonNode:
    """One node of a JSON document. Containers keep source order."""
    kind: NodeKind
    value: Any = None
    items: Tuple["JsonNode", ...] = ()
    entries: Tuple[Tuple[str, "JsonNode"], ...] = ()

    @classmethod
    def from_python(cls, obj: Any) -> "JsonNode":
        """Convert decoded JSON. Self-referential input raises ValueError."""
        return _convert(obj, set())

    def to_python(self) -> Any:
        if self.kind is NodeKind.SEQUENCE:
            return [item.to_python() for item in self.items]
        if self.kind is NodeKind.MAPPING:
            return {key: child.to_python() for key, child in self.entries}
        return self.value

    @property
    def is_container(self) -> bool:
        return self.kind in (NodeKind.SEQUENCE, NodeKind.MAPPING)

    def keys(self) -> Tuple[str, ...]:
        return tuple(key for key, _ in self.entries)

    def get(self, key: str) -> Optional["JsonNode"]:
        for name, child in self.entries:
            if name == key:
                return child
        return None


def _convert(obj: Any, path: set) -> JsonNode:
    if obj is None:
        return JsonNode(NodeKind.NULL)
    if isinstance(obj, bool):
        return JsonNode(NodeKind.BOOL, obj)
    if isinstance(obj, (int, float)):
        return JsonNode(NodeKind.NUMBER, obj)
    if isinstance(obj, str):
        return JsonNode(NodeKind.STRING, obj)

    if isinstance(obj, (list, tuple, dict)):
        marker = id(obj)
        if marker in path:
            raise ValueError("self-referential structure")
        path.add(marker)
        try:
            if isinstance(obj, dict):
                entries = tuple((str(k), _convert(v, path)) for k, v in obj.items())
                return JsonNode(NodeKind.MAPPING, entries=entries)
            return JsonNode(NodeKind.SEQUENCE, items=tuple(_convert(v, path) for v in obj))
        finally:
            path.discard(marker)

    raise TypeError(f"unsupported JSON value: {type(obj).__name__}")


def parse_json(text: Union[str, bytes]) -> JsonNode:
    """Parse JSON text into a tree. Raises ValueError on malformed input."""
    try:
        return JsonNode.from_python(json.loads(text))
    except RecursionError as e:
        raise ValueError("JSON nested too deeply") from e


def iter_matches(
    node: JsonNode,
    pattern: Union[str, Pattern],
    max_depth: int = DEFAULT_MAX_DEPTH,
    max_nodes: int = DEFAULT_MAX_NODES,
) -> Iterator[JsonNode]:
    """
    Pre-order depth-first walk yielding every value whose key matches `pattern`.

    A key is tested on its own and as `parent.key`, so `content\\.rendered`
    reaches the rendered body inside a `content` mapping. The root is depth 0.
    Nodes deeper than `max_depth` are not explored, and the walk stops after
    visiting `max_nodes` nodes.
    """
    if isinstance(pattern, str):
        pattern = re.compile(pattern)

    budget = [max_nodes]

    def walk(current: JsonNode, depth: int, parent: Optional[str]) -> Iterator[JsonNode]:
        if depth > max_depth or budget[0] <= 0:
            return
        budget[0] -= 1

        if current.kind is NodeKind.MAPPING:
            for key, child in current.entries:
                if budget[0] <= 0:
                    return
                if pattern.search(key) or (parent and pattern.search(f"{parent}.{key}")):
                    yield child
                yield from walk(child, depth + 1, key)
        elif current.kind is NodeKind.SEQUENCE:
            for child in current.items:
                if budget[0] <= 0:
                    return
                yield from walk(child, depth + 1, None)

    return walk(node, 0, None)


def find_key(
    node: JsonNode,
    pattern: Union[str, Pattern],
    max_depth: int = DEFAULT_MAX_DEPTH,
    max_nodes: int = DEFAULT_MAX_NODES,
) -> Optional[JsonNode]:
    """
    Depth-first search for the first value whose key matches `pattern`.

    Returns None when nothing matches within the depth and node bounds.
    """
    return next(iter_matches(node, pattern, max_depth, max_nodes), None)


def find_text(
    node: JsonNode,
    pattern: Union[str, Pattern],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Optional[str]:
    """First non-empty string among the matches; other matches are skipped."""
    for found in iter_matches(node, pattern, max_depth=max_depth):
        if found.kind is NodeKind.STRING and found.value.strip():
            return found.value
    return None
