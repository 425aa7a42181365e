"""Operator descriptor trees and workflow documents."""

from __future__ import annotations

import copy
import json
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from jsonschema import ValidationError

from geoquery import contracts
from geoquery.engine.types import OutputType
from geoquery.errors import ParseError

WORKFLOW_NAMESPACE = uuid.UUID("0f6b7c3e-54a5-4f0e-9a3c-2d6f1c0b8e71")


def canonical_json(payload: Any) -> str:
    """Serialize a JSON-like value deterministically."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


@dataclass(frozen=True, eq=False)
class OperatorDescriptor:
    """Serialized operator node: tag, opaque params, ordered children."""

    tag: str
    params: Mapping[str, Any] = field(default_factory=dict)
    children: tuple["OperatorDescriptor", ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", MappingProxyType(copy.deepcopy(dict(self.params))))
        object.__setattr__(self, "children", tuple(self.children))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.tag, "params": copy.deepcopy(dict(self.params))}
        if self.children:
            payload["children"] = [child.to_dict() for child in self.children]
        return payload

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OperatorDescriptor):
            return NotImplemented
        return canonical_json(self.to_dict()) == canonical_json(other.to_dict())

    def __hash__(self) -> int:
        return hash(canonical_json(self.to_dict()))

    def walk(self) -> list["OperatorDescriptor"]:
        """Return this node and all descendants in pre-order."""
        nodes = [self]
        for child in self.children:
            nodes.extend(child.walk())
        return nodes


@dataclass(frozen=True)
class Workflow:
    """A typed operator tree with a content-derived id."""

    output_type: OutputType
    operator: OperatorDescriptor

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.output_type.value, "operator": self.operator.to_dict()}

    @property
    def workflow_id(self) -> str:
        return str(uuid.uuid5(WORKFLOW_NAMESPACE, canonical_json(self.to_dict())))


def _node_path(parent: str, index: int | None, tag: object) -> str:
    label = tag if isinstance(tag, str) and tag else "?"
    if index is None:
        return str(label)
    return f"{parent}/{index}:{label}"


def _parse_node(raw: Any, path: str, seen: set[int]) -> OperatorDescriptor:
    if not isinstance(raw, Mapping):
        raise ParseError("Operator must be an object", operator_path=path)
    if id(raw) in seen:
        raise ParseError("Operator subtree is shared or cyclic", operator_path=path)
    seen.add(id(raw))

    unknown = set(raw) - {"type", "params", "children"}
    if unknown:
        raise ParseError(
            f"Unexpected operator keys: {', '.join(sorted(map(str, unknown)))}",
            operator_path=path,
        )
    tag = raw.get("type")
    if not isinstance(tag, str) or not tag:
        raise ParseError("Operator requires a non-empty 'type' string", operator_path=path)
    params = raw.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, Mapping):
        raise ParseError("Operator 'params' must be an object", operator_path=path)
    raw_children = raw.get("children", [])
    if raw_children is None:
        raw_children = []
    if not isinstance(raw_children, (list, tuple)):
        raise ParseError("Operator 'children' must be a list", operator_path=path)

    children = tuple(
        _parse_node(child, _node_path(path, index, child.get("type") if isinstance(child, Mapping) else None), seen)
        for index, child in enumerate(raw_children)
    )
    return OperatorDescriptor(tag=tag, params=params, children=children)


def parse(raw: Any) -> OperatorDescriptor:
    """Parse a raw operator mapping into a descriptor tree."""
    tag = raw.get("type") if isinstance(raw, Mapping) else None
    return _parse_node(raw, _node_path("", None, tag), set())


def parse_workflow(raw: Any) -> Workflow:
    """Parse a workflow document from JSON text or a mapping."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Workflow is not valid JSON: {exc.msg}") from exc
    if not isinstance(raw, Mapping):
        raise ParseError("Workflow must be a JSON object")
    if "operator" not in raw:
        raise ParseError("Workflow requires an 'operator' object")
    operator = parse(raw["operator"])
    document = dict(raw)
    document["operator"] = operator.to_dict()
    try:
        contracts.validate_workflow(document)
    except ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise ParseError(f"Workflow document invalid at {location}: {exc.message}") from exc
    return Workflow(output_type=OutputType.parse(raw["type"]), operator=operator)


def workflow_id(raw: Any) -> str:
    """Return the content-derived id of a raw workflow document."""
    return parse_workflow(raw).workflow_id
