"""Template reference parsing, static analysis and run-time resolution.

A reference has the form ``{{ slug.path.to.field }}``. The slug names a node
in the same flow; the path walks that node's clean output, where numeric
segments index into lists (``items.0.name``). Parsing is purely lexical.
"""

from __future__ import annotations

import json
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

import networkx as nx
from pydantic import BaseModel

from flowcore.core.errors import MissingReferenceError
from flowcore.core.models import Flow, NodeInstance

TEMPLATE_PATTERN = re.compile(
    r"(?P<open>\{\{\s*)"
    r"(?P<slug>[a-z][a-z0-9_]*)"
    r"(?P<path>(?:\.[A-Za-z0-9_]+)*)"
    r"(?P<close>\s*\}\})"
)

# Run-time namespace for values supplied with the run rather than by a node
SECRETS_NAMESPACE = "secrets"


@dataclass(frozen=True)
class TemplateReference:
    """One parsed ``{{slug.path}}`` occurrence."""

    full_path: str  # "slug.a.b"
    node_slug: str
    field_path: str  # "a.b", empty for a whole-output reference
    raw: str  # Matched text including braces
    start: int
    end: int
    location: str = ""  # Dotted parameter path, set by extract_all_references

    @property
    def segments(self) -> list[str]:
        return self.field_path.split(".") if self.field_path else []


class NodeValidationError(BaseModel):
    """A reference problem found by static analysis."""

    node_id: str
    node_slug: str
    reference: str
    error_type: str  # unknown_node | self_reference | not_ancestor
    message: str


# ========== Parsing ==========


def parse_template_references(text: str) -> list[TemplateReference]:
    """Scan a string for references, de-duplicated by full path in first-seen order."""
    if not isinstance(text, str) or "{{" not in text:
        return []

    refs: list[TemplateReference] = []
    seen: set[str] = set()
    for match in TEMPLATE_PATTERN.finditer(text):
        slug = match.group("slug")
        field_path = match.group("path").lstrip(".")
        full_path = f"{slug}.{field_path}" if field_path else slug
        if full_path in seen:
            continue
        seen.add(full_path)
        refs.append(
            TemplateReference(
                full_path=full_path,
                node_slug=slug,
                field_path=field_path,
                raw=match.group(0),
                start=match.start(),
                end=match.end(),
            )
        )
    return refs


def has_template_references(text: Any) -> bool:
    return isinstance(text, str) and TEMPLATE_PATTERN.search(text) is not None


def extract_all_references(source: NodeInstance | BaseModel | Any) -> list[TemplateReference]:
    """Collect references from every string inside a node's parameters.

    Accepts a node, a parameter model, or any plain JSON-like value.
    """
    if isinstance(source, NodeInstance):
        value: Any = source.parameters_dict()
    elif isinstance(source, BaseModel):
        value = source.model_dump(mode="json")
    else:
        value = source

    refs: list[TemplateReference] = []

    def walk(item: Any, location: str) -> None:
        if isinstance(item, str):
            for ref in parse_template_references(item):
                refs.append(
                    TemplateReference(
                        full_path=ref.full_path,
                        node_slug=ref.node_slug,
                        field_path=ref.field_path,
                        raw=ref.raw,
                        start=ref.start,
                        end=ref.end,
                        location=location,
                    )
                )
        elif isinstance(item, dict):
            for key, child in item.items():
                walk(child, f"{location}.{key}" if location else str(key))
        elif isinstance(item, list):
            for index, child in enumerate(item):
                walk(child, f"{location}.{index}" if location else str(index))

    walk(value, "")
    return refs


def group_references_by_node(refs: list[TemplateReference]) -> dict[str, list[TemplateReference]]:
    grouped: dict[str, list[TemplateReference]] = defaultdict(list)
    for ref in refs:
        grouped[ref.node_slug].append(ref)
    return dict(grouped)


def get_referenced_node_slugs(source: str | list[TemplateReference]) -> set[str]:
    refs = parse_template_references(source) if isinstance(source, str) else source
    return {ref.node_slug for ref in refs}


# ========== Static validation ==========


def validate_node_references(flow: Flow) -> list[NodeValidationError]:
    """Check every reference in the flow against the explicit connection graph.

    A reference must name an existing node other than the referencing one,
    and that node must be an ancestor through explicit connections.
    """
    by_slug = {node.slug: node for node in flow.nodes}

    G = nx.DiGraph()
    G.add_nodes_from(node.id for node in flow.nodes)
    for conn in flow.connections:
        G.add_edge(conn.source_node_id, conn.target_node_id)

    errors: list[NodeValidationError] = []
    for node in flow.nodes:
        ancestors = nx.ancestors(G, node.id)
        reported: set[str] = set()
        for ref in extract_all_references(node):
            if ref.full_path in reported or ref.node_slug == SECRETS_NAMESPACE:
                continue
            target = by_slug.get(ref.node_slug)
            if target is None:
                error_type = "unknown_node"
                message = f"Reference '{{{{{ref.full_path}}}}}' names unknown node '{ref.node_slug}'"
            elif target.id == node.id:
                error_type = "self_reference"
                message = f"Node '{node.slug}' cannot reference its own output"
            elif target.id not in ancestors:
                error_type = "not_ancestor"
                message = (
                    f"Node '{node.slug}' references '{ref.node_slug}', "
                    f"which is not upstream of it"
                )
            else:
                continue
            reported.add(ref.full_path)
            errors.append(
                NodeValidationError(
                    node_id=node.id,
                    node_slug=node.slug,
                    reference=ref.full_path,
                    error_type=error_type,
                    message=message,
                )
            )
    return errors


# ========== Run-time resolution ==========


def resolve_reference(ref: TemplateReference, outputs: dict[str, Any]) -> Any:
    """Walk ``ref`` through the producer's clean output.

    ``outputs`` maps node slug to that node's clean output. Raises
    MissingReferenceError when the producer has not run or the path is absent.
    """
    if ref.node_slug not in outputs:
        raise MissingReferenceError(
            f"Reference '{{{{{ref.full_path}}}}}' points to node '{ref.node_slug}', "
            f"which has produced no output",
            node_slug=ref.node_slug,
            field_path=ref.field_path,
        )

    current = outputs[ref.node_slug]
    walked: list[str] = []
    for segment in ref.segments:
        walked.append(segment)
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise MissingReferenceError(
                f"Path '{'.'.join(walked)}' does not exist in the output of '{ref.node_slug}'",
                node_slug=ref.node_slug,
                field_path=ref.field_path,
            )
    return current


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)) or value is None:
        return json.dumps(value)
    return str(value)


def resolve_string(text: str, outputs: dict[str, Any]) -> Any:
    """Resolve references inside one string.

    A string that is exactly one reference yields the referenced value with
    its type intact. Otherwise every reference is interpolated as text.
    """
    if TEMPLATE_PATTERN.fullmatch(text):
        return resolve_reference(parse_template_references(text)[0], outputs)

    def replace(m: re.Match) -> str:
        ref = parse_template_references(m.group(0))[0]
        return _to_text(resolve_reference(ref, outputs))

    return TEMPLATE_PATTERN.sub(replace, text)


def resolve_value(value: Any, outputs: dict[str, Any]) -> Any:
    """Recursively resolve every reference inside a JSON-like value."""
    if isinstance(value, str):
        return resolve_string(value, outputs) if "{{" in value else value
    if isinstance(value, dict):
        return {key: resolve_value(child, outputs) for key, child in value.items()}
    if isinstance(value, list):
        return [resolve_value(child, outputs) for child in value]
    return value


def rewrite_slug_references(value: Any, old_slug: str, new_slug: str) -> Any:
    """Return ``value`` with every ``{{old_slug...}}`` pointing at ``new_slug``."""
    if isinstance(value, str):
        if old_slug not in value:
            return value

        def replace(m: re.Match) -> str:
            if m.group("slug") != old_slug:
                return m.group(0)
            return f"{m.group('open')}{new_slug}{m.group('path')}{m.group('close')}"

        return TEMPLATE_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {key: rewrite_slug_references(child, old_slug, new_slug) for key, child in value.items()}
    if isinstance(value, list):
        return [rewrite_slug_references(child, old_slug, new_slug) for child in value]
    return value
