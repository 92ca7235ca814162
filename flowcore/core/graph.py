"""Flow graph model: mutation API, structural invariants and schema cache.

Every mutation is applied to a copy of the flow, checked, and only then
swapped in. A rejected mutation raises a GraphInvariantError subclass and
leaves the flow untouched.

Dependency edges are the union of explicit connections and template
references (referenced node -> referencing node); that union must stay a DAG.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import networkx as nx

from flowcore.core.errors import (
    CallFlowTargetError,
    ConnectionNotFoundError,
    CycleError,
    FlowNotFoundError,
    GraphInvariantError,
    NodeNotFoundError,
    SlugError,
)
from flowcore.core.models import (
    DEFAULT_HANDLE,
    Connection,
    Flow,
    NodeCategory,
    NodeInstance,
    NodeType,
    Position,
    build_parameters,
)
from flowcore.core.node_types import category_of, get_node_type
from flowcore.core.schema import SchemaCompatibilityResult
from flowcore.core.slugs import generate_unique_slug, to_slug, validate_slug
from flowcore.core.templates import extract_all_references, rewrite_slug_references

logger = logging.getLogger(__name__)


# ========== Persistence boundary ==========


class FlowRepository:
    """In-process store of flows, keyed by id."""

    def __init__(self, flows: list[Flow] | None = None):
        self._flows: dict[str, Flow] = {}
        for flow in flows or []:
            self.save(flow)

    def get(self, flow_id: str) -> Flow | None:
        return self._flows.get(flow_id)

    def require(self, flow_id: str) -> Flow:
        flow = self._flows.get(flow_id)
        if flow is None:
            raise FlowNotFoundError(f"Flow with id {flow_id} not found")
        return flow

    def save(self, flow: Flow) -> Flow:
        self._flows[flow.id] = flow
        return flow

    def delete(self, flow_id: str) -> None:
        if self._flows.pop(flow_id, None) is None:
            raise FlowNotFoundError(f"Flow with id {flow_id} not found")

    def list(self) -> list[Flow]:
        return list(self._flows.values())

    def __contains__(self, flow_id: object) -> bool:
        return flow_id in self._flows

    def find_trigger_by_tool_name(self, tool_name: str) -> tuple[Flow, NodeInstance] | None:
        for flow in self._flows.values():
            for node in flow.triggers():
                if node.parameters.tool_name == tool_name:
                    return flow, node
        return None


# ========== Schema compatibility cache ==========


class SchemaCompatibilityCache:
    """Compatibility results keyed by connection id.

    Owned by a FlowGraph; entries are dropped whenever a mutation touches
    either endpoint of the connection.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, str, SchemaCompatibilityResult]] = {}

    def get(self, connection_id: str) -> SchemaCompatibilityResult | None:
        entry = self._entries.get(connection_id)
        return entry[2] if entry else None

    def set(self, connection: Connection, result: SchemaCompatibilityResult) -> None:
        self._entries[connection.id] = (connection.source_node_id, connection.target_node_id, result)

    def invalidate_connection(self, connection_id: str) -> None:
        self._entries.pop(connection_id, None)

    def invalidate_nodes(self, node_ids: set[str]) -> int:
        """Drop entries whose source or target is in ``node_ids``."""
        stale = [
            conn_id
            for conn_id, (source, target, _) in self._entries.items()
            if source in node_ids or target in node_ids
        ]
        for conn_id in stale:
            del self._entries[conn_id]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# ========== Dependency analysis ==========


def dependency_graph(flow: Flow) -> nx.DiGraph:
    """DiGraph over node ids: connections plus reference edges.

    Nodes carry their declaration index as ``order``. References to unknown
    slugs are ignored here; validate_node_references reports them.
    """
    G = nx.DiGraph()
    by_slug = {}
    for index, node in enumerate(flow.nodes):
        G.add_node(node.id, order=index, slug=node.slug)
        by_slug[node.slug] = node.id

    for conn in flow.connections:
        G.add_edge(conn.source_node_id, conn.target_node_id, kind="connection")

    for node in flow.nodes:
        for ref in extract_all_references(node):
            source_id = by_slug.get(ref.node_slug)
            # Self references are reported by validate_node_references, not as cycles
            if source_id is not None and source_id != node.id and not G.has_edge(source_id, node.id):
                G.add_edge(source_id, node.id, kind="reference")
    return G


def find_dependency_cycle(flow: Flow) -> list[str] | None:
    """Slugs along one dependency cycle, or None if the flow is acyclic."""
    G = dependency_graph(flow)
    try:
        cycle = nx.find_cycle(G)
    except nx.NetworkXNoCycle:
        return None
    slugs = nx.get_node_attributes(G, "slug")
    return [slugs[edge[0]] for edge in cycle]


@dataclass
class InsertTransformerResult:
    transformer_node: NodeInstance
    source_connection: Connection
    target_connection: Connection


# ========== Mutation API ==========


class FlowGraph:
    """Mutation API over one flow.

    Invariants checked on every mutation:
    - slugs well-formed, unique and not reserved; names unique
    - connections plus template references form a DAG
    - connection rules (no self loops, duplicates, edges into triggers;
      Link nodes only after Interface nodes)
    - CallFlow targets exist and never lead back to this flow
    """

    def __init__(
        self,
        flow: Flow,
        repository: FlowRepository | None = None,
        cache: SchemaCompatibilityCache | None = None,
    ):
        self.flow = flow
        self.repository = repository
        self.cache = cache or SchemaCompatibilityCache()

    @classmethod
    def load(cls, repository: FlowRepository, flow_id: str) -> FlowGraph:
        return cls(repository.require(flow_id), repository=repository)

    # --- Lookups ---

    def require_node(self, node_id: str, flow: Flow | None = None) -> NodeInstance:
        node = (flow or self.flow).get_node(node_id)
        if node is None:
            raise NodeNotFoundError(f"Node with id {node_id} not found in flow {self.flow.id}")
        return node

    def require_connection(self, connection_id: str) -> Connection:
        for conn in self.flow.connections:
            if conn.id == connection_id:
                return conn
        raise ConnectionNotFoundError(
            f"Connection with id {connection_id} not found in flow {self.flow.id}"
        )

    # --- Nodes ---

    def add_node(
        self,
        node_type: NodeType | str,
        name: str,
        position: Position | dict | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> NodeInstance:
        node_type = NodeType(node_type)
        candidate = self._copy()
        self._check_name_free(candidate, name)

        slug = generate_unique_slug(name, {n.slug for n in candidate.nodes})
        params = build_parameters(node_type, parameters)
        if node_type == NodeType.USER_INTENT and not params.tool_name:
            params.tool_name = self._unique_tool_name(candidate, slug)

        node = NodeInstance(
            name=name,
            slug=slug,
            type=node_type,
            position=Position.model_validate(position) if position is not None else Position(),
            parameters=params,
        )
        candidate.nodes.append(node)
        self._commit(candidate, {node.id})
        logger.debug(f"Added {node_type.value} node '{slug}' to flow {self.flow.id}")
        return node

    def update_node(
        self,
        node_id: str,
        name: str | None = None,
        position: Position | dict | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> NodeInstance:
        """Update a node; parameters are merged into the existing ones.

        A name change regenerates the slug and rewrites every reference to
        the old slug throughout the flow.
        """
        candidate = self._copy()
        node = self.require_node(node_id, candidate)
        touched = {node_id}

        if parameters is not None:
            merged = {**node.parameters.model_dump(), **parameters}
            node.parameters = build_parameters(node.type, merged)

        if position is not None:
            node.position = Position.model_validate(position)

        if name is not None and name != node.name:
            self._check_name_free(candidate, name, exclude_id=node_id)
            node.name = name
            others = {n.slug for n in candidate.nodes if n.id != node_id}
            new_slug = generate_unique_slug(name, others)
            if new_slug != node.slug:
                touched |= self._apply_slug_change(candidate, node, new_slug)

        self._commit(candidate, touched)
        return self.require_node(node_id)

    def update_node_position(self, node_id: str, x: float, y: float) -> NodeInstance:
        # Position does not affect schemas, so the cache is left alone
        node = self.require_node(node_id)
        node.position = Position(x=x, y=y)
        self._save()
        return node

    def remove_node(self, node_id: str) -> None:
        """Remove a node and cascade-delete its connections."""
        candidate = self._copy()
        self.require_node(node_id, candidate)
        candidate.nodes = [n for n in candidate.nodes if n.id != node_id]
        candidate.connections = [
            c for c in candidate.connections if node_id not in (c.source_node_id, c.target_node_id)
        ]
        self._commit(candidate, {node_id})
        logger.debug(f"Removed node {node_id} from flow {self.flow.id}")

    def rename_slug(self, node_id: str, new_slug: str) -> NodeInstance:
        """Give a node a new slug and rewrite every reference to the old one."""
        validate_slug(new_slug)
        candidate = self._copy()
        node = self.require_node(node_id, candidate)
        if new_slug == node.slug:
            return self.require_node(node_id)
        if any(n.slug == new_slug for n in candidate.nodes if n.id != node_id):
            raise SlugError(f"Slug '{new_slug}' is already used in this flow")

        touched = self._apply_slug_change(candidate, node, new_slug)
        self._commit(candidate, touched)
        return self.require_node(node_id)

    # --- Connections ---

    def add_connection(
        self,
        source_node_id: str,
        target_node_id: str,
        source_handle: str = DEFAULT_HANDLE,
        target_handle: str = DEFAULT_HANDLE,
    ) -> Connection:
        candidate = self._copy()
        source = self.require_node(source_node_id, candidate)
        target = self.require_node(target_node_id, candidate)

        if target.type == NodeType.USER_INTENT:
            raise GraphInvariantError(
                "Cannot create connection to trigger node. Trigger nodes do not accept "
                "incoming connections."
            )
        if target.type == NodeType.LINK and category_of(source.type) != NodeCategory.INTERFACE:
            raise GraphInvariantError(
                f"Link nodes can only be connected after interface nodes; "
                f"'{source.slug}' is a {category_of(source.type).value} node"
            )
        if source_node_id == target_node_id:
            raise GraphInvariantError("Cannot connect a node to itself")
        for existing in candidate.connections:
            if (
                existing.source_node_id == source_node_id
                and existing.source_handle == source_handle
                and existing.target_node_id == target_node_id
                and existing.target_handle == target_handle
            ):
                raise GraphInvariantError("This connection already exists")

        connection = Connection(
            source_node_id=source_node_id,
            source_handle=source_handle,
            target_node_id=target_node_id,
            target_handle=target_handle,
        )
        candidate.connections.append(connection)
        self._commit(candidate, {source_node_id, target_node_id})
        return connection

    def remove_connection(self, connection_id: str) -> None:
        self.require_connection(connection_id)
        candidate = self._copy()
        candidate.connections = [c for c in candidate.connections if c.id != connection_id]
        self._commit(candidate, set())
        self.cache.invalidate_connection(connection_id)

    def insert_transformer(
        self,
        source_node_id: str,
        target_node_id: str,
        transformer_type: NodeType | str = NodeType.JAVASCRIPT_CODE_TRANSFORM,
    ) -> InsertTransformerResult:
        """Replace the direct source->target connection with source->transform->target.

        The transform node is placed at the midpoint of the two endpoints.
        """
        transformer_type = NodeType(transformer_type)
        definition = get_node_type(transformer_type)
        if definition.category != NodeCategory.TRANSFORM:
            raise GraphInvariantError(f"Node type {transformer_type.value} is not a transformer")

        candidate = self._copy()
        source = self.require_node(source_node_id, candidate)
        target = self.require_node(target_node_id, candidate)

        direct = next(
            (
                c
                for c in candidate.connections
                if c.source_node_id == source_node_id and c.target_node_id == target_node_id
            ),
            None,
        )
        if direct is not None:
            candidate.connections.remove(direct)
        source_handle = direct.source_handle if direct else DEFAULT_HANDLE
        target_handle = direct.target_handle if direct else DEFAULT_HANDLE

        count = sum(1 for n in candidate.nodes if n.type == transformer_type) + 1
        name = f"{definition.display_name} {count}"
        while any(n.name == name for n in candidate.nodes):
            count += 1
            name = f"{definition.display_name} {count}"

        transformer = NodeInstance(
            name=name,
            slug=generate_unique_slug(name, {n.slug for n in candidate.nodes}),
            type=transformer_type,
            position=Position(
                x=(source.position.x + target.position.x) / 2,
                y=(source.position.y + target.position.y) / 2,
            ),
            parameters=build_parameters(transformer_type, None),
        )
        source_connection = Connection(
            source_node_id=source_node_id,
            source_handle=source_handle,
            target_node_id=transformer.id,
        )
        target_connection = Connection(
            source_node_id=transformer.id,
            target_node_id=target_node_id,
            target_handle=target_handle,
        )
        candidate.nodes.append(transformer)
        candidate.connections.extend([source_connection, target_connection])

        self._commit(candidate, {source_node_id, target_node_id, transformer.id})
        if direct is not None:
            self.cache.invalidate_connection(direct.id)
        return InsertTransformerResult(
            transformer_node=self.require_node(transformer.id),
            source_connection=source_connection,
            target_connection=target_connection,
        )

    # --- Invariants ---

    def check_invariants(self, flow: Flow | None = None) -> None:
        """Raise GraphInvariantError if ``flow`` (default: current) is invalid."""
        flow = flow or self.flow

        seen_slugs: set[str] = set()
        seen_names: set[str] = set()
        for node in flow.nodes:
            validate_slug(node.slug)
            if node.slug in seen_slugs:
                raise SlugError(f"Duplicate slug '{node.slug}'")
            if node.name in seen_names:
                raise GraphInvariantError(f"Node with name \"{node.name}\" already exists in this flow")
            seen_slugs.add(node.slug)
            seen_names.add(node.name)

        cycle = find_dependency_cycle(flow)
        if cycle:
            raise CycleError(
                f"This change would create a circular reference: {' -> '.join(cycle)}",
                cycle=cycle,
            )

        self._check_call_flow_targets(flow)

    def _check_call_flow_targets(self, flow: Flow) -> None:
        call_nodes = [n for n in flow.nodes if n.type == NodeType.CALL_FLOW]
        if not call_nodes:
            return

        for node in call_nodes:
            target_id = node.parameters.target_flow_id
            if target_id is None:
                continue
            if target_id == flow.id:
                raise CallFlowTargetError(f"CallFlow node '{node.slug}' cannot call its own flow")
            if self.repository is not None and target_id not in self.repository:
                raise CallFlowTargetError(
                    f"CallFlow node '{node.slug}' targets unknown flow {target_id}"
                )

        if self.repository is None:
            return

        # Flow-level call graph, with this flow's pending version in place of the stored one
        calls = nx.DiGraph()
        for other in self.repository.list():
            if other.id != flow.id:
                _add_call_edges(calls, other)
        _add_call_edges(calls, flow)
        for node in call_nodes:
            target_id = node.parameters.target_flow_id
            if target_id is not None and nx.has_path(calls, target_id, flow.id):
                path = " -> ".join([flow.id, *nx.shortest_path(calls, target_id, flow.id)])
                raise CallFlowTargetError(
                    f"CallFlow node '{node.slug}' leads back to its own flow: {path}"
                )

    # --- Internals ---

    def _copy(self) -> Flow:
        return self.flow.model_copy(deep=True)

    def _commit(self, candidate: Flow, touched: set[str]) -> None:
        self.check_invariants(candidate)
        self.flow = candidate
        if touched:
            self.cache.invalidate_nodes(touched)
        self._save()

    def _save(self) -> None:
        if self.repository is not None:
            self.repository.save(self.flow)

    @staticmethod
    def _check_name_free(flow: Flow, name: str, exclude_id: str | None = None) -> None:
        if any(n.name == name and n.id != exclude_id for n in flow.nodes):
            raise GraphInvariantError(f"Node with name \"{name}\" already exists in this flow")

    @staticmethod
    def _apply_slug_change(flow: Flow, node: NodeInstance, new_slug: str) -> set[str]:
        """Set ``node.slug`` and rewrite references to it. Returns touched node ids."""
        old_slug = node.slug
        node.slug = new_slug
        touched = {node.id}
        for other in flow.nodes:
            if not any(ref.node_slug == old_slug for ref in extract_all_references(other)):
                continue
            rewritten = rewrite_slug_references(other.parameters.model_dump(), old_slug, new_slug)
            other.parameters = build_parameters(other.type, rewritten)
            touched.add(other.id)
        logger.info(f"Renamed slug '{old_slug}' -> '{new_slug}' ({len(touched) - 1} referencing nodes)")
        return touched

    def _unique_tool_name(self, flow: Flow, base: str) -> str:
        flows = [flow]
        if self.repository is not None:
            flows += [f for f in self.repository.list() if f.id != flow.id]
        taken = {n.parameters.tool_name for f in flows for n in f.triggers()}
        base = to_slug(base)
        candidate, counter = base, 2
        while candidate in taken:
            candidate = f"{base}_{counter}"
            counter += 1
        return candidate


def _add_call_edges(G: nx.DiGraph, flow: Flow) -> None:
    G.add_node(flow.id)
    for node in flow.nodes:
        if node.type == NodeType.CALL_FLOW and node.parameters.target_flow_id:
            G.add_edge(flow.id, node.parameters.target_flow_id)
