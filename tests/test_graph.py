"""Tests for the flow graph mutation API and its invariants."""

import pytest

from flowcore.core.errors import (
    CallFlowTargetError,
    ConnectionNotFoundError,
    CycleError,
    GraphInvariantError,
    NodeNotFoundError,
    SlugError,
)
from flowcore.core.graph import FlowGraph, find_dependency_cycle
from flowcore.core.models import Flow, NodeType
from flowcore.core.schema import check_schema_compatibility


class TestNodes:
    """Tests for adding, updating and removing nodes."""

    def test_add_node_generates_slug(self, graph: FlowGraph):
        node = graph.add_node(NodeType.API_CALL, "Get Weather")

        assert node.slug == "get_weather"
        assert graph.flow.get_node_by_slug("get_weather") is not None
        assert graph.repository.get(graph.flow.id) is graph.flow

    def test_duplicate_name_rejected(self, graph: FlowGraph):
        graph.add_node(NodeType.API_CALL, "Fetch")

        with pytest.raises(GraphInvariantError, match="already exists"):
            graph.add_node(NodeType.LINK, "Fetch")

        assert len(graph.flow.nodes) == 1

    def test_similar_names_get_distinct_slugs(self, graph: FlowGraph):
        first = graph.add_node(NodeType.API_CALL, "Fetch User")
        second = graph.add_node(NodeType.API_CALL, "Fetch user!")

        assert (first.slug, second.slug) == ("fetch_user", "fetch_user_2")

    def test_trigger_gets_unique_tool_name(self, graph: FlowGraph, repository):
        graph.add_node(NodeType.USER_INTENT, "Start")
        other = FlowGraph(repository.save(Flow(name="Other")), repository=repository)

        node = other.add_node(NodeType.USER_INTENT, "Start")

        assert node.parameters.tool_name == "start_2"
        flow, trigger = repository.find_trigger_by_tool_name("start_2")
        assert flow.id == other.flow.id
        assert trigger.id == node.id

    def test_update_merges_parameters(self, graph: FlowGraph):
        node = graph.add_node(NodeType.API_CALL, "Fetch", parameters={"url": "https://a.example"})

        updated = graph.update_node(node.id, parameters={"method": "POST"})

        assert updated.parameters.url == "https://a.example"
        assert updated.parameters.method == "POST"

    def test_update_unknown_node(self, graph: FlowGraph):
        with pytest.raises(NodeNotFoundError):
            graph.update_node("missing", name="X")

    def test_remove_node_cascades_connections(self, linear_graph: FlowGraph):
        b = linear_graph.flow.get_node_by_slug("b")

        linear_graph.remove_node(b.id)

        assert linear_graph.flow.get_node(b.id) is None
        assert len(linear_graph.flow.connections) == 1


class TestRename:
    """Tests for slug changes rewriting references."""

    def test_name_change_rewrites_references(self, linear_graph: FlowGraph):
        a = linear_graph.flow.get_node_by_slug("a")
        c = linear_graph.flow.get_node_by_slug("c")
        linear_graph.update_node(c.id, parameters={"code": "return {{a.x}} + {{ a.y }};"})

        renamed = linear_graph.update_node(a.id, name="Alpha")

        assert renamed.slug == "alpha"
        assert linear_graph.require_node(c.id).parameters.code == "return {{alpha.x}} + {{ alpha.y }};"

    def test_rename_slug(self, linear_graph: FlowGraph):
        a = linear_graph.flow.get_node_by_slug("a")
        b = linear_graph.flow.get_node_by_slug("b")
        linear_graph.update_node(b.id, parameters={"code": "return {{a}};"})

        linear_graph.rename_slug(a.id, "first")

        assert linear_graph.require_node(a.id).slug == "first"
        assert linear_graph.require_node(b.id).parameters.code == "return {{first}};"

    def test_rename_to_taken_slug(self, linear_graph: FlowGraph):
        a = linear_graph.flow.get_node_by_slug("a")
        with pytest.raises(SlugError, match="already used"):
            linear_graph.rename_slug(a.id, "b")

    def test_rename_to_reserved_slug(self, linear_graph: FlowGraph):
        a = linear_graph.flow.get_node_by_slug("a")
        with pytest.raises(SlugError, match="reserved"):
            linear_graph.rename_slug(a.id, "input")


class TestConnections:
    """Tests for connection rules."""

    def test_connection_into_trigger_rejected(self, graph: FlowGraph):
        trigger = graph.add_node(NodeType.USER_INTENT, "Start")
        fetch = graph.add_node(NodeType.API_CALL, "Fetch")

        with pytest.raises(GraphInvariantError, match="trigger node"):
            graph.add_connection(fetch.id, trigger.id)

    def test_link_requires_interface_source(self, graph: FlowGraph):
        fetch = graph.add_node(NodeType.API_CALL, "Fetch")
        ui = graph.add_node(NodeType.INTERFACE, "Table")
        link = graph.add_node(NodeType.LINK, "Next")

        with pytest.raises(GraphInvariantError, match="interface nodes"):
            graph.add_connection(fetch.id, link.id)

        graph.add_connection(ui.id, link.id)
        assert len(graph.flow.connections) == 1

    def test_self_loop_rejected(self, graph: FlowGraph):
        node = graph.add_node(NodeType.API_CALL, "Fetch")
        with pytest.raises(GraphInvariantError, match="itself"):
            graph.add_connection(node.id, node.id)

    def test_duplicate_rejected(self, linear_graph: FlowGraph):
        conn = linear_graph.flow.connections[0]
        with pytest.raises(GraphInvariantError, match="already exists"):
            linear_graph.add_connection(conn.source_node_id, conn.target_node_id)

    def test_cycle_rejected_and_flow_unchanged(self, linear_graph: FlowGraph):
        a = linear_graph.flow.get_node_by_slug("a")
        c = linear_graph.flow.get_node_by_slug("c")
        before = linear_graph.flow.model_copy(deep=True)

        with pytest.raises(CycleError) as exc_info:
            linear_graph.add_connection(c.id, a.id)

        assert linear_graph.flow == before
        assert set(exc_info.value.cycle) == {"a", "b", "c"}

    def test_reference_cycle_rejected(self, linear_graph: FlowGraph):
        """A referencing its own descendant C closes a loop."""
        a = linear_graph.flow.get_node_by_slug("a")

        with pytest.raises(CycleError, match="circular reference"):
            linear_graph.update_node(a.id, parameters={"code": "return {{c.value}};"})

        assert linear_graph.require_node(a.id).parameters.code == "return input;"

    def test_remove_connection(self, linear_graph: FlowGraph):
        conn = linear_graph.flow.connections[0]

        linear_graph.remove_connection(conn.id)

        assert conn.id not in {c.id for c in linear_graph.flow.connections}
        with pytest.raises(ConnectionNotFoundError):
            linear_graph.remove_connection(conn.id)

    def test_find_dependency_cycle_on_raw_flow(self, linear_graph: FlowGraph):
        assert find_dependency_cycle(linear_graph.flow) is None


class TestInsertTransformer:
    """Tests for splicing a transform into a connection."""

    def test_replaces_direct_connection(self, graph: FlowGraph):
        start = graph.add_node(NodeType.USER_INTENT, "Start", position={"x": 0, "y": 0})
        done = graph.add_node(NodeType.RETURN, "Done", position={"x": 100, "y": 50})
        direct = graph.add_connection(start.id, done.id)

        result = graph.insert_transformer(start.id, done.id)

        transformer = result.transformer_node
        assert transformer.type == NodeType.JAVASCRIPT_CODE_TRANSFORM
        assert transformer.name == "JavaScript Code 1"
        assert (transformer.position.x, transformer.position.y) == (50, 25)
        assert direct.id not in {c.id for c in graph.flow.connections}
        assert result.source_connection.target_node_id == transformer.id
        assert result.target_connection.source_node_id == transformer.id
        assert len(graph.flow.connections) == 2

    def test_non_transform_type_rejected(self, graph: FlowGraph):
        start = graph.add_node(NodeType.USER_INTENT, "Start")
        done = graph.add_node(NodeType.RETURN, "Done")

        with pytest.raises(GraphInvariantError, match="not a transformer"):
            graph.insert_transformer(start.id, done.id, NodeType.API_CALL)


class TestCompatibilityCache:
    """Tests for cache invalidation on mutation."""

    def test_mutation_drops_touching_entries(self, linear_graph: FlowGraph):
        first, second, third = linear_graph.flow.connections
        result = check_schema_compatibility(None, None)
        for conn in (first, second, third):
            linear_graph.cache.set(conn, result)
        c = linear_graph.flow.get_node_by_slug("c")

        linear_graph.update_node(c.id, parameters={"code": "return 1;"})

        assert first.id in linear_graph.cache
        assert second.id in linear_graph.cache
        assert third.id not in linear_graph.cache

    def test_position_change_keeps_entries(self, linear_graph: FlowGraph):
        conn = linear_graph.flow.connections[0]
        linear_graph.cache.set(conn, check_schema_compatibility(None, None))

        linear_graph.update_node_position(conn.target_node_id, 10, 20)

        assert len(linear_graph.cache) == 1


class TestCallFlowTargets:
    """Tests for CallFlow target rules."""

    def test_own_flow_rejected(self, graph: FlowGraph):
        with pytest.raises(CallFlowTargetError, match="its own flow"):
            graph.add_node(NodeType.CALL_FLOW, "Again", parameters={"target_flow_id": graph.flow.id})

    def test_unknown_flow_rejected(self, graph: FlowGraph):
        with pytest.raises(CallFlowTargetError, match="unknown flow"):
            graph.add_node(NodeType.CALL_FLOW, "Call", parameters={"target_flow_id": "nope"})

    def test_transitive_recursion_rejected(self, graph: FlowGraph, repository):
        other = FlowGraph(repository.save(Flow(name="Other")), repository=repository)
        graph.add_node(NodeType.CALL_FLOW, "Call Other", parameters={"target_flow_id": other.flow.id})

        with pytest.raises(CallFlowTargetError, match="leads back"):
            other.add_node(NodeType.CALL_FLOW, "Call Back", parameters={"target_flow_id": graph.flow.id})

        assert other.flow.nodes == []
