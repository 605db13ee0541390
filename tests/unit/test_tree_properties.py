"""
Property-based tests for the trace tree builder.

This module contains property-based tests using Hypothesis to validate
the tree builder across randomly shaped traces and insertion orders.
"""

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from tests.conftest import hex_id, span_tree, to_spans
from trace_deps.parser import Span
from trace_deps.tree import Node, TreeBuilder


# ============================================================================
# Helper Functions
# ============================================================================


def build(spans: list[Span]) -> Node[Span]:
    builder = TreeBuilder(spans[0].trace_id)
    for span in spans:
        builder.add_node(span.parent_id, span.id, span)
    return builder.build()


def get_parent_child_relationships(root: Node[Span]) -> dict[str, set[str]]:
    """
    Extract parent-child relationships from a tree.

    Returns:
        Dict mapping parent span id to the set of its child span ids
    """
    return {
        node.value.id: {child.value.id for child in node.children}
        for node in root.traverse()
        if node.children
    }


def level_order(root: Node) -> list[Node]:
    """Group nodes by depth with a depth-first walk, then concatenate levels."""
    levels: list[list[Node]] = []

    def visit(node: Node, depth: int) -> None:
        if len(levels) == depth:
            levels.append([])
        levels[depth].append(node)
        for child in node.children:
            visit(child, depth + 1)

    visit(root, 0)
    return [node for level in levels for node in level]


# ============================================================================
# Node count equals the number of distinct ids
# ============================================================================


@given(span_tree(max_depth=4, max_children=4), st.data())
@settings(max_examples=50, suppress_health_check=[HealthCheck.too_slow])
def test_property_node_count_equals_distinct_ids(zipkin_spans: list[dict], data):
    """Duplicated spans collapse into a single node."""
    spans = to_spans(zipkin_spans)
    duplicates = data.draw(st.lists(st.sampled_from(spans), max_size=5))
    copies = [
        Span(trace_id=s.trace_id, id=s.id, parent_id=s.parent_id, name="duplicate")
        for s in duplicates
    ]

    root = build(spans + copies)
    nodes = list(root.traverse())

    assert len(nodes) == len({s.id for s in spans})
    assert all(n.value.name != "duplicate" for n in nodes)
    assert root.value is spans[0]


# ============================================================================
# Insertion order does not change the tree shape
# ============================================================================


@given(span_tree(max_depth=4, max_children=3), st.data())
@settings(max_examples=50, suppress_health_check=[HealthCheck.too_slow])
def test_property_tree_shape_independent_of_arrival_order(zipkin_spans: list[dict], data):
    spans = to_spans(zipkin_spans)
    shuffled = data.draw(st.permutations(spans))

    expected = build(spans)
    rebuilt = build(list(shuffled))

    assert rebuilt.value is expected.value
    assert get_parent_child_relationships(rebuilt) == get_parent_child_relationships(expected)
    assert len(list(rebuilt.traverse())) == len(spans)


@given(span_tree(max_depth=4, max_children=3), st.data())
@settings(max_examples=30, suppress_health_check=[HealthCheck.too_slow])
def test_property_siblings_follow_arrival_order(zipkin_spans: list[dict], data):
    spans = list(data.draw(st.permutations(to_spans(zipkin_spans))))
    arrival = {s.id: i for i, s in enumerate(spans)}

    root = build(spans)

    for node in root.traverse():
        positions = [arrival[c.value.id] for c in node.children]
        assert positions == sorted(positions)


# ============================================================================
# Self-parented spans are always rejected
# ============================================================================


@given(st.lists(hex_id(length=16), min_size=1, max_size=10, unique=True))
@settings(max_examples=30)
def test_property_self_parent_always_rejected(span_ids: list[str]):
    builder = TreeBuilder("t1")
    for span_id in span_ids:
        assert builder.add_node(span_id, span_id, span_id) is False

    root = builder.build()
    assert root.value is None
    assert root.children == []


# ============================================================================
# Headless traces
# ============================================================================


@given(
    st.lists(hex_id(length=16), min_size=1, max_size=10, unique=True),
    st.lists(st.sampled_from(["missing-a", "missing-b", None]), min_size=10, max_size=10),
)
@settings(max_examples=30)
def test_property_headless_children_in_first_encountered_order(
    span_ids: list[str], parents: list[str | None]
):
    builder = TreeBuilder("t1", root_id="missing-root")
    for span_id, parent_id in zip(span_ids, parents):
        builder.add_node(parent_id, span_id, span_id)

    root = builder.build()

    assert root.value is None
    assert [n.value for n in root.children] == span_ids


# ============================================================================
# Breadth-first traversal is level order
# ============================================================================


@given(span_tree(max_depth=5, max_children=3))
@settings(max_examples=50, suppress_health_check=[HealthCheck.too_slow])
def test_property_traversal_is_level_order(zipkin_spans: list[dict]):
    root = build(to_spans(zipkin_spans))

    assert list(root.traverse()) == level_order(root)
    assert list(root.traverse()) == list(root.traverse())
