"""
Pytest configuration and Hypothesis strategies for property-based testing.

This module provides custom Hypothesis strategies for generating Zipkin v2
spans, span trees with known parent-child relationships, and dependency links.
"""

import json
import logging

import pytest
from hypothesis import strategies as st

from trace_deps.linker import DependencyLink
from trace_deps.parser import Span, parse_line

# ============================================================================
# Basic Building Blocks
# ============================================================================

SERVICE_NAMES = ["frontend", "backend", "auth", "mysql", "kafka", "cache"]


@st.composite
def hex_id(draw, length: int = 16) -> str:
    """
    Generate a valid hexadecimal ID string.

    Args:
        length: Number of hex characters (default 16 for span_id, 32 for trace_id)

    Returns:
        Hexadecimal string of specified length
    """
    hex_chars = "0123456789abcdef"
    return "".join(draw(st.lists(st.sampled_from(hex_chars), min_size=length, max_size=length)))


@st.composite
def zipkin_span(
    draw,
    span_id: str,
    parent_id: str | None = None,
    trace_id: str | None = None,
) -> dict:
    """
    Generate a Zipkin v2 span object.

    Args:
        span_id: The span ID to use
        parent_id: Optional parent span ID (if None, generates root span)
        trace_id: Optional trace ID (if None, generates new one)

    Returns:
        Dict representing a Zipkin v2 JSON span
    """
    if trace_id is None:
        trace_id = draw(hex_id(length=32))

    span = {
        "traceId": trace_id,
        "id": span_id,
        "name": draw(st.text(min_size=1, max_size=30)),
        "kind": draw(st.sampled_from(["CLIENT", "SERVER", "PRODUCER", "CONSUMER", None])),
        "timestamp": draw(st.integers(min_value=1_700_000_000_000_000, max_value=1_700_086_400_000_000)),
        "duration": draw(st.integers(min_value=1, max_value=3_600_000_000)),
        "localEndpoint": {"serviceName": draw(st.sampled_from(SERVICE_NAMES))},
    }
    if parent_id is not None:
        span["parentId"] = parent_id
    if draw(st.booleans()):
        span["remoteEndpoint"] = {"serviceName": draw(st.sampled_from(SERVICE_NAMES))}
    if draw(st.booleans()):
        span["tags"] = {"error": draw(st.text(max_size=20))}
    return span


# ============================================================================
# Span Tree Strategies
# ============================================================================


@st.composite
def span_tree(draw, max_depth: int = 3, max_children: int = 3) -> list[dict]:
    """
    Generate a hierarchical tree of spans with parent-child relationships.

    Span IDs are unique within the tree and the first span is the root.

    Args:
        max_depth: Maximum tree depth
        max_children: Maximum children per node

    Returns:
        List of Zipkin spans forming a valid tree structure
    """
    trace_id = draw(hex_id(length=32))
    spans = []

    def generate_subtree(parent_id: str | None, depth: int) -> None:
        span_id = f"{len(spans) + 1:016x}"
        span = draw(zipkin_span(span_id, parent_id=parent_id, trace_id=trace_id))
        spans.append(span)

        if depth < max_depth:
            num_children = draw(st.integers(min_value=0, max_value=max_children))
            for _ in range(num_children):
                generate_subtree(span_id, depth + 1)

    generate_subtree(None, 0)

    return spans


@st.composite
def dependency_link(draw) -> DependencyLink:
    """Generate a DependencyLink between two known service names."""
    call_count = draw(st.integers(min_value=1, max_value=1000))
    return DependencyLink(
        parent=draw(st.sampled_from(SERVICE_NAMES)),
        child=draw(st.sampled_from(SERVICE_NAMES)),
        call_count=call_count,
        error_count=draw(st.integers(min_value=0, max_value=call_count)),
    )


# ============================================================================
# Diagnostics
# ============================================================================


@pytest.fixture
def tree_messages(caplog):
    """Capture DEBUG diagnostics logged by the tree builder.

    Returns a callable producing the formatted messages seen so far.
    """
    caplog.set_level(logging.DEBUG, logger="trace_deps.tree")

    def messages() -> list[str]:
        records = [r for r in caplog.records if r.name == "trace_deps.tree"]
        assert all(r.levelno == logging.DEBUG for r in records)
        return [r.getMessage() for r in records]

    return messages


def to_spans(zipkin_spans: list[dict]) -> list[Span]:
    """Read generated Zipkin span dicts the way a trace file would be read."""
    return parse_line(json.dumps(zipkin_spans))
