"""Trace tree builder — reconstructs one trace's call tree from a flat span list."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Generic, Hashable, Iterator, List, Optional, TypeVar

from trace_deps.parser import Span

V = TypeVar("V")

log = logging.getLogger(__name__)


class InvalidArgumentError(ValueError):
    """A required value was None or otherwise unusable."""


class InvalidOperationError(ValueError):
    """The call is not allowed on the receiver."""


@dataclass(eq=False)
class Node(Generic[V]):
    """A tree node owning its children; ``value`` is None for a placeholder root."""

    value: Optional[V] = None
    children: List[Node[V]] = field(default_factory=list)
    parent: Optional[Node[V]] = field(default=None, repr=False)

    def set_value(self, value: V) -> None:
        if value is None:
            raise InvalidArgumentError("value == None")
        self.value = value

    def add_child(self, child: Node[V]) -> Node[V]:
        """Append ``child`` and return self, so calls can be chained."""
        if child is self:
            raise InvalidOperationError(f"circular dependency on {self.value!r}")
        child.parent = self
        self.children.append(child)
        return self

    def traverse(self) -> Iterator[Node[V]]:
        """Yield this node and its descendants in breadth-first order."""
        queue = deque([self])
        while queue:
            node = queue.popleft()
            yield node
            queue.extend(node.children)


class TreeBuilder(Generic[V]):
    """Incrementally builds the tree of a single trace.

    Nodes are added as ``(parent_id, id, value)`` triples in any order.
    Anomalies in the input are never raised: self-references and cycles are
    rejected, duplicate ids keep the first value, and nodes whose parent never
    shows up are attributed to the root. Each case is logged at DEBUG level on
    ``logger``.

    When ``root_id`` is not given, the first node added without a parent id
    becomes the root.
    """

    def __init__(
        self,
        trace_id: str,
        root_id: Optional[Hashable] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if trace_id is None:
            raise InvalidArgumentError("trace_id == None")
        self.trace_id = trace_id
        self.root_id = root_id
        self.logger = logger or log
        self._nodes: Dict[Hashable, Node[V]] = {}
        self._parents: Dict[Hashable, Optional[Hashable]] = {}
        # parent id -> ids of children that arrived before it
        self._waiting: Dict[Hashable, List[Hashable]] = {}
        self._built = False

    def add_node(self, parent_id: Optional[Hashable], id: Hashable, value: V) -> bool:
        """Register a node. Returns False only when it was rejected as a cycle."""
        if self._built:
            raise InvalidOperationError("build() was already called")
        # the designated root's declared parent is ignored, so it cannot close a cycle
        if id == parent_id or (id != self.root_id and self._is_ancestor(id, parent_id)):
            self.logger.debug(
                "skipping circular dependency: traceId=%s, spanId=%s", self.trace_id, id
            )
            return False
        if id in self._nodes:
            self.logger.debug("skipping duplicate span: traceId=%s, spanId=%s", self.trace_id, id)
            return True
        if value is None:
            raise InvalidArgumentError("value == None")

        if parent_id is None and self.root_id is None:
            self.root_id = id
        if id == self.root_id:
            parent_id = None

        node: Node[V] = Node(value)
        self._nodes[id] = node
        self._parents[id] = parent_id

        if parent_id is not None:
            parent = self._nodes.get(parent_id)
            if parent is None:
                self._waiting.setdefault(parent_id, []).append(id)
            else:
                parent.add_child(node)
        for child_id in self._waiting.pop(id, []):
            node.add_child(self._nodes[child_id])
        return True

    def _is_ancestor(self, id: Hashable, parent_id: Optional[Hashable]) -> bool:
        """Whether ``id`` is on the declared parent chain starting at ``parent_id``."""
        ancestor = parent_id
        while ancestor is not None:
            if ancestor == id:
                return True
            ancestor = self._parents.get(ancestor)
        return False

    def build(self) -> Node[V]:
        """Return the root, attributing nodes without a parent to it."""
        if self._built:
            raise InvalidOperationError("build() was already called")
        self._built = True

        root = self._nodes.get(self.root_id)
        headless = root is None
        if headless:
            self.logger.debug(
                "substituting dummy node for missing root span: traceId=%s", self.trace_id
            )
            root = Node()
            if self.root_id is None:
                # the first orphan's declared parent stands in for the missing root
                self.root_id = next(
                    (self._parents[i] for i, n in self._nodes.items() if n.parent is None), None
                )

        for node_id, node in self._nodes.items():
            if node is root or node.parent is not None:
                continue
            # children of a missing root are covered by the substitution message
            if not headless or self._parents[node_id] not in (None, self.root_id):
                self.logger.debug(
                    "attributing span missing parent to root: traceId=%s, rootSpanId=%s, spanId=%s",
                    self.trace_id,
                    self.root_id,
                    node_id,
                )
            root.add_child(node)

        self._nodes.clear()
        self._parents.clear()
        self._waiting.clear()
        return root


def group_by_trace(spans: List[Span], strict_trace_id: bool = True) -> Dict[str, List[Span]]:
    """Group spans by trace_id into a dict, keeping first-seen order.

    With ``strict_trace_id=False`` only the low 64 bits (right-most 16 hex
    characters) of the trace ID are compared, so spans reported with 128-bit
    and 64-bit IDs of the same trace end up together.
    """
    groups: Dict[str, List[Span]] = {}
    for span in spans:
        trace_id = span.trace_id if strict_trace_id else span.trace_id[-16:]
        groups.setdefault(trace_id, []).append(span)
    return groups
