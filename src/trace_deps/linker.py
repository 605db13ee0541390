"""Dependency linker — derives caller/callee service links from trace trees."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from trace_deps.parser import Kind, Span
from trace_deps.tree import InvalidArgumentError, Node, TreeBuilder

log = logging.getLogger(__name__)

_SERVER_KINDS = (Kind.SERVER, Kind.CONSUMER)
_MESSAGING_KINDS = (Kind.PRODUCER, Kind.CONSUMER)


@dataclass(frozen=True)
class DependencyLink:
    """A directed edge between two services with call and error volume."""

    parent: str
    child: str
    call_count: int = 1
    error_count: int = 0

    def __post_init__(self) -> None:
        if not self.parent or not self.child:
            raise InvalidArgumentError(
                f"parent and child are required: parent={self.parent!r}, child={self.child!r}"
            )
        if self.call_count < 1:
            raise InvalidArgumentError(f"call_count < 1: {self.call_count}")
        if self.error_count < 0:
            raise InvalidArgumentError(f"error_count < 0: {self.error_count}")
        object.__setattr__(self, "parent", self.parent.lower())
        object.__setattr__(self, "child", self.child.lower())


class SpanKey(NamedTuple):
    """Tree identity of a span; the server half of a shared span gets its own key."""

    id: str
    shared: bool = False

    def __str__(self) -> str:
        return f"{self.id} (shared)" if self.shared else self.id


def build_span_tree(spans: List[Span], logger: Optional[logging.Logger] = None) -> Node[Span]:
    """Build the call tree of one trace.

    A SERVER span flagged ``shared``, or reusing the id of a client span in the
    same trace, is the server half of that RPC: it is parented under the client
    span with the same id, and spans naming that id as their parent are
    attributed to the server side.
    """
    if not spans:
        raise InvalidArgumentError("spans were empty")

    client_ids = {s.id for s in spans if s.kind is not Kind.SERVER}
    shared_ids = {
        s.id for s in spans if s.kind is Kind.SERVER and (s.shared or s.id in client_ids)
    }
    builder: TreeBuilder[Span] = TreeBuilder(spans[0].trace_id, logger=logger)
    for span in spans:
        if span.kind is Kind.SERVER and span.id in shared_ids:
            builder.add_node(SpanKey(span.id), SpanKey(span.id, shared=True), span)
            continue
        parent_key = None
        if span.parent_id:
            parent_key = SpanKey(span.parent_id, shared=span.parent_id in shared_ids)
        builder.add_node(parent_key, SpanKey(span.id), span)
    return builder.build()


def _first_remote_ancestor(node: Node[Span]) -> Optional[Span]:
    ancestor = node.parent
    while ancestor is not None:
        span = ancestor.value
        if span is not None and span.kind is not Kind.UNSET:
            return span
        ancestor = ancestor.parent
    return None


class DependencyLinker:
    """Accumulates dependency links over one or more traces.

    Usage::

        linker = DependencyLinker()
        for trace in traces:
            linker.put_trace(trace)
        links = linker.link()
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or log
        self._call_counts: Dict[Tuple[str, str], int] = defaultdict(int)
        self._error_counts: Dict[Tuple[str, str], int] = defaultdict(int)

    def put_trace(self, spans: List[Span]) -> DependencyLinker:
        """Build the tree for one trace's spans and link it."""
        if not spans:
            return self
        return self.put_tree(build_span_tree(spans, logger=self.logger))

    def put_tree(self, root: Node[Span]) -> DependencyLinker:
        """Walk a built trace tree breadth-first and count its links."""
        for current in root.traverse():
            span = current.value
            if span is None:
                continue

            kind = span.kind
            # Prefer the server's view of an RPC; a client without children
            # still gets linked by the name it chose.
            if kind is Kind.CLIENT and current.children:
                continue

            service_name = span.local_service_name
            remote_service_name = span.remote_service_name
            if kind is Kind.UNSET:
                if service_name and remote_service_name:
                    kind = Kind.CLIENT
                else:
                    self.logger.debug("non remote span; skipping: spanId=%s", span.id)
                    continue

            if kind in _SERVER_KINDS:
                parent, child = remote_service_name, service_name
                if current is root and parent is None:
                    self.logger.debug("root's client is unknown; skipping: spanId=%s", span.id)
                    continue
            else:
                parent, child = service_name, remote_service_name

            is_error = span.is_error
            if kind in _MESSAGING_KINDS:
                if parent is None or child is None:
                    self.logger.debug(
                        "cannot link messaging span to its broker; skipping: spanId=%s", span.id
                    )
                else:
                    self._add_link(parent, child, is_error)
                continue

            # Local spans may sit between this span and its remote parent
            remote_ancestor = _first_remote_ancestor(current)
            ancestor_name = remote_ancestor.local_service_name if remote_ancestor else None
            if remote_ancestor is not None and ancestor_name is not None:
                # The client may have recorded the remote side's name as its own
                if kind is Kind.CLIENT and service_name and ancestor_name != service_name:
                    self.logger.debug("detected missing link to client span: spanId=%s", span.id)
                    self._add_link(ancestor_name, service_name, False)

                if kind is Kind.SERVER or parent is None:
                    parent = ancestor_name

                # The client half of the same RPC carries the error for both sides
                if (
                    not is_error
                    and remote_ancestor.kind is Kind.CLIENT
                    and remote_ancestor.id in (span.parent_id, span.id)
                ):
                    is_error = remote_ancestor.is_error

            if parent is None or child is None:
                self.logger.debug("cannot find remote ancestor; skipping: spanId=%s", span.id)
                continue

            self._add_link(parent, child, is_error)
        return self

    def _add_link(self, parent: str, child: str, is_error: bool) -> None:
        key = (parent, child)
        self._call_counts[key] += 1
        if is_error:
            self._error_counts[key] += 1

    def link(self) -> List[DependencyLink]:
        """Return the links counted so far, in first-seen order."""
        return _to_links(self._call_counts, self._error_counts)


class LinkMerger:
    """Sums dependency links that share the same (parent, child) pair."""

    def __init__(self) -> None:
        self._call_counts: Dict[Tuple[str, str], int] = defaultdict(int)
        self._error_counts: Dict[Tuple[str, str], int] = defaultdict(int)

    def add(self, links: Iterable[DependencyLink]) -> LinkMerger:
        for link in links:
            key = (link.parent, link.child)
            self._call_counts[key] += link.call_count
            self._error_counts[key] += link.error_count
        return self

    def merged(self) -> List[DependencyLink]:
        return _to_links(self._call_counts, self._error_counts)


def merge_links(*collections: Iterable[DependencyLink]) -> List[DependencyLink]:
    """Merge link collections (e.g. one per day) into one, summing counts.

    Each ordered (parent, child) pair appears once, in first-seen order.
    """
    merger = LinkMerger()
    for links in collections:
        merger.add(links)
    return merger.merged()


def _to_links(
    call_counts: Dict[Tuple[str, str], int], error_counts: Dict[Tuple[str, str], int]
) -> List[DependencyLink]:
    return [
        DependencyLink(
            parent=parent,
            child=child,
            call_count=call_count,
            error_count=error_counts.get((parent, child), 0),
        )
        for (parent, child), call_count in call_counts.items()
    ]
