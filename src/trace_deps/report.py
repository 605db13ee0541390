"""Dependency link report — derives links from span files and reads/writes link JSON."""

from __future__ import annotations

import gzip
import json
import sys
import warnings
from dataclasses import dataclass
from typing import IO, Any, Iterable, List, Optional

from trace_deps.linker import DependencyLink, DependencyLinker
from trace_deps.parser import Span
from trace_deps.tree import group_by_trace


@dataclass
class LinkOptions:
    """Options controlling link derivation."""

    strict_trace_id: bool = True


def link_spans(spans: List[Span], options: Optional[LinkOptions] = None) -> List[DependencyLink]:
    """Group spans into traces and derive their merged dependency links."""
    if options is None:
        options = LinkOptions()

    linker = DependencyLinker()
    for trace_spans in group_by_trace(spans, options.strict_trace_id).values():
        linker.put_trace(trace_spans)
    return linker.link()


def _serialize(link: DependencyLink) -> dict[str, Any]:
    return {
        "parent": link.parent,
        "child": link.child,
        "callCount": link.call_count,
        "errorCount": link.error_count,
    }


def dump_links(links: Iterable[DependencyLink]) -> str:
    """Serialize links to a JSON array using the Zipkin field names."""
    return json.dumps([_serialize(link) for link in links], separators=(",", ":"))


def _first(row: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in row:
            return row[key]
    return None


def parse_links(data: Any) -> List[DependencyLink]:
    """Convert a decoded link report into DependencyLink values.

    Accepts a list of link objects or ``{"data": [...]}``. Rows written before
    error counting existed have no error count and default to 0. Rows without
    a call count, or otherwise unusable, are skipped with warnings.
    """
    if isinstance(data, dict):
        data = data.get("data")
    if not isinstance(data, list):
        raise ValueError("Link report is not a JSON array")

    links: List[DependencyLink] = []
    for index, row in enumerate(data):
        if not isinstance(row, dict):
            warnings.warn(f"Skipping malformed link {index}: not an object", stacklevel=2)
            continue
        call_count = _first(row, "callCount", "call_count")
        if call_count is None:
            warnings.warn(f"Skipping malformed link {index}: missing callCount", stacklevel=2)
            continue
        error_count = _first(row, "errorCount", "error_count")
        try:
            links.append(
                DependencyLink(
                    parent=str(row.get("parent") or ""),
                    child=str(row.get("child") or ""),
                    call_count=int(call_count),
                    error_count=int(error_count or 0),
                )
            )
        except (TypeError, ValueError) as exc:
            warnings.warn(f"Skipping malformed link {index}: {exc}", stacklevel=2)
    return links


def _read(stream: IO) -> List[DependencyLink]:
    return parse_links(json.load(stream))


def load_links(path: str) -> List[DependencyLink]:
    """Read a link report file (plain, gzip-compressed, or ``-`` for stdin)."""
    if path == "-":
        return _read(sys.stdin)

    if path.endswith(".gz"):
        with gzip.open(path, "rt", encoding="utf-8") as f:
            return _read(f)

    with open(path, encoding="utf-8") as f:
        return _read(f)


def write_links(links: Iterable[DependencyLink], path: str) -> None:
    """Write a link report to ``path``, or to stdout when it is ``-``."""
    content = dump_links(links) + "\n"
    if path == "-":
        sys.stdout.write(content)
        return

    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
