"""Span reader for Zipkin v2 JSON and OTLP NDJSON trace files."""

from __future__ import annotations

import gzip
import json
import sys
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Any, Optional


class Kind(Enum):
    CLIENT = "CLIENT"
    SERVER = "SERVER"
    PRODUCER = "PRODUCER"
    CONSUMER = "CONSUMER"
    UNSET = "UNSET"


_KIND_MAP = {
    "CLIENT": Kind.CLIENT,
    "SERVER": Kind.SERVER,
    "PRODUCER": Kind.PRODUCER,
    "CONSUMER": Kind.CONSUMER,
    "SPAN_KIND_CLIENT": Kind.CLIENT,
    "SPAN_KIND_SERVER": Kind.SERVER,
    "SPAN_KIND_PRODUCER": Kind.PRODUCER,
    "SPAN_KIND_CONSUMER": Kind.CONSUMER,
}

# OTLP protobuf-JSON may encode kind as its enum number
_OTLP_KIND_NUMBERS = {2: Kind.SERVER, 3: Kind.CLIENT, 4: Kind.PRODUCER, 5: Kind.CONSUMER}

_OTLP_STATUS_ERROR = ("STATUS_CODE_ERROR", 2)


@dataclass
class Endpoint:
    """The network context of a node in the service graph."""

    service_name: str = ""
    ipv4: str = ""
    port: int = 0


@dataclass
class Annotation:
    timestamp: int
    value: str


@dataclass
class Span:
    """A single span of a trace, independent of the format it was read from."""

    trace_id: str
    id: str
    parent_id: Optional[str] = None
    kind: Kind = Kind.UNSET
    name: str = ""
    timestamp: int = 0
    duration: int = 0
    local_endpoint: Optional[Endpoint] = None
    remote_endpoint: Optional[Endpoint] = None
    tags: dict[str, str] = field(default_factory=dict)
    annotations: list[Annotation] = field(default_factory=list)
    shared: bool = False

    @property
    def local_service_name(self) -> Optional[str]:
        return _service_name(self.local_endpoint)

    @property
    def remote_service_name(self) -> Optional[str]:
        return _service_name(self.remote_endpoint)

    @property
    def is_error(self) -> bool:
        """True when the span carries an ``error`` tag or annotation."""
        if "error" in self.tags:
            return True
        return any(a.value == "error" for a in self.annotations)


def _service_name(endpoint: Optional[Endpoint]) -> Optional[str]:
    if endpoint is None:
        return None
    name = endpoint.service_name.strip().lower()
    return name or None


def normalize_id(raw_id: str | None) -> str:
    """Normalize a trace/span ID to a lowercase, zero-padded hex string.

    Span IDs and 64-bit trace IDs are padded to 16 characters, longer trace
    IDs to 32. Empty/None values normalize to an empty string.
    """
    if not raw_id:
        return ""
    hex_id = str(raw_id).strip().lower()
    if not hex_id:
        return ""
    return hex_id.zfill(32 if len(hex_id) > 16 else 16)


def _parse_kind(raw_kind: Any) -> Kind:
    if isinstance(raw_kind, int):
        return _OTLP_KIND_NUMBERS.get(raw_kind, Kind.UNSET)
    return _KIND_MAP.get(str(raw_kind or "").strip().upper(), Kind.UNSET)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _parse_endpoint(raw: Any) -> Optional[Endpoint]:
    if not isinstance(raw, dict):
        return None
    return Endpoint(
        service_name=str(raw.get("serviceName") or ""),
        ipv4=str(raw.get("ipv4") or ""),
        port=int(raw.get("port") or 0),
    )


# ============================================================================
# Zipkin v2 JSON
# ============================================================================


def _parse_zipkin_span(raw: dict[str, Any]) -> Span:
    """Convert a Zipkin v2 span object into a Span."""
    trace_id = normalize_id(raw.get("traceId"))
    span_id = normalize_id(raw.get("id"))
    if not trace_id or not span_id:
        raise ValueError("Span is missing traceId or id")

    tags = raw.get("tags") or {}
    if not isinstance(tags, dict):
        tags = {}
    annotations = []
    for a in raw.get("annotations") or []:
        if isinstance(a, dict) and a.get("value"):
            annotations.append(Annotation(timestamp=int(a.get("timestamp") or 0), value=str(a["value"])))

    return Span(
        trace_id=trace_id,
        id=span_id,
        parent_id=normalize_id(raw.get("parentId")) or None,
        kind=_parse_kind(raw.get("kind")),
        name=str(raw.get("name") or ""),
        timestamp=int(raw.get("timestamp") or 0),
        duration=int(raw.get("duration") or 0),
        local_endpoint=_parse_endpoint(raw.get("localEndpoint")),
        remote_endpoint=_parse_endpoint(raw.get("remoteEndpoint")),
        tags={str(k): _stringify(v) for k, v in tags.items()},
        annotations=annotations,
        shared=bool(raw.get("shared", False)),
    )


def _parse_zipkin_spans(raw_spans: list[Any]) -> list[Span]:
    spans: list[Span] = []
    for raw in raw_spans:
        # The Zipkin query API returns a list of traces, each a list of spans
        if isinstance(raw, list):
            spans.extend(_parse_zipkin_spans(raw))
            continue
        if not isinstance(raw, dict):
            continue
        try:
            spans.append(_parse_zipkin_span(raw))
        except (KeyError, TypeError, ValueError):
            # Skip individual malformed spans within a valid document
            continue
    return spans


# ============================================================================
# OTLP ExportTraceServiceRequest
# ============================================================================


def flatten_attributes(attrs: list[dict] | None) -> dict[str, Any]:
    """Convert OTLP attribute list to a flat dict.

    Each attribute is ``{"key": "...", "value": {"string_value": "..."}}``.
    Both snake_case and camelCase value keys are accepted.
    """
    if not attrs:
        return {}
    result: dict[str, Any] = {}
    for attr in attrs:
        key = attr.get("key", "")
        value_obj = attr.get("value", {})
        if not key or not isinstance(value_obj, dict):
            continue
        result[key] = _extract_value(value_obj)
    return result


def _extract_value(value_obj: dict[str, Any]) -> Any:
    """Extract a typed value from an OTLP attribute value object."""
    for key in ("string_value", "stringValue"):
        if key in value_obj:
            return value_obj[key]
    for key in ("int_value", "intValue"):
        if key in value_obj:
            return int(value_obj[key])
    for key in ("double_value", "doubleValue"):
        if key in value_obj:
            return float(value_obj[key])
    for key in ("bool_value", "boolValue"):
        if key in value_obj:
            return bool(value_obj[key])
    array_val = value_obj.get("array_value", value_obj.get("arrayValue"))
    if array_val is not None:
        if isinstance(array_val, dict) and "values" in array_val:
            return [_extract_value(v) for v in array_val["values"]]
        return []
    return None


def _parse_otlp_span(raw: dict[str, Any], local_service: str) -> Span:
    """Convert an OTLP span dict into a Span."""
    trace_id = normalize_id(raw.get("trace_id") or raw.get("traceId", ""))
    span_id = normalize_id(raw.get("span_id") or raw.get("spanId", ""))
    if not trace_id or not span_id:
        raise ValueError("Span is missing trace_id or span_id")
    parent_span_id = normalize_id(raw.get("parent_span_id") or raw.get("parentSpanId", ""))

    # Timestamps can be string or int
    start_nano = int(raw.get("start_time_unix_nano") or raw.get("startTimeUnixNano", 0))
    end_nano = int(raw.get("end_time_unix_nano") or raw.get("endTimeUnixNano", 0))

    attributes = flatten_attributes(raw.get("attributes"))
    tags = {k: _stringify(v) for k, v in attributes.items() if v is not None}
    remote_service = tags.pop("peer.service", "")

    status = raw.get("status", {})
    if isinstance(status, dict) and status.get("code") in _OTLP_STATUS_ERROR:
        tags["error"] = status.get("message") or "true"

    annotations = []
    events = raw.get("events", [])
    for event in events if isinstance(events, list) else []:
        if isinstance(event, dict) and event.get("name"):
            event_nano = int(event.get("time_unix_nano") or event.get("timeUnixNano", 0))
            annotations.append(Annotation(timestamp=event_nano // 1000, value=event["name"]))

    return Span(
        trace_id=trace_id,
        id=span_id,
        parent_id=parent_span_id or None,
        kind=_parse_kind(raw.get("kind")),
        name=str(raw.get("name", "")),
        timestamp=start_nano // 1000,
        duration=(end_nano - start_nano) // 1000 if end_nano > start_nano else 0,
        local_endpoint=Endpoint(service_name=local_service) if local_service else None,
        remote_endpoint=Endpoint(service_name=remote_service) if remote_service else None,
        tags=tags,
        annotations=annotations,
    )


def _parse_otlp_request(data: dict[str, Any]) -> list[Span]:
    resource_spans = data.get("resource_spans", data.get("resourceSpans"))
    if resource_spans is None or not isinstance(resource_spans, list):
        raise ValueError("Missing or invalid resource_spans")

    spans: list[Span] = []
    for rs in resource_spans:
        if not isinstance(rs, dict):
            continue

        resource = rs.get("resource", {})
        resource_attrs = flatten_attributes(
            resource.get("attributes") if isinstance(resource, dict) else None
        )
        local_service = str(resource_attrs.get("service.name") or "")

        scope_spans = rs.get("scope_spans") or rs.get("scopeSpans") or []
        if not isinstance(scope_spans, list):
            continue

        for ss in scope_spans:
            if not isinstance(ss, dict):
                continue
            raw_spans = ss.get("spans", [])
            if not isinstance(raw_spans, list):
                continue

            for raw in raw_spans:
                if not isinstance(raw, dict):
                    continue
                try:
                    spans.append(_parse_otlp_span(raw, local_service))
                except (KeyError, TypeError, ValueError):
                    continue

    return spans


# ============================================================================
# Documents, streams and files
# ============================================================================


def _parse_document(data: Any) -> list[Span]:
    if isinstance(data, list):
        return _parse_zipkin_spans(data)
    if not isinstance(data, dict):
        raise ValueError("Document is not a JSON array or object")
    return _parse_otlp_request(data)


def parse_line(line: str) -> list[Span]:
    """Parse a single JSON document: a Zipkin v2 span list or an OTLP request.

    Raises ValueError if the JSON is malformed or matches neither format.
    """
    return _parse_document(json.loads(line))


def parse_stream(stream: IO) -> list[Span]:
    """Parse a trace stream, returning all extracted spans.

    The stream is either a single (possibly multi-line) JSON document or
    NDJSON with one document per line. Malformed lines are skipped with
    warnings.
    """
    lines: list[str] = []
    for line in stream:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        lines.append(line)

    content = "".join(lines).strip()
    if not content:
        return []

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        pass
    else:
        try:
            return _parse_document(data)
        except ValueError as exc:
            warnings.warn(f"Skipping malformed document: {exc}", stacklevel=2)
            return []

    spans: list[Span] = []
    for line_num, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            spans.extend(parse_line(line))
        except (json.JSONDecodeError, ValueError) as exc:
            warnings.warn(
                f"Skipping malformed line {line_num}: {exc}",
                stacklevel=2,
            )
    return spans


def parse_file(path: str) -> list[Span]:
    """Parse a trace file (plain or gzip-compressed).

    Supports:
    - Plain text ``.json`` files
    - Gzip-compressed ``.json.gz`` files
    - ``-`` for stdin
    """
    if path == "-":
        return parse_stream(sys.stdin)

    if path.endswith(".gz"):
        with gzip.open(path, "rt", encoding="utf-8") as f:
            return parse_stream(f)

    with open(path, encoding="utf-8") as f:
        return parse_stream(f)
