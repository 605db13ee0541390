"""CLI entry point for trace-deps."""

from __future__ import annotations

import argparse
import logging
import sys

from trace_deps import __version__
from trace_deps.linker import merge_links
from trace_deps.parser import parse_file
from trace_deps.report import LinkOptions, link_spans, load_links, write_links


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trace-deps",
        description="Derive service dependency links from trace files",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log trace tree diagnostics to stderr",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    link = subparsers.add_parser(
        "link",
        help="Derive dependency links from span files",
    )
    link.add_argument(
        "inputs",
        nargs="+",
        help="Span files (Zipkin v2 JSON or OTLP NDJSON, optionally .gz), or - for stdin",
    )
    link.add_argument(
        "--no-strict-trace-id",
        action="store_true",
        help="Group spans by the low 64 bits of their trace ID",
    )

    merge = subparsers.add_parser(
        "merge",
        help="Merge dependency link reports, e.g. one per day",
    )
    merge.add_argument(
        "inputs",
        nargs="+",
        help="Link report files (.json or .json.gz), or - for stdin",
    )

    for sub in (link, merge):
        sub.add_argument(
            "-o",
            "--output",
            default="dependencies.json",
            help="Output JSON file path, or - for stdout (default: dependencies.json)",
        )
    return parser


def main() -> int:
    """CLI entry point. Returns 0 on success, 1 on error."""
    args = _build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.command == "link":
            spans = []
            for path in args.inputs:
                spans.extend(parse_file(path))
            options = LinkOptions(strict_trace_id=not args.no_strict_trace_id)
            links = link_spans(spans, options)
            source = f"{len(spans)} spans"
        else:
            links = merge_links(*(load_links(path) for path in args.inputs))
            source = f"{len(args.inputs)} reports"

        write_links(links, args.output)

        calls = sum(link.call_count for link in links)
        errors = sum(link.error_count for link in links)
        print(
            f"Dependencies written: {args.output} "
            f"({source}, {len(links)} links: {calls} calls, {errors} errors)",
            file=sys.stderr if args.output == "-" else sys.stdout,
        )
        return 0

    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except PermissionError as exc:
        print(f"Error: Permission denied — {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
