"""Command-line interface for docx2exam."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from .version import __version__


def _get_usage() -> str:
    return (
        f"docx2exam {__version__}\n"
        "Usage:\n"
        "  docx2exam [--help] [--version|--ver]\n"
        "  docx2exam --input FILE.docx --to-dir TO_DIR [options]\n\n"
        "Options:\n"
        "  --concurrency N              Formula conversions in flight (default: 3)\n"
        "  --translator-cmd CMD         Equation object to MathML command ({input} placeholder)\n"
        "  --rasterizer-cmd CMD         WMF/EMF to PNG command ({input}/{output} placeholders)\n"
        "  --enable-pic2tex             Enable Pix2Tex recovery of formula preview images\n"
        "  --stdout                     Also print the result JSON to stdout\n"
        "  --verbose                    Verbose progress logs\n"
        "  --debug                      Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("--input", help="Source .docx document")
    parser.add_argument("--to-dir", help="Output directory")
    parser.add_argument("--concurrency", help="Maximum number of formula conversions in flight")
    parser.add_argument("--translator-cmd", help="Command converting an equation object to MathML")
    parser.add_argument("--rasterizer-cmd", help="Command rasterizing WMF/EMF images to PNG")
    parser.add_argument(
        "--enable-pic2tex",
        "-enable-pic2tex",
        action="store_true",
        help="Run Pix2Tex on formula preview images when no MathML could be recovered",
    )
    parser.add_argument("--stdout", action="store_true", help="Print the result JSON to stdout")
    parser.add_argument("--verbose", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    return parser


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return 2

    if not argv or args.help:
        print(_get_usage())
        return 0

    if args.version or args.ver:
        print(__version__)
        return 0

    if not args.input or not args.to_dir:
        print(_get_usage())
        print("Options --input and --to-dir are required unless --help or --version/--ver is used", file=sys.stderr)
        return 6

    try:
        from docx2exam import core
    except Exception as exc:
        print(f"Unable to import docx2exam core: {exc}", file=sys.stderr)
        return 6

    concurrency = None
    if args.concurrency is not None:
        try:
            concurrency = core.parse_concurrency(args.concurrency)
        except ValueError as exc:
            print(f"Invalid value for --concurrency: {exc}", file=sys.stderr)
            return core.EXIT_INVALID_ARGS

    input_path = Path(args.input).expanduser().resolve()
    to_dir = Path(args.to_dir).expanduser().resolve()

    if not input_path.exists() or not input_path.is_file():
        print(f"Input file not found: {input_path}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS
    if input_path.suffix.lower() != ".docx":
        print(f"Input file must be a .docx document: {input_path}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    if to_dir.exists():
        if not to_dir.is_dir():
            print(f"Output path is not a directory: {to_dir}", file=sys.stderr)
            return core.EXIT_OUTPUT_DIR
        if any(to_dir.iterdir()):
            print(f"Output directory must be empty: {to_dir}", file=sys.stderr)
            return core.EXIT_OUTPUT_DIR

    core.setup_logging(args.verbose, args.debug)

    config = core.config_from_env(
        concurrency=concurrency,
        translator_command=args.translator_cmd,
        rasterizer_command=args.rasterizer_cmd,
        enable_pix2tex=bool(args.enable_pic2tex),
        verbose=bool(args.verbose),
        debug=bool(args.debug),
    )

    try:
        payload, _, _ = core.run_conversion_pipeline(input_path, to_dir, config)
    except core.ConversionError as exc:
        print(json.dumps(core.build_error_payload(str(exc)), ensure_ascii=False))
        return core.EXIT_INVALID_ARGS
    except OSError as exc:
        print(f"Unable to write output to {to_dir}: {exc}", file=sys.stderr)
        return core.EXIT_OUTPUT_DIR

    if args.stdout:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
