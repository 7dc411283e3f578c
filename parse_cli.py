#!/usr/bin/env python3
"""CLI for the transaction directive parser."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from txn_config import GlobalConfig, ParseError, load_global_config, parse_script


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Parse the //! directives of a transaction test script into per-transaction JSON configs."
    )
    parser.add_argument("script_path", type=Path, help="Path to the test script")
    parser.add_argument(
        "-a",
        "--accounts",
        type=Path,
        help="JSON account registry ({'accounts': {...}, 'genesis_accounts': {...}})",
    )
    parser.add_argument("-o", "--output", type=Path, help="Output JSON file path")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    args = parser.parse_args(argv)

    try:
        global_config = load_global_config(args.accounts) if args.accounts else GlobalConfig()
        if not args.script_path.exists():
            raise ParseError(f"Missing test script: {args.script_path}")
        try:
            source_text = args.script_path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError) as exc:
            raise ParseError(f"Cannot read test script {args.script_path}: {exc}") from exc
        result = parse_script(source_text, global_config)
    except ParseError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    indent = 2 if args.pretty or args.output else None
    rendered = json.dumps(result, ensure_ascii=False, indent=indent)

    if args.output:
        args.output.write_text(rendered + ("\n" if indent is not None else ""), encoding="utf-8")
    else:
        print(rendered)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
