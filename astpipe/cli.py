"""
Command-line interface.

    astpipe optimize <input-file> [--max-iterations N] [--disable-pass NAME]...
                     [--unroll-factor N] [--dump-log] [-o OUT] [-v]

The optimized source is written to stdout (or ``-o``), the rewrite log
to stderr.

Exit codes:
    0  success
    1  internal invariant violation (a pass misbehaved)
    2  malformed input (unreadable file, syntax error, invalid tree)
    3  iteration budget exceeded (the tree is still written)
"""

import argparse
import ast
import logging
import sys
from pathlib import Path
from typing import List, Optional

from astpipe.pipeline.config import PASS_ORDER, PipelineConfig
from astpipe.pipeline.driver import PipelineDriver
from astpipe.pipeline.errors import InternalInvariantViolation, MalformedTree
from astpipe.utils.helpers import format_ns

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INTERNAL = 1
EXIT_MALFORMED = 2
EXIT_BUDGET = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="astpipe",
        description="Fact-driven AST optimizer for Python source.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    opt = sub.add_parser("optimize", help="optimize a Python source file")
    opt.add_argument("input", help="Python source file to optimize")
    opt.add_argument(
        "--max-iterations", type=int, default=PipelineConfig.max_iterations,
        help="stop after this many analysis/rewrite iterations (default: %(default)s)",
    )
    opt.add_argument(
        "--disable-pass", action="append", default=[], metavar="NAME",
        choices=PASS_ORDER,
        help="skip a pass; may be repeated (one of: %s)" % ", ".join(PASS_ORDER),
    )
    opt.add_argument(
        "--unroll-factor", type=int, default=PipelineConfig.unroll_factor,
        help="copies per step when partially unrolling (default: %(default)s)",
    )
    opt.add_argument(
        "--dump-log", action="store_true",
        help="print every applied and skipped rewrite to stderr",
    )
    opt.add_argument("-o", "--output", help="write the optimized source here instead of stdout")
    opt.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return parser


def _optimize(args) -> int:
    try:
        config = PipelineConfig(
            max_iterations=args.max_iterations,
            unroll_factor=args.unroll_factor,
        ).without(*args.disable_pass)
    except ValueError as e:
        print(f"astpipe: invalid configuration: {e}", file=sys.stderr)
        return EXIT_MALFORMED

    path = Path(args.input)
    try:
        source = path.read_text(encoding="utf-8")
        tree = ast.parse(source, filename=str(path))
    except (OSError, UnicodeDecodeError) as e:
        print(f"astpipe: cannot read {path}: {e}", file=sys.stderr)
        return EXIT_MALFORMED
    except SyntaxError as e:
        print(f"astpipe: {path}:{e.lineno}: syntax error: {e.msg}", file=sys.stderr)
        return EXIT_MALFORMED

    try:
        result = PipelineDriver(config).run(tree)
    except MalformedTree as e:
        print(f"astpipe: malformed tree: {e}", file=sys.stderr)
        return EXIT_MALFORMED
    except InternalInvariantViolation as e:
        print(f"astpipe: internal error in pass {e.pass_name}: {e}", file=sys.stderr)
        return EXIT_INTERNAL

    output = result.source + "\n"
    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
    else:
        sys.stdout.write(output)

    if args.dump_log:
        print(result.log.report(), file=sys.stderr)
        print(f"iterations: {result.iterations}  "
              f"time: {format_ns(result.wall_time_seconds * 1e9)}", file=sys.stderr)
    if result.warning is not None:
        print(f"astpipe: warning: {result.warning}", file=sys.stderr)
        return EXIT_BUDGET
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    if args.command == "optimize":
        return _optimize(args)
    parser.error(f"unknown command {args.command!r}")
    return EXIT_MALFORMED


if __name__ == "__main__":
    sys.exit(main())
