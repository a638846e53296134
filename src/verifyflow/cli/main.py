from __future__ import annotations

import logging
import sys

from verifyflow.cli.handlers import (
    handle_archive_create,
    handle_config_validate,
    handle_gate_check,
    handle_graph_show,
    handle_report_render,
    handle_run,
)
from verifyflow.cli.parser import build_parser
from verifyflow.errors import ConfigValidationError, GraphError, TestPlanError, VerifyFlowError

_EXIT_OK = 0
_EXIT_GENERIC = 1
_EXIT_CONFIG = 2
_EXIT_GRAPH = 3


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        if args.command == "run":
            return handle_run(args)
        if args.command == "config" and args.config_command == "validate":
            return handle_config_validate(args)
        if args.command == "graph" and args.graph_command == "show":
            return handle_graph_show(args)
        if args.command == "gate" and args.gate_command == "check":
            return handle_gate_check(args)
        if args.command == "archive" and args.archive_command == "create":
            return handle_archive_create(args)
        if args.command == "report" and args.report_command == "render":
            return handle_report_render(args)
    except (ConfigValidationError, TestPlanError) as exc:
        print(str(exc), file=sys.stderr)
        return _EXIT_CONFIG
    except GraphError as exc:
        print(str(exc), file=sys.stderr)
        return _EXIT_GRAPH
    except VerifyFlowError as exc:
        print(str(exc), file=sys.stderr)
        return _EXIT_GENERIC

    parser.error("unhandled command")
    return _EXIT_GENERIC


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
