import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from codepage_sandbox.config import get_settings
from codepage_sandbox.core import CodepageCore
from codepage_sandbox.domains.execution.models import ExecutionStatus
from codepage_sandbox.logging_config import configure_logging


def _load_test_data(path: Optional[str]):
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _run(args) -> int:
    source = Path(args.script).read_text(encoding="utf-8")
    test_data = _load_test_data(args.test_data)
    config = {
        "timeout_ms": args.timeout_ms,
        "memory_limit_bytes": args.memory_limit_bytes,
        "api_call_limit": args.api_call_limit,
    }

    core = CodepageCore(get_settings())
    result = core.execute(source, test_data, config, project_id=args.project, version_id=args.version)

    output = {"result": result.model_dump(mode="json")}
    if args.report:
        report = core.generate_report(args.project, args.version)
        output["report"] = report.model_dump(mode="json", exclude={"results"})

    json.dump(output, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0 if result.status == ExecutionStatus.PASSED else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="codepage-sandbox", description="Run codepage scripts in the sandbox")
    subs = p.add_subparsers(dest="cmd", required=True)

    run = subs.add_parser("run", help="Execute a script file and print the result as JSON")
    run.add_argument("script", type=str, help="Path to the script source")
    run.add_argument("--test-data", type=str, help="JSON file exposed to the script as testData")
    run.add_argument("--timeout-ms", type=int, help="Wall-clock limit (default from settings)")
    run.add_argument("--memory-limit-bytes", type=int, help="Memory limit (default from settings)")
    run.add_argument("--api-call-limit", type=int, help="API call ceiling (default from settings)")
    run.add_argument("--project", type=str, default="adhoc")
    run.add_argument("--version", type=str, default="current")
    run.add_argument("--report", action="store_true", help="Also print the aggregated report")
    run.set_defaults(func=_run)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
