"""deploy-autofix command line.

Commands:
    serve      Run the HTTP API
    classify   Classify an error message and print the policy decision
    scan       Compare a repository against the deployment baseline
    fix        Apply catalog fixes to a repository through a pull request
    probe      Probe the service health endpoint once (exit 1 when unhealthy)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from .classifier import ErrorClassifier, ErrorReport
from .config import get_config
from .decision import DecisionPolicy
from .impact import ImpactAssessor
from .services import Services, build_services

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="deploy-autofix", description=__doc__,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    classify = sub.add_parser("classify", help="Classify an error message")
    classify.add_argument("message", help="Error message text")
    classify.add_argument("--stack-file", help="File containing the stack trace")
    classify.add_argument("--platform", default="railway")
    classify.add_argument("--path", default=None, help="Request path the error occurred on")

    scan = sub.add_parser("scan", help="Analyze a repository")
    scan.add_argument("repo", nargs="?", help="owner/name (default: TARGET_REPO)")

    fix = sub.add_parser("fix", help="Apply fixes through a pull request")
    fix.add_argument("repo", nargs="?", help="owner/name (default: TARGET_REPO)")
    fix.add_argument(
        "--fix", dest="fixes", action="append", default=[],
        help="Fix kind to apply (repeatable). Defaults to the scan's recommendations.",
    )
    merge = fix.add_mutually_exclusive_group()
    merge.add_argument("--auto-merge", dest="auto_merge", action="store_true", default=None)
    merge.add_argument("--no-auto-merge", dest="auto_merge", action="store_false")

    probe = sub.add_parser("probe", help="Probe the health endpoint")
    probe.add_argument("--target", default="default")

    return parser.parse_args(argv)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _repo(args: argparse.Namespace) -> str:
    repo = args.repo or get_config().github.target_repo
    if not repo:
        raise SystemExit("No repository given and TARGET_REPO is not set")
    return repo


def cmd_classify(args: argparse.Namespace) -> int:
    stack = None
    if args.stack_file:
        with open(args.stack_file) as fh:
            stack = fh.read()
    report = ErrorReport.from_dict({
        "raw_message": args.message,
        "stack_trace": stack,
        "platform": args.platform,
        "path": args.path,
    })
    classification = ErrorClassifier().classify(report)
    impact = ImpactAssessor().assess(report)
    decision = DecisionPolicy().decide(classification, impact)
    _print(decision.to_dict())
    return 0


async def cmd_scan(args: argparse.Namespace, services: Services) -> int:
    analysis = await services.analyzer.analyze(_repo(args))
    _print(analysis.to_dict())
    return 0


async def cmd_fix(args: argparse.Namespace, services: Services) -> int:
    repo = _repo(args)
    fixes: list[Any] = list(args.fixes)
    if not fixes:
        analysis = await services.analyzer.analyze(repo)
        if analysis.healthy:
            logger.info("%s matches the baseline; nothing to fix", repo)
            _print(analysis.to_dict())
            return 0
        fixes = list(analysis.recommended_fix_ids)

    attempt = await services.executor.execute(repo, fixes, auto_merge=args.auto_merge)
    await services.sink.on_fix_attempted(attempt)
    _print(attempt.to_dict())
    return 0 if attempt.success else 1


async def cmd_probe(args: argparse.Namespace, services: Services) -> int:
    result = await services.monitor.probe(args.target)
    _print({**result.to_dict(), "state": services.monitor.state(args.target).value})
    return 0 if result.healthy else 1


async def _run_async(args: argparse.Namespace) -> int:
    services = build_services()
    try:
        if args.command == "scan":
            return await cmd_scan(args, services)
        if args.command == "fix":
            return await cmd_fix(args, services)
        return await cmd_probe(args, services)
    finally:
        await services.close()


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    config = get_config()
    uvicorn.run(
        "deploy_autofix.api:create_app",
        factory=True,
        host=args.host or config.api.host,
        port=args.port or config.api.port,
        access_log=config.api.access_log,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=(args.log_level or get_config().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "serve":
            return cmd_serve(args)
        if args.command == "classify":
            return cmd_classify(args)
        return asyncio.run(_run_async(args))
    except Exception:
        logger.exception("deploy-autofix %s failed", args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
