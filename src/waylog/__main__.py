import argparse
import asyncio
import json
import sys

from dotenv import load_dotenv
from loguru import logger

from waylog.app_config import load_json_config, parse_app_config, resolve_runtime_env
from waylog.bootstrap import bootstrap_runtime
from waylog.errors import StateCorruption, SubprocessLaunchFailure, UnknownProvider, WaylogError
from waylog.provider import SUPPORTED_PROVIDERS
from waylog.services.sync_report import SyncReporter

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_LAUNCH_FAILURE = 127


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="waylog",
        description="Capture AI coding-assistant sessions into per-project markdown archives.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="launch a provider CLI and record the session live")
    run.add_argument("provider", help=f"one of: {', '.join(SUPPORTED_PROVIDERS)}")
    run.add_argument("args", nargs=argparse.REMAINDER, help="arguments passed to the provider CLI after --")

    pull = commands.add_parser("pull", help="import past sessions for this project")
    pull.add_argument("--provider", action="append", dest="providers", metavar="NAME",
                      help="limit to one provider (repeatable)")
    pull.add_argument("--force", action="store_true", help="rewrite archives even when unchanged")
    pull.add_argument("--repair-state", action="store_true",
                      help="discard a corrupt sync ledger and rebuild it from existing archives")
    return parser


def _passthrough(args: list[str]) -> list[str]:
    if args and args[0] == "--":
        return args[1:]
    return args


def _fail(message: str) -> None:
    logger.error(message)
    print(f"waylog: {message}", file=sys.stderr)


async def _run(runtime, provider: str, args: list[str]) -> int:
    try:
        return await runtime.synchronizer.run(provider, args)
    except SubprocessLaunchFailure as ex:
        _fail(str(ex))
        return EXIT_LAUNCH_FAILURE


async def _pull(runtime, providers: list[str] | None, force: bool, repair_state: bool) -> int:
    try:
        summary = await runtime.synchronizer.pull(providers, force=force, repair_state=repair_state)
    except StateCorruption as ex:
        _fail(f"{ex}. Re-run with --repair-state to rebuild it from the archives.")
        return EXIT_USAGE

    for line in SyncReporter().format_summary_lines(summary):
        print(line)
    return EXIT_OK if summary.ok else EXIT_FAILURE


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    options = build_parser().parse_args(argv)
    env = resolve_runtime_env()

    try:
        app = parse_app_config(load_json_config(env.project_dir))
        runtime = bootstrap_runtime(app, env, interactive=options.command == "run")
    except (json.JSONDecodeError, TypeError, ValueError) as ex:
        print(f"waylog: invalid configuration: {ex}", file=sys.stderr)
        return EXIT_USAGE

    logger.debug(f"Logging: {', '.join(runtime.log_descriptions)}")
    try:
        if options.command == "run":
            return asyncio.run(_run(runtime, options.provider, _passthrough(options.args)))
        return asyncio.run(_pull(runtime, options.providers, options.force, options.repair_state))
    except UnknownProvider as ex:
        _fail(str(ex))
        return EXIT_USAGE
    except WaylogError as ex:
        _fail(str(ex))
        return EXIT_FAILURE


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
