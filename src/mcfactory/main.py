"""
Command-line entry point for MCFactory.

    mcfactory init
    mcfactory validate-config
    mcfactory list-providers
    mcfactory run-pipeline safe-translate --input '"hello"' --continue-on-error
"""

import argparse
import asyncio
import json
import sys
from typing import Any

from . import __version__
from .client import MCFactory
from .config.loader import CONFIG_PATH, load_settings, validate_config_file, write_default_config
from .config.settings import Settings
from .core.errors import MCFactoryError
from .observability.logging import get_logger, setup_logging
from .observability.metrics import setup_meter_provider, shutdown_metrics
from .observability.tracing import get_tracing_manager, setup_tracing

logger = get_logger(__name__)


def _parse_input(raw: str | None) -> Any:
    """JSON when it parses, otherwise the raw string."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _configure_observability(settings: Settings, debug: bool = False) -> None:
    observability = settings.observability
    setup_logging("DEBUG" if debug or settings.debug else observability.log_level)
    if observability.enable_metrics:
        setup_meter_provider(
            observability.service_name,
            observability.service_version,
            observability.otlp_endpoint,
        )
    if observability.enable_tracing:
        setup_tracing(
            observability.service_name,
            observability.service_version,
            observability.otlp_endpoint,
        )


def _shutdown_observability() -> None:
    """Flush exporters before the process exits."""
    try:
        shutdown_metrics()
        get_tracing_manager().shutdown()
    except Exception as e:
        logger.warning(f"Error during telemetry shutdown: {e}")


def _cmd_init(args: argparse.Namespace) -> int:
    if write_default_config(args.config):
        print(f"Created default MCFactory configuration at {args.config}")
        print("Next steps:")
        print(f"1. Edit {args.config} to add your providers and API keys")
        print('2. Run "mcfactory validate-config" to verify your setup')
    else:
        print(f"MCFactory configuration already exists at {args.config}")
        print('Use "mcfactory validate-config" to check your configuration.')
    return 0


def _cmd_validate(args: argparse.Namespace) -> int:
    issues = validate_config_file(args.config)
    if issues:
        print("Configuration validation failed:", file=sys.stderr)
        for issue in issues:
            print(f"  - {issue}", file=sys.stderr)
        return 1

    settings = load_settings(args.config)
    print("Configuration is valid")
    print(f"Found {len(settings.providers)} provider(s) configured")
    if settings.pipelines:
        print(f"Found {len(settings.pipelines)} pipeline(s) defined")
    return 0


async def _list_providers(settings: Settings) -> list[dict[str, Any]]:
    async with MCFactory(settings) as mcf:
        return [
            {"name": d.name, "capabilities": sorted(d.capabilities)} for d in mcf.list_providers()
        ]


def _cmd_list_providers(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    _configure_observability(settings)
    print(json.dumps(asyncio.run(_list_providers(settings)), indent=2))
    return 0


async def _run_pipeline(settings: Settings, args: argparse.Namespace):
    async with MCFactory(settings) as mcf:
        return await mcf.run_pipeline(
            args.name,
            _parse_input(args.input),
            continue_on_error=True if args.continue_on_error else None,
            deadline=args.deadline,
            debug=args.debug or settings.debug,
        )


def _cmd_run_pipeline(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    _configure_observability(settings, args.debug)
    result = asyncio.run(_run_pipeline(settings, args))
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mcfactory", description="MCFactory AI task pipelines")
    parser.add_argument("--version", action="version", version=f"MCFactory v{__version__}")
    parser.add_argument(
        "--config", default=CONFIG_PATH, help=f"Path to the config file (default: {CONFIG_PATH})"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init = subparsers.add_parser("init", help="Create a default configuration file")
    init.set_defaults(handler=_cmd_init)

    validate = subparsers.add_parser("validate-config", help="Validate the configuration file")
    validate.set_defaults(handler=_cmd_validate)

    providers = subparsers.add_parser("list-providers", help="List configured providers")
    providers.set_defaults(handler=_cmd_list_providers)

    run = subparsers.add_parser("run-pipeline", help="Run a configured pipeline")
    run.add_argument("name", help="Pipeline name")
    run.add_argument("--input", default=None, help="Initial data (JSON, or a plain string)")
    run.add_argument("--continue-on-error", action="store_true", help="Keep going after failed steps")
    run.add_argument("--debug", action="store_true", help="Verbose logs and trace lines")
    run.add_argument("--deadline", type=float, default=None, help="Run deadline in seconds")
    run.set_defaults(handler=_cmd_run_pipeline)

    return parser


def main(argv=None) -> int:
    """Parse arguments and dispatch to a command; returns the exit code."""
    args = build_parser().parse_args(argv)
    try:
        return args.handler(args)
    except MCFactoryError as e:
        logger.error(f"{args.command} failed: {e.describe()}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        _shutdown_observability()


def cli_main():
    """CLI entry point."""
    try:
        sys.exit(main(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nMCFactory interrupted", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    cli_main()
