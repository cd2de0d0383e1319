"""Command line entry point.

    python -m billing_engine serve [--host ... --port ...]
    python -m billing_engine enforce-grace-periods   # cron entry
"""

import argparse
import json
import os
import sys

import uvicorn


def _add_logging_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=os.getenv("LOG_FORMAT", "json"),
        help="Log output format (default: json)",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("BILLING_CONFIG_PATH", "config/billing.yaml"),
        help="Path to billing.yaml (default: config/billing.yaml)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="billing-engine",
        description="Billing consistency engine - subscription activation and grace periods",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Host to bind to")
    serve.add_argument(
        "--port", type=int, default=int(os.getenv("PORT", "8080")), help="Port to bind to"
    )
    serve.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Enable auto-reload for development",
    )
    _add_logging_arguments(serve)

    enforce = commands.add_parser(
        "enforce-grace-periods", help="Run one grace period sweep and exit"
    )
    enforce.add_argument(
        "--no-auto-cancel",
        action="store_true",
        help="Only send warnings, never cancel",
    )
    _add_logging_arguments(enforce)
    return parser


def _serve(args: argparse.Namespace) -> int:
    if args.log_format == "console":
        print("=" * 60)
        print("Billing Consistency Engine v0.1.0")
        print("=" * 60)
        print(f"Host: {args.host}")
        print(f"Port: {args.port}")
        print(f"Config: {args.config}")
        print("=" * 60)

    try:
        uvicorn.run(
            "billing_engine.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,
        )
    except KeyboardInterrupt:
        print("\nShutting down gracefully...")
    return 0


def _enforce_grace_periods(args: argparse.Namespace) -> int:
    from billing_engine.logging_config import configure_logging
    from billing_engine.services.grace_period import GracePeriodEnforcer

    configure_logging(log_level=args.log_level, json_format=args.log_format == "json")
    enforcer = GracePeriodEnforcer()
    config = enforcer.config
    if args.no_auto_cancel:
        config = config.model_copy(update={"enable_auto_cancel": False})

    report = enforcer.enforce_grace_periods(config)
    print(json.dumps(report.model_dump(), indent=2))
    return 1 if report.errors else 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["BILLING_CONFIG_PATH"] = args.config

    try:
        if args.command == "serve":
            return _serve(args)
        return _enforce_grace_periods(args)
    except Exception as e:
        print(f"billing-engine {args.command} failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
