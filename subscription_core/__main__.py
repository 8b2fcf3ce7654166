"""Command line entry point.

    python -m subscription_core [serve] [--host ...] [--port ...]
    python -m subscription_core check-config --config config/tiers.yaml
"""

import argparse
import os
import sys
from typing import Optional, Sequence

import uvicorn

from subscription_core.config import Config, ConfigurationError
from subscription_core.services.billing_gateway import format_amount
from subscription_core.utils import duration_to_timedelta

VERSION = "0.1.0"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="subscription-core",
        description="Subscription Core - paid subscriptions with invoice billing and expiration scheduling",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/tiers.yaml"),
        help="Path to tiers.yaml configuration file (default: config/tiers.yaml)",
    )
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Run the HTTP service (default)")
    serve.add_argument(
        "--host",
        default=os.getenv("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8080")),
        help="Port to bind to (default: 8080)",
    )
    serve.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
    )
    serve.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=os.getenv("LOG_FORMAT", "json"),
    )

    commands.add_parser("check-config", help="Validate the configuration and list the tiers")
    return parser


def check_config(config_path: str) -> int:
    """Load and validate the configuration, then print the tier catalogue.

    Returns:
        Process exit code
    """
    try:
        config = Config(config_path)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    print(f"Config: {config.config_path}")
    for tier in config.tiers:
        print(
            f"  {tier.id:<12} {format_amount(tier.price_micros):>10} {tier.currency}"
            f"  {tier.duration:<6} ({duration_to_timedelta(tier.duration)})"
        )

    billing = config.billing
    if not billing.secret_key or not billing.site_id:
        print("Warning: billing secret key or site id is not set", file=sys.stderr)
    if billing.poll_interval_seconds:
        print(f"Payment polling: every {billing.poll_interval_seconds}s")
    else:
        print("Payment polling: off")
    return 0


def serve(args: argparse.Namespace) -> int:
    """Run uvicorn with the application factory."""
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config

    if args.log_format == "console":
        print(f"Subscription Core v{VERSION} on {args.host}:{args.port} (config: {args.config})")

    # One worker only: the scheduler and the store live in the process
    try:
        uvicorn.run(
            "subscription_core.main:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            workers=1,
            access_log=False,
        )
    except KeyboardInterrupt:
        return 0
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "check-config":
        return check_config(args.config)
    if args.command is None:
        # No subcommand: serve with the defaults
        args = parser.parse_args([*(argv if argv is not None else sys.argv[1:]), "serve"])
    return serve(args)


if __name__ == "__main__":
    sys.exit(main())
