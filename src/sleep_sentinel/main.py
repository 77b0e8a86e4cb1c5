"""Application entrypoint — start the API server or run a one-off check."""

from __future__ import annotations

import argparse
import asyncio
import sys

import uvicorn

from sleep_sentinel.config import Settings, get_settings
from sleep_sentinel.logger import setup_logging


async def _check_once(settings: Settings) -> str:
    """Evaluate once against the configured source and return the snapshot JSON."""
    from sleep_sentinel.collectors.registry import get_source
    from sleep_sentinel.models import DetectionConfig
    from sleep_sentinel.monitors.detection import SleepDetectionEngine

    source = get_source(settings.health_source)
    try:
        engine = SleepDetectionEngine(source, config=DetectionConfig.from_settings(settings))
        _, snapshot = await engine.evaluate_with_snapshot()
    finally:
        await source.close()
    return snapshot.model_dump_json(indent=2)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="sleep-sentinel",
        description="Drowsiness detection from wearable signals.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── serve ─────────────────────────────────────────────────
    serve_parser = sub.add_parser("serve", help="Start the API server.")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")

    # ── check ─────────────────────────────────────────────────
    check_parser = sub.add_parser("check", help="Run a single evaluation and print the snapshot.")
    check_parser.add_argument(
        "--source", choices=["memory", "fitbit"], default=None,
        help="Override the configured health source.",
    )

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "serve":
        uvicorn.run(
            "sleep_sentinel.api.server:app",
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
            reload=args.reload,
        )
    elif args.command == "check":
        if args.source:
            settings = settings.model_copy(update={"health_source": args.source})
        print(asyncio.run(_check_once(settings)))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
