#!/usr/bin/env python3
"""
Tenant bootstrap worker - run one bootstrap from the command line.

Credentials come from BOOTSTRAP_* environment variables (or a .env file).
Progress and errors are written to stderr; a JSON summary goes to stdout.

Usage:
    tenant-bootstrap --spec-file spec.json --tenant my-tenant [--language en]
        [--item-topics amend|replace] [--item-publish auto|publish] [--log-level silent|verbose]

Exit codes: 0 done (errors may still have been reported per item),
1 could not run, 130 interrupted.
"""

import argparse
import asyncio
import json
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .bootstrapper import Bootstrapper, EventName
from .config import BootstrapOptions, BootstrapSettings, setup_logging
from .models import AreaUpdate, BootstrapError, BootstrapperError


def log_worker(message: str, component: str = "BOOTSTRAP_WORKER") -> None:
    """Log to stderr with timestamp."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
    print(f"[{timestamp}] [{component}] {message}", file=sys.stderr, flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bootstrap a PIM tenant from a JSON spec")
    parser.add_argument("--spec-file", required=True, help="Path to the JSON spec")
    parser.add_argument("--tenant", help="Tenant identifier (default: BOOTSTRAP_TENANT_IDENTIFIER)")
    parser.add_argument("--language", help="Target language (default: the tenant's default language)")
    parser.add_argument("--item-topics", default="replace", choices=["amend", "replace"])
    parser.add_argument("--item-publish", default="auto", choices=["auto", "publish"])
    parser.add_argument("--log-level", default="silent", choices=["silent", "verbose"])
    return parser


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    settings = BootstrapSettings()
    if args.tenant:
        settings = settings.model_copy(update={"tenant_identifier": args.tenant})
    setup_logging("DEBUG" if args.log_level == "verbose" else settings.log_level)

    spec_path = Path(args.spec_file)
    if not spec_path.exists():
        log_worker(f"ERROR: spec file not found: {spec_path}")
        return 1
    try:
        spec = json.loads(spec_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        log_worker(f"ERROR: spec file is not valid JSON: {e}")
        return 1

    options = BootstrapOptions(
        language=args.language,
        item_topics=args.item_topics,
        item_publish=args.item_publish,
        log_level=args.log_level,
    )
    bootstrapper = Bootstrapper(spec, settings, options)

    def on_error(error: BootstrapperError) -> None:
        code = f" {error.code}" if error.code else ""
        retry = " (will retry)" if error.will_retry else ""
        log_worker(f"{error.type.upper()}{code}: {error.error}{retry}")

    def on_items(update: AreaUpdate) -> None:
        if update.message and args.log_level == "verbose":
            log_worker(update.message, component="ITEMS")

    bootstrapper.on(EventName.ERROR, on_error)
    bootstrapper.on(EventName.ITEMS_UPDATE, on_items)
    bootstrapper.once(EventName.DONE, lambda done: log_worker(
        f"Done bootstrapping {settings.tenant_identifier}. Duration: {done['duration']:.1f}s"
    ))

    log_worker(f"Bootstrapping {settings.tenant_identifier} from {spec_path}")
    try:
        await bootstrapper.start()
    except BootstrapError as e:
        log_worker(f"Bootstrap failed: {e}")
        return 1
    except Exception as e:  # noqa: BLE001
        log_worker(f"Bootstrap failed with error: {e}")
        log_worker(traceback.format_exc())
        return 1

    print(json.dumps(bootstrapper.status_snapshot(), indent=2, default=str))
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        log_worker("Worker interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    run()
