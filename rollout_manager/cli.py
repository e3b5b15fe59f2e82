"""Command line entry point for running a rollout from a CI step."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional, Sequence

import uvicorn

from rollout_manager.application.services.resolver import resolve_target
from rollout_manager.config import Settings
from rollout_manager.errors import InvalidTarget, RolloutInProgress
from rollout_manager.models import DeploymentRequest, HealthCheckSpec
from rollout_manager.wiring import build_components

logger = logging.getLogger(__name__)

EXIT_INVALID = 2
EXIT_IN_PROGRESS = 3


def parse_check(raw: str, *, attempts: int, interval: float) -> HealthCheckSpec:
    """Parse ``PATH[:STATUS]`` into a HealthCheckSpec."""
    path, sep, status = raw.rpartition(":")
    if not sep or not status.isdigit():
        path, status = raw, "200"
    return HealthCheckSpec(
        path=path,
        expected_status=int(status),
        max_attempts=attempts,
        interval_seconds=interval,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rollout-manager", description="Roll out an image to a cluster")
    parser.add_argument("--env-file", default=None, help="Optional .env file to load")
    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy = subparsers.add_parser("deploy", help="Apply manifests, set the image and verify the rollout")
    deploy.add_argument("--image", required=True, help="Image reference, e.g. registry/app:42")
    deploy.add_argument("--namespace", required=True)
    deploy.add_argument("--deployment", required=True, help="Deployment name")
    deploy.add_argument(
        "--manifests",
        nargs="+",
        required=True,
        help="Manifest directory or ordered list of manifest files",
    )
    deploy.add_argument("--container", default=None, help="Container to update (default: deployment name)")
    deploy.add_argument("--timeout", type=int, default=None, help="Rollout timeout in seconds")
    deploy.add_argument("--poll-interval", type=float, default=None, help="Status poll interval in seconds")
    deploy.add_argument("--endpoint", default=None, help="Base URL for smoke checks")
    deploy.add_argument(
        "--check",
        action="append",
        default=[],
        metavar="PATH[:STATUS]",
        help="Smoke check, repeatable (e.g. /healthz:200)",
    )
    deploy.add_argument("--check-attempts", type=int, default=10)
    deploy.add_argument("--check-interval", type=float, default=5.0)
    deploy.add_argument(
        "--wait",
        action="store_true",
        help="Queue behind an in-flight rollout of the same target instead of failing",
    )

    history = subparsers.add_parser("history", help="Show recent rollout attempts")
    history.add_argument("--namespace", default=None)
    history.add_argument("--deployment", default=None)
    history.add_argument("--limit", type=int, default=20)

    subparsers.add_parser("serve", help="Run the HTTP API on WEB_HOST:WEB_PORT")
    return parser


def _request_from_args(args: argparse.Namespace, settings: Settings) -> DeploymentRequest:
    manifests = args.manifests[0] if len(args.manifests) == 1 else args.manifests
    checks = [
        parse_check(raw, attempts=args.check_attempts, interval=args.check_interval)
        for raw in args.check
    ]
    return resolve_target(
        image_ref=args.image,
        namespace=args.namespace,
        manifests=manifests,
        deployment_name=args.deployment,
        timeout_seconds=args.timeout or settings.rollout_timeout_seconds,
        container=args.container,
        endpoint=args.endpoint,
        health_checks=checks,
        poll_interval_seconds=args.poll_interval or settings.poll_interval_seconds,
    )


async def _deploy(args: argparse.Namespace, settings: Settings) -> int:
    try:
        request = _request_from_args(args, settings)
    except (InvalidTarget, ValueError) as exc:
        logger.error("Invalid rollout target: %s", exc)
        return EXIT_INVALID

    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - non-unix platforms
            pass

    components = build_components(settings)
    try:
        result = await components.service.run_deployment(request, cancel=cancel, wait=args.wait)
    except RolloutInProgress as exc:
        logger.error("%s", exc)
        return EXIT_IN_PROGRESS
    finally:
        await components.aclose()

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return result.exit_code


async def _history(args: argparse.Namespace, settings: Settings) -> int:
    components = build_components(settings)
    try:
        items, total = components.history.list(
            namespace=args.namespace,
            deployment_name=args.deployment,
            limit=args.limit,
            offset=0,
        )
    finally:
        await components.aclose()
    for item in items:
        print(
            f"{item.id}\t{item.started_at.isoformat()}\t{item.namespace}/{item.deployment_name}"
            f"\t{item.image_ref}\t{item.state.value}"
        )
    print(f"{len(items)} of {total} attempts", file=sys.stderr)
    return 0


def _serve(settings: Settings) -> int:
    logger.info("Serving rollout API on %s:%d", settings.web_host, settings.web_port)
    uvicorn.run(
        "rollout_manager.main:app",
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env(args.env_file)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "deploy":
        return asyncio.run(_deploy(args, settings))
    if args.command == "serve":
        return _serve(settings)
    return asyncio.run(_history(args, settings))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
