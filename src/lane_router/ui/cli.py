"""Command-line interface router for lane-router."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final

from lane_router.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
    parse_cli_assignments,
)
from lane_router.config.schema import mask_url
from lane_router.config.settings import RouterSettings
from lane_router.errors import BrokerUnavailableError
from lane_router.main import ExitCode
from lane_router.observability.logging import (
    StructuredLoggingHandle,
    setup_logging,
    shutdown_logging,
)
from lane_router.store.rate_limiter import RateLimitState
from lane_router.store.redis_client import create_redis_client
from lane_router.ui.render import CLIRenderer, create_renderer
from lane_router.utils.concurrency import run_with_timeout

TIERS: Final[tuple[str, ...]] = ("dispatcher", "worker")
HEALTH_TIMEOUT_SECONDS: Final[float] = 10.0


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported commands."""

    parser = argparse.ArgumentParser(
        prog="lane-router",
        description=(
            "lane-router - rate-limited job routing to per-lane worker pools.\n\n"
            "Common workflows:\n"
            "  lane-router dispatcher              Route jobs from the intake queue\n"
            "  lane-router worker --lane gemini    Serve one lane queue\n"
            "  lane-router limits status           Show per-lane window usage\n"
            "  lane-router health                  Check Redis and broker reachability\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./lane_router.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name.",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override one config value, e.g. --set broker.prefetch_count=20 (repeatable).",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # dispatcher ----------------------------------------------------------
    dispatcher_parser = subparsers.add_parser(
        "dispatcher",
        parents=[common],
        help="Consume the intake queue and route jobs to lanes",
    )
    dispatcher_parser.set_defaults(handler=_cmd_dispatcher)

    # worker --------------------------------------------------------------
    worker_parser = subparsers.add_parser(
        "worker",
        parents=[common],
        help="Consume one lane queue",
        description=(
            "Run a worker bound to exactly one lane. The strategy must be 'fixed'.\n\n"
            "Examples:\n"
            "  lane-router worker --lane openai\n"
            "  lane-router worker --lane gemini --profile worker\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    worker_parser.add_argument("--lane", default=None, help="Lane to serve.")
    worker_parser.set_defaults(handler=_cmd_worker)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
    )
    config_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    config_parser.set_defaults(handler=_cmd_config)

    # limits --------------------------------------------------------------
    limits_parser = subparsers.add_parser(
        "limits",
        help="Inspect or reset per-lane rate windows",
    )
    limits_sub = limits_parser.add_subparsers(dest="limits_command", required=True)

    status_parser = limits_sub.add_parser(
        "status", parents=[common], help="Show current window counts"
    )
    status_parser.add_argument("--lane", default=None, help="Only this lane.")
    status_parser.add_argument("--tier", choices=TIERS, default="dispatcher")
    status_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    status_parser.set_defaults(handler=_cmd_limits_status)

    reset_parser = limits_sub.add_parser(
        "reset", parents=[common], help="Clear one lane's window"
    )
    reset_parser.add_argument("--lane", required=True, help="Lane to reset.")
    reset_parser.add_argument("--tier", choices=TIERS, default="dispatcher")
    reset_parser.set_defaults(handler=_cmd_limits_reset)

    # health --------------------------------------------------------------
    health_parser = subparsers.add_parser(
        "health",
        parents=[common],
        help="Check Redis and broker reachability",
    )
    health_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    health_parser.set_defaults(handler=_cmd_health)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_dispatcher(args: argparse.Namespace) -> int:
    from lane_router.dispatcher.service import run_dispatcher

    settings = _load_settings(args)
    handle = _setup_logging(settings)
    try:
        asyncio.run(run_dispatcher(settings))
    finally:
        shutdown_logging(handle)
    return 0


def _cmd_worker(args: argparse.Namespace) -> int:
    from lane_router.worker.consumer import validate_worker_binding
    from lane_router.worker.processors import load_processor
    from lane_router.worker.service import run_worker

    lane = _optional_str(getattr(args, "lane", None))
    extra: dict[str, object] = {}
    if lane is not None:
        extra = {"worker.lane": lane.lower(), "strategy.fixed_lane": lane.lower()}
    settings = _load_settings(args, extra_overrides=extra)

    bound = validate_worker_binding(settings, lane)
    processor = load_processor(settings.worker.processor)

    handle = _setup_logging(settings)
    try:
        asyncio.run(run_worker(settings, bound.name, processor=processor))
    finally:
        shutdown_logging(handle)
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "active_profile": profile, "config": redacted})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


def _cmd_limits_status(args: argparse.Namespace) -> int:
    from lane_router.runtime import build_limiter

    settings = _load_settings(args)
    tier = str(args.tier)
    lanes = _selected_lanes(settings, _optional_str(getattr(args, "lane", None)))

    async def collect() -> list[RateLimitState]:
        limiter = build_limiter(settings, create_redis_client(settings.redis.url), tier=tier)
        try:
            return [
                await limiter.state(lane, settings.lanes.require(lane).capacity_per_minute)
                for lane in lanes
            ]
        finally:
            await limiter.close()

    states = asyncio.run(collect())

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "limits.status",
                "tier": tier,
                "lanes": [
                    {
                        "lane": state.lane,
                        "count": state.count,
                        "limit": state.limit,
                        "remaining": state.remaining,
                        "allowed": state.allowed,
                        "degraded": state.degraded,
                    }
                    for state in states
                ],
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"Rate windows ({tier}, {settings.rate_limit.window_ms} ms)")
    renderer.table(
        ("lane", "count", "limit", "remaining", "state"),
        [
            (
                state.lane,
                state.count,
                state.limit,
                state.remaining,
                "unreachable" if state.degraded else ("open" if state.allowed else "full"),
            )
            for state in states
        ],
    )
    return 0


def _cmd_limits_reset(args: argparse.Namespace) -> int:
    from lane_router.runtime import build_limiter

    settings = _load_settings(args)
    tier = str(args.tier)
    (lane,) = _selected_lanes(settings, _optional_str(args.lane))

    async def reset() -> int:
        limiter = build_limiter(settings, create_redis_client(settings.redis.url), tier=tier)
        try:
            return await limiter.reset(lane)
        finally:
            await limiter.close()

    removed = asyncio.run(reset())
    renderer = _get_renderer(args)
    renderer.text(f"reset {tier} window for lane {lane!r} ({'cleared' if removed else 'empty'})")
    return 0


def _cmd_health(args: argparse.Namespace) -> int:
    from lane_router.broker.connection import connect_with_retry
    from lane_router.runtime import build_limiter

    settings = _load_settings(args)

    async def probe_redis() -> tuple[bool, str]:
        limiter = build_limiter(settings, create_redis_client(settings.redis.url), tier="dispatcher")
        try:
            healthy = await limiter.health_check()
        finally:
            await limiter.close()
        return healthy, "PING ok" if healthy else "PING failed"

    async def probe_broker() -> tuple[bool, str]:
        try:
            connection = await run_with_timeout(
                connect_with_retry(
                    settings.broker.url,
                    attempts=1,
                    reconnect_delay_ms=settings.broker.reconnect_delay_ms,
                ),
                HEALTH_TIMEOUT_SECONDS,
            )
        except (BrokerUnavailableError, TimeoutError) as exc:
            return False, str(exc)
        await connection.close()
        return True, "connected"

    async def collect() -> list[tuple[str, str, bool, str]]:
        redis_ok, redis_detail = await probe_redis()
        broker_ok, broker_detail = await probe_broker()
        return [
            ("redis", mask_url(settings.redis.url), redis_ok, redis_detail),
            ("broker", mask_url(settings.broker.url), broker_ok, broker_detail),
        ]

    checks = asyncio.run(collect())
    healthy = all(passed for _, _, passed, _ in checks)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "health",
                "healthy": healthy,
                "checks": [
                    {
                        "name": name,
                        "target": target,
                        "status": "ok" if passed else "fail",
                        "detail": detail,
                    }
                    for name, target, passed, detail in checks
                ],
            }
        )
    else:
        renderer = _get_renderer(args)
        renderer.heading("lane-router health")
        for name, target, passed, detail in checks:
            line = f"{name} ({target}): {detail}"
            if passed:
                renderer.ok(line)
            else:
                renderer.fail(line)

    return int(ExitCode.SUCCESS if healthy else ExitCode.BROKER_UNAVAILABLE)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"))


def _load_effective_config(
    args: argparse.Namespace,
    *,
    extra_overrides: Mapping[str, object] | None = None,
) -> dict[str, object]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    try:
        overrides = parse_cli_assignments(list(getattr(args, "overrides", None) or []))
        overrides.update(extra_overrides or {})
        return load_config(config_path, profile=profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_settings(
    args: argparse.Namespace,
    *,
    extra_overrides: Mapping[str, object] | None = None,
) -> RouterSettings:
    config = _load_effective_config(args, extra_overrides=extra_overrides)
    try:
        return RouterSettings.from_config(config)
    except ConfigValidationError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _setup_logging(settings: RouterSettings) -> StructuredLoggingHandle:
    observability = settings.observability
    return setup_logging(
        instance_id=settings.instance_id,
        log_level=observability.log_level,
        log_dir=observability.log_dir,
        log_to_stdout=observability.log_to_stdout,
        redact_secrets=observability.redact_secrets,
    )


def _selected_lanes(settings: RouterSettings, lane: str | None) -> tuple[str, ...]:
    if lane is None:
        return settings.lanes.names
    normalized = lane.strip().lower()
    if normalized not in settings.lanes:
        known = ", ".join(settings.lanes.names)
        raise CLIError(f"unknown lane {lane!r}; known lanes: {known}", exit_code=2)
    return (normalized,)


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
