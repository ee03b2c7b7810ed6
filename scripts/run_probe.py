#!/usr/bin/env python3
"""Command-line entrypoint for probing a list of nodes.

Reads a JSON array of node objects, probes them through the fleet and writes
the annotated array to ``--output`` (or stdout).
"""

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from egress_probe.cache import CacheStore, InMemoryCacheStore
from egress_probe.config import REPO_ROOT, AppConfig, ProbeSettings, load_config, load_probe_settings
from egress_probe.jobs import run_probe_job
from egress_probe.logging_utils import configure_logging, perf_span


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Probe proxy nodes for gated-service access.")
    parser.add_argument(
        "nodes",
        type=Path,
        help="JSON file holding an array of node objects.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Where to write the annotated nodes (defaults to stdout).",
    )
    parser.add_argument(
        "--targets",
        type=str,
        default=None,
        help="Comma-separated target names from the catalog (e.g. gpt,gemini).",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Maximum probes in flight (default: PROBE_CONCURRENCY or 10).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-request timeout in seconds (default: PROBE_TIMEOUT or 5.0).",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=None,
        help="Extra attempts after a failed request (default: PROBE_RETRIES or 1).",
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=None,
        help="Seconds to wait before a retry (default: PROBE_RETRY_DELAY or 1.0).",
    )
    parser.add_argument(
        "--cache",
        action="store_true",
        default=None,
        help="Reuse and record verdicts in the cache store.",
    )
    parser.add_argument(
        "--no-trust-failed-cache",
        action="store_true",
        help="Probe again when the cache only holds a failure.",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=None,
        help="API key for key-templated targets (e.g. gemini-api).",
    )
    parser.add_argument("--fleet-host", type=str, default=None, help="Fleet control API host.")
    parser.add_argument("--fleet-port", type=int, default=None, help="Fleet control API port.")
    return parser.parse_args(argv)


def apply_overrides(settings: ProbeSettings, args: argparse.Namespace) -> ProbeSettings:
    """Overlay command-line flags on environment settings and re-validate."""
    changes: dict = {}
    if args.targets:
        changes["targets"] = tuple(t.strip() for t in args.targets.split(",") if t.strip())
    if args.concurrency is not None:
        changes["concurrency"] = args.concurrency
    if args.timeout is not None:
        changes["request_timeout_seconds"] = args.timeout
    if args.retries is not None:
        changes["retries"] = args.retries
    if args.retry_delay is not None:
        changes["retry_delay_seconds"] = args.retry_delay
    if args.cache:
        changes["cache_enabled"] = True
    if args.no_trust_failed_cache:
        changes["trust_cached_failures"] = False
    if args.api_key:
        changes["api_key"] = args.api_key

    fleet_changes: dict = {}
    if args.fleet_host:
        fleet_changes["host"] = args.fleet_host
    if args.fleet_port is not None:
        fleet_changes["port"] = args.fleet_port
    if fleet_changes:
        changes["fleet"] = dataclasses.replace(settings.fleet, **fleet_changes)

    return dataclasses.replace(settings, **changes).validate()


def build_cache_store(config: AppConfig) -> CacheStore:
    if config.cache_database_url:
        from egress_probe.cache.postgres import PostgresCacheStore

        store = PostgresCacheStore(config.cache_database_url, max_age_seconds=config.cache_max_age_seconds)
        store.ensure_schema()
        return store
    return InMemoryCacheStore()


def read_nodes(path: Path) -> List[Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array of nodes")
    return data


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config()
        settings = apply_overrides(load_probe_settings(), args)
        nodes = read_nodes(args.nodes)
    except Exception as exc:  # noqa: BLE001 - log and exit gracefully with a file
        # Fall back to a default log location so failures are still captured per run.
        fallback = AppConfig(log_directory=REPO_ROOT / "logs", log_level="INFO")
        configure_logging(fallback)
        logging.getLogger(__name__).error("Failed to load configuration: %s", exc)
        for handler in logging.getLogger().handlers:
            handler.flush()
        return 1

    configure_logging(config)
    cache_store = build_cache_store(config) if settings.cache_enabled else None

    try:
        with perf_span(
            "probe.total",
            tags={"nodes": len(nodes), "targets": ",".join(settings.targets)},
        ):
            annotated = run_probe_job(nodes, settings, cache_store=cache_store)
    finally:
        close = getattr(cache_store, "close", None)
        if close is not None:
            close()

    payload = json.dumps(annotated, ensure_ascii=False, indent=2)
    if args.output:
        args.output.write_text(payload + "\n", encoding="utf-8")
    else:
        sys.stdout.write(payload + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    raise SystemExit(main())
