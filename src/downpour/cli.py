#!/usr/bin/env python3
# cli.py: command-line entry point for Downpour

import argparse
import asyncio
import logging
import sys

from downpour.config import HealthPolicy, apportion, load_spec
from downpour.core import LoadDriver
from downpour.errors import ConfigError, PerformanceAssertionError, TargetUnreachableError
from downpour.logging_config import setup_logging
from downpour.metrics import assert_performance
from downpour.models import OperationKind
from downpour.persistence import ReportStore
from downpour.rendering import render_latency_histogram, render_report, render_timeline
from downpour.utils import GracefulKiller

EXIT_OK = 0
EXIT_SLA_VIOLATION = 1
EXIT_UNREACHABLE = 2
EXIT_BAD_CONFIG = 3


def parse_mix(text: str) -> dict[str, float]:
    """Parse ``read=80,write=15,list=5``."""
    mix = {}
    for part in text.split(","):
        if not part.strip():
            continue
        role, _, weight = part.partition("=")
        try:
            mix[role.strip()] = float(weight)
        except ValueError as e:
            raise argparse.ArgumentTypeError(f"invalid mix entry {part!r}") from e
    return mix


def parse_sizes(text: str) -> tuple[int, ...]:
    try:
        return tuple(int(s) for s in text.split(",") if s.strip())
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid payload sizes {text!r}") from e


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Downpour: concurrent write-load and latency harness for HTTP object storage",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("--config", default=None, help="JSON or TOML run configuration file")
    parser.add_argument("--base-url", default=None, help="Target base URL (env: DOWNPOUR_BASE_URL)")
    parser.add_argument("--bucket", default=None, help="Bucket to write into")
    parser.add_argument("--key-prefix", default=None, help="Prefix for generated object keys")

    # Workload
    parser.add_argument("--writers", type=int, default=None, help="Number of write workers")
    parser.add_argument("--readers", type=int, default=None, help="Number of read workers")
    parser.add_argument("--listers", type=int, default=None, help="Number of list workers")
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Total workers, split by --mix instead of per-role counts",
    )
    parser.add_argument(
        "--mix",
        type=parse_mix,
        default=None,
        help="Workload mix used with --workers, e.g. read=80,write=15,list=5",
    )
    parser.add_argument("--iterations", type=int, default=None, help="Iterations per worker")
    parser.add_argument(
        "--payload-sizes",
        type=parse_sizes,
        default=None,
        help="Comma-separated write payload sizes in bytes",
    )

    # Time & resource bounds
    parser.add_argument("--budget", type=float, default=None, help="Global time budget (seconds)")
    parser.add_argument("--timeout", type=float, default=None, help="Per-request timeout (seconds)")
    parser.add_argument("--sink-capacity", type=int, default=None, help="Outcome sink capacity")
    parser.add_argument("--rate", type=float, default=None, help="Global rate limit (requests per second)")
    parser.add_argument("--ramp-up", type=float, default=None, help="Seconds to ramp up to --rate")
    parser.add_argument(
        "--health-policy",
        choices=[p.value for p in HealthPolicy],
        default=None,
        help="What to do when the /health probe fails",
    )

    # Performance assertions
    parser.add_argument("--max-p99", type=float, default=None, help="Fail if any class p99 exceeds this (seconds)")
    parser.add_argument("--min-rps", type=float, default=None, help="Fail if requests/sec is below this")
    parser.add_argument(
        "--max-failure-rate", type=float, default=None, help="Fail if failure rate exceeds this (percent)"
    )

    # Output
    parser.add_argument("--report-file", default=None, help="Write the report as JSON to this file")
    parser.add_argument("--histogram", action="store_true", help="Print an ASCII latency histogram")
    parser.add_argument("--timeline", action="store_true", help="Print the per-worker request timeline")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")

    # Logging & Debugging
    parser.add_argument("--debug", action="store_true", help="Enable debug-level logging")
    parser.add_argument("--log-file", type=str, default=None, help="Optional file to write logs to")

    args = parser.parse_args(argv)
    if args.mix is not None and args.workers is None:
        parser.error("--mix requires --workers")
    return args


def build_overrides(args) -> dict:
    overrides = {
        "base_url": args.base_url,
        "bucket": args.bucket,
        "key_prefix": args.key_prefix,
        "writers": args.writers,
        "readers": args.readers,
        "listers": args.listers,
        "iterations_per_worker": args.iterations,
        "payload_sizes": args.payload_sizes,
        "global_budget_s": args.budget,
        "request_timeout_s": args.timeout,
        "sink_capacity": args.sink_capacity,
        "rate_limit_per_s": args.rate,
        "rate_ramp_up_s": args.ramp_up,
        "health_policy": args.health_policy,
    }
    if args.workers is not None:
        counts = apportion(args.workers, args.mix or {"write": 1})
        overrides["writers"] = counts[OperationKind.WRITE]
        overrides["readers"] = counts[OperationKind.READ]
        overrides["listers"] = counts[OperationKind.LIST]
    return overrides


async def run(argv=None) -> int:
    args = parse_args(argv)

    log_level = "DEBUG" if args.debug else "INFO"
    setup_logging(level=log_level, log_file=args.log_file)

    try:
        spec = load_spec(args.config, build_overrides(args))
    except ConfigError as e:
        logging.error(f"Invalid configuration: {e}")
        return EXIT_BAD_CONFIG

    driver = LoadDriver(spec, use_progress_bar=not args.no_progress and not args.debug)
    loop = asyncio.get_running_loop()
    killer = GracefulKiller(driver.request_stop)
    killer.install(loop)

    logging.info(
        f"Starting Downpour against {spec.base_url} | workers={spec.total_workers} | "
        f"budget={spec.global_budget_s}s | timeout={spec.request_timeout_s}s"
    )

    try:
        report = await driver.run()
    except TargetUnreachableError as e:
        logging.error(str(e))
        return EXIT_UNREACHABLE
    finally:
        killer.uninstall(loop)

    print("\n" + "=" * 60)
    print(render_report(report))
    if args.histogram:
        print()
        print(render_latency_histogram([d for cs in report.classes for d in cs.durations]))
    if args.timeline:
        print()
        print(render_timeline(report.timeline))
    print("=" * 60)

    if args.report_file:
        ReportStore(args.report_file).save_report(report, label=spec.bucket)

    try:
        assert_performance(
            report,
            max_p99_s=args.max_p99,
            min_rps=args.min_rps,
            max_failure_rate=args.max_failure_rate / 100 if args.max_failure_rate is not None else None,
        )
    except PerformanceAssertionError as e:
        for violation in e.violations:
            logging.error(f"Performance assertion failed: {violation}")
        return EXIT_SLA_VIOLATION

    logging.info(
        f"Run {report.status.value}: {report.success} succeeded, {report.failures} failed, "
        f"{report.dropped} dropped | Error rate: {report.error_rate * 100:.1f}%"
    )
    return EXIT_OK


def main():
    sys.exit(asyncio.run(run()))

if __name__ == "__main__":
    main()
