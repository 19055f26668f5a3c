from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from ramp import RampProfile, Stage, parse_stages
from runner import RunConfig, RunReport, run_load_test
from thresholds import parse_thresholds
from workloads import WORKLOADS, get_workload


def _parse_stages_arg(value: str) -> list[Stage]:
    try:
        return parse_stages(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _parse_weight(value: str) -> tuple[str, float]:
    name, sep, weight_text = value.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"Invalid weight '{value}'. Expected NAME=WEIGHT, e.g. login=0.2")
    try:
        weight = float(weight_text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid weight '{value}'. WEIGHT must be a number.") from exc
    return name.strip(), weight


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ramped virtual-user load test for the school management REST API."
    )

    parser.add_argument("--base-url", default=os.environ.get("BASE_URL", "http://localhost"))
    parser.add_argument("--workload", choices=sorted(WORKLOADS), default="crud")
    parser.add_argument(
        "--stages",
        type=_parse_stages_arg,
        default=None,
        help="Comma-separated <duration>:<target> stages, e.g. 30s:10,1m:50,30s:0. "
        "Defaults to the workload's own profile.",
    )
    parser.add_argument(
        "--weight",
        dest="weights",
        type=_parse_weight,
        action="append",
        default=[],
        metavar="NAME=WEIGHT",
        help="Override one scenario weight; may be repeated.",
    )
    parser.add_argument(
        "--threshold",
        dest="thresholds",
        nargs=2,
        action="append",
        default=None,
        metavar=("METRIC", "EXPR"),
        help="Pass/fail condition, e.g. --threshold http_req_duration 'p(95)<2000'. "
        "Replaces the workload defaults when given.",
    )
    parser.add_argument(
        "--abort-threshold",
        dest="abort_thresholds",
        nargs=2,
        action="append",
        default=[],
        metavar=("METRIC", "EXPR"),
        help="Condition that also stops the run early once crossed.",
    )

    parser.add_argument("--admin-email", default=os.environ.get("ADMIN_EMAIL", "admin@distrischool.com"))
    parser.add_argument("--admin-password", default=os.environ.get("ADMIN_PASSWORD", "admin123"))
    parser.add_argument("--user-email", default=os.environ.get("USER_EMAIL"))
    parser.add_argument("--user-password", default=os.environ.get("USER_PASSWORD"))

    parser.add_argument("--tick-s", type=float, default=1.0)
    parser.add_argument("--graceful-stop-s", type=float, default=30.0)
    parser.add_argument("--threshold-check-interval-s", type=float, default=5.0)
    parser.add_argument("--timeout-s", type=float, default=60.0)
    parser.add_argument("--seed", type=int, default=42)

    parser.add_argument("--output-dir", type=Path, default=Path("runs"))
    parser.add_argument("--run-name", default=None)
    parser.add_argument("--log-requests", action="store_true", help="Write every request to requests.jsonl")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.tick_s <= 0:
        parser.error("--tick-s must be > 0")
    if args.graceful_stop_s <= 0:
        parser.error("--graceful-stop-s must be > 0")
    if args.threshold_check_interval_s <= 0:
        parser.error("--threshold-check-interval-s must be > 0")
    if args.timeout_s <= 0:
        parser.error("--timeout-s must be > 0")

    try:
        workload = get_workload(args.workload).with_weights(dict(args.weights))
        RampProfile(args.stages or workload.stages)
        parse_thresholds([tuple(pair) for pair in args.thresholds or []])
        parse_thresholds([tuple(pair) for pair in args.abort_thresholds])
    except ValueError as exc:
        parser.error(str(exc))


async def _run_from_args(args: argparse.Namespace) -> tuple[RunReport, Path]:
    config = RunConfig(
        base_url=args.base_url,
        workload=args.workload,
        stages=args.stages,
        weights=dict(args.weights),
        thresholds=[tuple(pair) for pair in args.thresholds] if args.thresholds is not None else None,
        abort_thresholds=[tuple(pair) for pair in args.abort_thresholds],
        admin_email=args.admin_email,
        admin_password=args.admin_password,
        user_email=args.user_email,
        user_password=args.user_password,
        tick_s=args.tick_s,
        graceful_stop_s=args.graceful_stop_s,
        threshold_check_interval_s=args.threshold_check_interval_s,
        timeout_s=args.timeout_s,
        seed=args.seed,
        output_dir=args.output_dir,
        run_name=args.run_name,
        log_requests=bool(args.log_requests),
    )
    return await run_load_test(config)


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    _validate_args(parser, args)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    report, output_dir = asyncio.run(_run_from_args(args))
    print(f"Run {report.verdict}. Outputs written to: {output_dir}")
    for threshold in report.violations:
        print(f"  threshold violated: {threshold}")
    if report.setup_error:
        print(f"  setup failed: {report.setup_error}")
    if report.run_error:
        print(f"  run failed: {report.run_error}")
    sys.exit(0 if report.passed else 1)


if __name__ == "__main__":
    main()
