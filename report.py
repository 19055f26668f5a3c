from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from exposition import render_prometheus
from metrics import CHECK_PREFIX, MetricsSnapshot


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def _fmt_count(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:g}"


def write_summary_json(output_path: Path, report: dict[str, Any]) -> None:
    output_path.write_text(json.dumps(report, indent=2), encoding="utf-8")


def write_metrics_prometheus(output_path: Path, snapshot: MetricsSnapshot) -> None:
    output_path.write_text(render_prometheus(snapshot), encoding="utf-8")


def _threshold_lines(report: dict[str, Any]) -> list[str]:
    lines = ["## Thresholds", ""]
    if not report["thresholds"]:
        lines.append("No thresholds configured.")
        return lines
    lines.append("| Metric | Condition | Observed | Abort on fail | Result |")
    lines.append("|---|---|---:|:---:|:---:|")
    for result in report["thresholds"]:
        if not result["has_data"]:
            outcome = "no data" if result["passed"] else "FAIL"
        else:
            outcome = "ok" if result["passed"] else "FAIL"
        lines.append(
            f"| {result['metric']} | `{result['expression']}` | {_fmt(result['observed'])} | "
            f"{'yes' if result['abort_on_fail'] else 'no'} | {outcome} |"
        )
    return lines


def _trend_lines(metrics: dict[str, Any]) -> list[str]:
    lines = ["## Trends", ""]
    trends = metrics["trends"]
    if not trends:
        lines.append("No trend samples recorded.")
        return lines
    lines.append("| Metric | Count | Avg ms | Min ms | Med ms | Max ms | p90 ms | p95 ms | p99 ms |")
    lines.append("|---|---:|---:|---:|---:|---:|---:|---:|---:|")
    for name, row in trends.items():
        lines.append(
            f"| {name} | {row['count']} | {_fmt(row['avg'])} | {_fmt(row['min'])} | "
            f"{_fmt(row['med'])} | {_fmt(row['max'])} | {_fmt(row.get('p(90)'))} | "
            f"{_fmt(row.get('p(95)'))} | {_fmt(row.get('p(99)'))} |"
        )
    return lines


def _rate_lines(metrics: dict[str, Any]) -> list[str]:
    lines = ["## Rates", ""]
    rates = {name: row for name, row in metrics["rates"].items() if not name.startswith(CHECK_PREFIX)}
    checks = {
        name[len(CHECK_PREFIX):]: row for name, row in metrics["rates"].items() if name.startswith(CHECK_PREFIX)
    }
    if rates:
        lines.append("| Metric | Rate % | True | False |")
        lines.append("|---|---:|---:|---:|")
        for name, row in rates.items():
            lines.append(f"| {name} | {_fmt(row['rate'] * 100.0)} | {row['passes']} | {row['fails']} |")
    else:
        lines.append("No rate samples recorded.")

    lines.append("")
    lines.append("## Checks")
    lines.append("")
    if checks:
        lines.append("| Check | Pass % | Passes | Fails |")
        lines.append("|---|---:|---:|---:|")
        for name, row in checks.items():
            lines.append(f"| {name} | {_fmt(row['rate'] * 100.0)} | {row['passes']} | {row['fails']} |")
    else:
        lines.append("No checks recorded.")
    return lines


def _counter_lines(metrics: dict[str, Any]) -> list[str]:
    lines = ["## Counters and Gauges", ""]
    lines.append("| Metric | Value | Min | Max |")
    lines.append("|---|---:|---:|---:|")
    for name, total in metrics["counters"].items():
        lines.append(f"| {name} | {_fmt_count(total)} | - | - |")
    for name, gauge in metrics["gauges"].items():
        lines.append(
            f"| {name} | {_fmt_count(gauge['value'])} | {_fmt_count(gauge['min'])} | {_fmt_count(gauge['max'])} |"
        )
    return lines


def _ramp_lines(report: dict[str, Any]) -> list[str]:
    scheduler = report.get("scheduler")
    if not scheduler:
        return []
    lines = ["## Ramp", ""]
    lines.append(
        f"Peak VUs: `{scheduler['peak_active']}`, spawned: `{scheduler['spawned']}`, "
        f"interrupted at stop: `{scheduler['interrupted']}`"
    )
    lines.append("")
    lines.append("| Elapsed s | Target VUs | Active VUs |")
    lines.append("|---:|---:|---:|")
    for tick in scheduler["history"]:
        lines.append(f"| {_fmt(tick['elapsed_s'], 1)} | {tick['target']} | {tick['active']} |")
    return lines


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    report: dict[str, Any],
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    lines: list[str] = []
    lines.append(f"# API Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append(f"Workload: `{report['workload']}`")
    lines.append(f"Verdict: **{report['verdict'].upper()}**")
    lines.append(f"Duration: `{_fmt(report['duration_s'], 1)}s`")
    if report["setup_error"]:
        lines.append(f"Setup error: `{report['setup_error']}`")
    if report.get("run_error"):
        lines.append(f"Run error: `{report['run_error']}`")
    if report["aborted"]:
        lines.append("Run aborted early by an abort-on-fail threshold.")
    lines.append("")
    lines.extend(_threshold_lines(report))
    lines.append("")
    lines.extend(_trend_lines(report["metrics"]))
    lines.append("")
    lines.extend(_rate_lines(report["metrics"]))
    lines.append("")
    lines.extend(_counter_lines(report["metrics"]))
    ramp = _ramp_lines(report)
    if ramp:
        lines.append("")
        lines.extend(ramp)
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def write_run_outputs(
    *,
    output_dir: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    report: dict[str, Any],
    metrics: MetricsSnapshot,
) -> None:
    write_summary_json(output_dir / "summary.json", report)
    write_summary_markdown(output_dir / "summary.md", run_name, resolved_config, report)
    write_metrics_prometheus(output_dir / "metrics.prom", metrics)
