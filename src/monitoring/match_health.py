"""Health monitor for transaction matching and condo unit coverage."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from config.settings import REPORTS_DIR, UNRESOLVED_ALERT_RATE, UNRESOLVED_WARN_RATE


def find_latest_run_summary(reports_dir: Path = REPORTS_DIR) -> Optional[Path]:
    files = sorted(Path(reports_dir).glob("pipeline_run_*.json"), key=lambda p: p.stat().st_mtime)
    return files[-1] if files else None


def evaluate_match_health(
    match: Dict[str, Any],
    *,
    condo_acceptance: Optional[Dict[str, Any]] = None,
    warn_unresolved: float = UNRESOLVED_WARN_RATE,
    alert_unresolved: float = UNRESOLVED_ALERT_RATE,
) -> Dict[str, object]:
    """
    Status from a match run summary (`TransactionMatchResult.to_dict()`).

    alert: unresolved rate above `alert_unresolved`
    warn:  unresolved rate above `warn_unresolved`, any single reason above
           `warn_unresolved`, write failures, or failed condo acceptance
    """
    stats = match["stats"]
    total = stats["total"]
    unresolved_rate = stats["unresolved"] / total if total else 0.0
    reason_rates = {
        bucket["reason"]: (bucket["count"] / total if total else 0.0)
        for bucket in match.get("unresolved_buckets", [])
    }

    findings: List[str] = []
    status = "ok"
    if unresolved_rate > alert_unresolved:
        status = "alert"
        findings.append(f"unresolved rate {unresolved_rate:.2%} above {alert_unresolved:.0%}")
    elif unresolved_rate > warn_unresolved:
        status = "warn"
        findings.append(f"unresolved rate {unresolved_rate:.2%} above {warn_unresolved:.0%}")

    for reason, rate in reason_rates.items():
        if rate > warn_unresolved:
            findings.append(f"{reason} at {rate:.2%} of sales")
            if status == "ok":
                status = "warn"

    if stats.get("write_failures"):
        findings.append(f"{stats['write_failures']} sale writes failed")
        if status == "ok":
            status = "warn"

    if condo_acceptance is not None and not condo_acceptance.get("passed", True):
        findings.append("condo unit acceptance below target")
        if status == "ok":
            status = "warn"

    return {
        "status": status,
        "thresholds": {
            "warn_unresolved": warn_unresolved,
            "alert_unresolved": alert_unresolved,
        },
        "metrics": {
            "total": total,
            "unresolved_rate": round(unresolved_rate, 4),
            "unit_match_rate": round(stats["unit_match"] / total, 4) if total else 0.0,
            "block_lot_match_rate": round(stats["block_lot_match"] / total, 4) if total else 0.0,
            "conflicts": stats.get("conflicts", 0),
            "reason_rates": {k: round(v, 4) for k, v in reason_rates.items()},
        },
        "findings": findings,
    }


def render_health_markdown(report: Dict[str, Any], source: str = "") -> str:
    metrics = report["metrics"]
    lines = [
        "# Match Health Monitor",
        "",
        f"- Status: `{report['status']}`",
    ]
    if source:
        lines.append(f"- Run summary: `{source}`")
    lines.extend([
        f"- Sales processed: `{metrics['total']:,}`",
        f"- Unresolved rate: `{metrics['unresolved_rate']:.4f}`",
        f"- Unit match rate: `{metrics['unit_match_rate']:.4f}`",
        f"- Block/lot match rate: `{metrics['block_lot_match_rate']:.4f}`",
        f"- Block conflicts: `{metrics['conflicts']:,}`",
    ])
    for finding in report["findings"]:
        lines.append(f"- Finding: {finding}")
    return "\n".join(lines)


def _cli() -> None:
    parser = argparse.ArgumentParser(description="Check matching health of the latest pipeline run.")
    parser.add_argument("--summary-json", type=Path, default=None)
    parser.add_argument("--warn-unresolved", type=float, default=UNRESOLVED_WARN_RATE)
    parser.add_argument("--alert-unresolved", type=float, default=UNRESOLVED_ALERT_RATE)
    parser.add_argument("--output-json", type=Path, default=Path("reports/monitoring/match_health_latest.json"))
    parser.add_argument("--output-md", type=Path, default=Path("reports/monitoring/match_health_latest.md"))
    args = parser.parse_args()

    summary_path = args.summary_json or find_latest_run_summary()
    if summary_path is None or not summary_path.exists():
        raise FileNotFoundError("No pipeline run summary found. Provide --summary-json.")

    summary = json.loads(summary_path.read_text(encoding="utf-8"))
    if not summary.get("match"):
        raise ValueError(f"{summary_path} has no match stage results")

    report = evaluate_match_health(
        summary["match"],
        condo_acceptance=summary.get("condo_units"),
        warn_unresolved=args.warn_unresolved,
        alert_unresolved=args.alert_unresolved,
    )
    report["run_summary"] = str(summary_path)

    args.output_json.parent.mkdir(parents=True, exist_ok=True)
    args.output_json.write_text(json.dumps(report, indent=2), encoding="utf-8")
    args.output_md.write_text(render_health_markdown(report, str(summary_path)), encoding="utf-8")
    print(json.dumps({"status": report["status"], "output_json": str(args.output_json)}, indent=2))


if __name__ == "__main__":
    _cli()
