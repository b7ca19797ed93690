"""
Parcel Graph NYC - Entity Resolution & Valuation Pipeline

Runs the batch stages in order against one storage backend:

    1. Load + data contracts (parcels, condo registry, sales)
    2. Condo unit population (full refresh of condo_units and the buildings rollup)
    3. Identity graph build (unit -> base, block -> bases, base -> units)
    4. Transaction matching (writes resolution fields on sales)
    5. Geoclient enrichment (coordinates for parcels missing them)
    6. Comparable selection (full refresh of comps)
    7. Opportunity scoring (score columns on properties)

Per-record failures are counted in each stage summary; a table that cannot
be loaded, or is missing required columns, aborts the run.

Usage:
    python -m src.pipeline                          # PostgreSQL at DATABASE_URL
    python -m src.pipeline --input-dir data/raw --output-dir data/processed
    python -m src.pipeline --skip-geocode --write-report
"""

import argparse
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from config.settings import DATABASE_URL, REPORTS_DIR
from src.buildings import BuildingRollupSummary, populate_buildings
from src.comps import CompSummary, compute_comps
from src.condo_units import CondoPopulateReport, populate_condo_units
from src.database import build_engine, create_tables
from src.enrichment import EnrichmentSummary, enrich_properties
from src.geocoding import GeoclientClient
from src.identity_graph import build_identity_graph
from src.matching import TransactionMatchResult, build_parcel_index, match_transactions
from src.monitoring.match_health import evaluate_match_health
from src.scoring import ScoreSummary, score_properties
from src.storage import InMemoryStorage, PipelineStorage, SqlStorage
from src.validation.data_contracts import DataContractResult, validate_data_contracts

logger = logging.getLogger(__name__)


@dataclass
class PipelineRunSummary:
    """Everything a run produced, stage by stage. Skipped stages stay None."""

    started_at: datetime
    source: str = ""
    finished_at: Optional[datetime] = None
    stage_stats: List[Dict[str, Any]] = field(default_factory=list)
    contracts: List[DataContractResult] = field(default_factory=list)
    condo_units: Optional[CondoPopulateReport] = None
    buildings: Optional[BuildingRollupSummary] = None
    graph: Optional[Dict[str, int]] = None
    match: Optional[TransactionMatchResult] = None
    enrichment: Optional[EnrichmentSummary] = None
    comps: Optional[CompSummary] = None
    scores: Optional[ScoreSummary] = None
    health: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "source": self.source,
            "stage_stats": self.stage_stats,
            "contracts": [asdict(c) for c in self.contracts],
            "condo_units": self.condo_units.to_dict() if self.condo_units else None,
            "buildings": self.buildings.to_dict() if self.buildings else None,
            "graph": self.graph,
            "match": self.match.to_dict() if self.match else None,
            "enrichment": self.enrichment.to_dict() if self.enrichment else None,
            "comps": asdict(self.comps) if self.comps else None,
            "scores": asdict(self.scores) if self.scores else None,
            "health": self.health,
        }


def _record_stage(summary: PipelineRunSummary, stage_name: str, rows: int, **counters) -> None:
    """Capture row and outcome counters for stage reporting."""
    summary.stage_stats.append({"stage": stage_name, "rows": rows, **counters})


def _check_contracts(summary: PipelineRunSummary, table: str, df: pd.DataFrame) -> None:
    result = validate_data_contracts(df, table=table)
    summary.contracts.append(result)
    if result.passed:
        logger.info(f"Data contracts ({table}): PASS")
    else:
        for violation in result.violations:
            logger.warning(f"Data contracts ({table}): [{violation.check}] {violation.message} "
                           f"(failed_rows={violation.failed_rows:,})")


# =============================================================================
# Run report
# =============================================================================

def write_run_report(summary: PipelineRunSummary, reports_dir: Path = REPORTS_DIR) -> tuple[Path, Path]:
    """
    Write pipeline run artifacts:
    - <reports_dir>/pipeline_run_YYYYMMDD_HHMMSS.md
    - <reports_dir>/pipeline_run_YYYYMMDD_HHMMSS.json
    """
    reports_dir = Path(reports_dir)
    reports_dir.mkdir(parents=True, exist_ok=True)

    run_stamp = summary.started_at.strftime("%Y%m%d_%H%M%S")
    markdown_path = reports_dir / f"pipeline_run_{run_stamp}.md"
    json_path = reports_dir / f"pipeline_run_{run_stamp}.json"

    json_path.write_text(json.dumps(summary.to_dict(), indent=2, default=str), encoding="utf-8")

    stage_df = pd.DataFrame(summary.stage_stats)
    stage_table = stage_df.to_string(index=False) if not stage_df.empty else "No stage stats captured."

    contract_lines = []
    for result in summary.contracts:
        contract_lines.append(f"- **{result.table}**: {'PASS' if result.passed else 'FAIL'}")
        for violation in result.violations:
            contract_lines.append(
                f"  - [{violation.check}] {violation.message} (failed_rows={violation.failed_rows})"
            )

    md = [
        f"# Pipeline Run Report - {run_stamp}",
        "",
        "## Run Metadata",
        f"- Started (UTC): {summary.started_at.isoformat()}",
        f"- Finished (UTC): {summary.finished_at.isoformat() if summary.finished_at else 'did not finish'}",
        f"- Source: `{summary.source}`",
        "",
        "## Stage Summary",
        "```text",
        stage_table,
        "```",
        "",
        "## Data Contract Results",
    ]
    md.extend(contract_lines or ["_No contract results captured._"])

    if summary.match is not None:
        stats = summary.match.stats
        md.extend([
            "",
            "## Transaction Matching",
            f"- Total: {stats.total:,}",
            f"- Unit identifier: {stats.unit_match:,}",
            f"- Block/lot: {stats.block_lot_match:,} ({stats.conflicts:,} tie-broken)",
            f"- Unresolved: {stats.unresolved:,}",
        ])
        for bucket in summary.match.unresolved_buckets:
            md.append(f"  - {bucket.reason}: {bucket.count:,}")
            md.extend(f"    - `{sample}`" for sample in bucket.samples)

    if summary.condo_units is not None:
        acceptance = summary.condo_units.acceptance
        md.extend([
            "",
            "## Condo Units",
            f"- Units: {acceptance.total:,}",
            f"- With address: {acceptance.address_pct:.2f}% ({'PASS' if acceptance.address_pass else 'FAIL'})",
            f"- With coordinates: {acceptance.coords_pct:.2f}% ({'PASS' if acceptance.coords_pass else 'FAIL'})",
            f"- Duplicate unit BBLs: {acceptance.duplicates:,}",
        ])

    if summary.buildings is not None:
        md.extend([
            "",
            "## Buildings",
            f"- Buildings: {summary.buildings.buildings:,}",
            f"- Avg units/building: {summary.buildings.avg_units}",
            f"- Max units in building: {summary.buildings.max_units:,}",
        ])

    if summary.health is not None:
        md.extend(["", "## Health", f"- Status: `{summary.health['status']}`"])
        md.extend(f"- {finding}" for finding in summary.health["findings"])

    markdown_path.write_text("\n".join(md), encoding="utf-8")
    return markdown_path, json_path


# =============================================================================
# MAIN PIPELINE
# =============================================================================

def run_pipeline(
    storage: PipelineStorage,
    *,
    geocoder: Optional[GeoclientClient] = None,
    skip_condo_units: bool = False,
    skip_geocode: bool = False,
    skip_comps: bool = False,
    skip_scores: bool = False,
    rematch_all: bool = False,
    write_report: bool = False,
    reports_dir: Path = REPORTS_DIR,
    source: str = "",
) -> PipelineRunSummary:
    """Execute every enabled stage against `storage` and return the run summary."""
    logger.info("=" * 60)
    logger.info("Parcel Graph NYC Pipeline")
    logger.info("=" * 60)

    summary = PipelineRunSummary(started_at=datetime.utcnow(), source=source)

    try:
        # 1. Load + contracts (fatal if the base tables are unusable)
        parcels = storage.load_properties()
        registry = storage.load_condo_registry()
        _check_contracts(summary, "properties", parcels)
        _check_contracts(summary, "condo_registry", registry)
        _check_contracts(summary, "sales", storage.load_sales(only_unmatched=False))
        _record_stage(summary, "loaded", len(parcels), registry_rows=len(registry))

        # 2. Condo units
        if skip_condo_units:
            logger.info("Skipping condo unit population")
        else:
            summary.condo_units = populate_condo_units(storage)
            _record_stage(
                summary, "condo_units", summary.condo_units.acceptance.total,
                duplicates=summary.condo_units.acceptance.duplicates,
                passed=summary.condo_units.passed,
            )
            summary.buildings = populate_buildings(storage)
            _record_stage(summary, "buildings", summary.buildings.buildings, units=summary.buildings.units)

        # 3. Identity graph
        graph = build_identity_graph(registry)
        summary.graph = graph.summary()
        _record_stage(summary, "identity_graph", len(graph.unit_to_base), skipped=graph.skipped_rows)

        # 4. Transaction matching
        parcel_index = build_parcel_index(parcels)
        summary.match = match_transactions(storage, graph, parcel_index=parcel_index, rematch_all=rematch_all)
        stats = summary.match.stats
        _record_stage(
            summary, "matched", stats.total,
            unit_match=stats.unit_match, block_lot_match=stats.block_lot_match,
            unresolved=stats.unresolved, write_failures=stats.write_failures,
        )

        # 5. Geocode enrichment
        if skip_geocode:
            logger.info("Skipping geocode enrichment")
        else:
            summary.enrichment = enrich_properties(storage, geocoder or GeoclientClient())
            _record_stage(
                summary, "geocoded", summary.enrichment.candidates,
                enriched=summary.enrichment.enriched, failed=summary.enrichment.failed,
                skipped=summary.enrichment.skipped,
            )

        # 6. Comps
        if skip_comps:
            logger.info("Skipping comparable selection")
        else:
            summary.comps = compute_comps(storage)
            _record_stage(summary, "comps", summary.comps.comps_created, subjects=summary.comps.subjects_with_comps)

        # 7. Scores
        if skip_scores:
            logger.info("Skipping opportunity scoring")
        else:
            summary.scores = score_properties(storage)
            _record_stage(summary, "scored", summary.scores.scored, write_failures=summary.scores.write_failures)

        summary.health = evaluate_match_health(
            summary.match.to_dict(),
            condo_acceptance=summary.condo_units.to_dict() if summary.condo_units else None,
        )
        summary.finished_at = datetime.utcnow()

        logger.info("=" * 60)
        logger.info("Pipeline Completed Successfully")
        logger.info("=" * 60)
        logger.info(f"Match health: {summary.health['status']}")
        for finding in summary.health["findings"]:
            logger.info(f"  - {finding}")

        if write_report:
            markdown_path, json_path = write_run_report(summary, reports_dir)
            logger.info(f"Wrote pipeline report: {markdown_path}")
            logger.info(f"Wrote pipeline JSON summary: {json_path}")

        return summary

    except Exception as e:
        logger.error(f"Pipeline Failed: {e}")
        if write_report and summary.stage_stats:
            try:
                markdown_path, json_path = write_run_report(summary, reports_dir)
                logger.info(f"Partial pipeline report written: {markdown_path}")
            except OSError as report_error:
                logger.error(f"Failed to write partial pipeline report: {report_error}")
        raise


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Parcel Graph NYC entity-resolution and valuation pipeline")
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL from the environment)",
    )
    source.add_argument(
        "--input-dir",
        type=Path,
        default=None,
        help="Directory of <table>.csv files; runs in memory instead of against a database",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="CSV mode only: where to write the resulting tables (default: overwrite --input-dir)",
    )
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables before running")
    parser.add_argument("--skip-condo-units", action="store_true", help="Do not rebuild condo_units or buildings")
    parser.add_argument("--skip-geocode", action="store_true", help="Do not call Geoclient")
    parser.add_argument("--skip-comps", action="store_true", help="Do not rebuild comps")
    parser.add_argument("--skip-scores", action="store_true", help="Do not recompute opportunity scores")
    parser.add_argument(
        "--rematch-all",
        action="store_true",
        help="Re-resolve every sale, not only those without a match method",
    )
    parser.add_argument(
        "--write-report",
        action="store_true",
        help=f"Write {REPORTS_DIR}/pipeline_run_*.md and JSON summary",
    )
    parser.add_argument("--reports-dir", type=Path, default=REPORTS_DIR)
    return parser


def main(argv: Optional[List[str]] = None) -> PipelineRunSummary:
    args = _build_parser().parse_args(argv)

    if args.input_dir is not None:
        storage = InMemoryStorage.from_csv_dir(args.input_dir)
        source = str(args.input_dir)
    else:
        database_url = args.database_url or DATABASE_URL
        engine = build_engine(database_url)
        if args.create_tables:
            create_tables(engine)
        storage = SqlStorage(engine)
        source = engine.url.render_as_string(hide_password=True)

    summary = run_pipeline(
        storage,
        skip_condo_units=args.skip_condo_units,
        skip_geocode=args.skip_geocode,
        skip_comps=args.skip_comps,
        skip_scores=args.skip_scores,
        rematch_all=args.rematch_all,
        write_report=args.write_report,
        reports_dir=args.reports_dir,
        source=source,
    )

    if isinstance(storage, InMemoryStorage):
        storage.to_csv_dir(args.output_dir or args.input_dir)
    return summary


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    main()
