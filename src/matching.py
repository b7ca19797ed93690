"""
Parcel Graph NYC - Transaction Matching

Resolves raw sales against the identity graph and the parcel table.

Strategies, in priority order (first success wins, never re-evaluated):
  1. unit_identifier: the sale's computed BBL is a registered unit BBL
  2. block_lot: the sale's block has registered condo buildings; if several,
     the building with the most registered units is taken
  3. block_lot: no condo building on the block, but the BBL is a known parcel
  4. unresolved: missing_bbl_components | no_unit_or_property_match

Each sale's resolution depends only on the (read-only) graph and parcel
index, never on sibling sales, so iteration order does not matter.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from config.settings import MATCH_CONFIG, MatchConfig
from src.bbl import block_prefix, create_bbl, normalize_bbl
from src.identity_graph import IdentityGraph
from src.storage import PipelineStorage

logger = logging.getLogger(__name__)


class MatchMethod(str, Enum):
    UNIT_IDENTIFIER = "unit_identifier"
    BLOCK_LOT = "block_lot"
    UNRESOLVED = "unresolved"


MISSING_BBL_COMPONENTS = "missing_bbl_components"
NO_UNIT_OR_PROPERTY_MATCH = "no_unit_or_property_match"


@dataclass
class SaleResolution:
    """Resolution fields written back to one sale."""

    sale_id: Any
    match_method: MatchMethod
    unit_bbl: Optional[str] = None
    base_bbl: Optional[str] = None
    property_id: Optional[str] = None
    unresolved_reason: Optional[str] = None
    raw_bbl: Optional[str] = None
    block_candidates: int = 0

    def to_update(self) -> Dict[str, Any]:
        return {
            "id": self.sale_id,
            "unit_bbl": self.unit_bbl,
            "base_bbl": self.base_bbl,
            "property_id": self.property_id,
            "match_method": self.match_method.value,
            "unresolved_reason": self.unresolved_reason,
        }


@dataclass
class MatchStats:
    total: int = 0
    unit_match: int = 0
    block_lot_match: int = 0
    unresolved: int = 0
    conflicts: int = 0
    write_failures: int = 0

    def rate(self, count: int) -> float:
        return count / self.total if self.total else 0.0


@dataclass
class UnresolvedBucket:
    reason: str
    count: int = 0
    samples: List[str] = field(default_factory=list)


@dataclass
class TransactionMatchResult:
    """Run summary: the matcher's primary observability output."""

    stats: MatchStats
    unresolved_buckets: List[UnresolvedBucket]
    conflict_samples: List[str] = field(default_factory=list)
    resolutions: List[SaleResolution] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stats": asdict(self.stats),
            "unresolved_buckets": [asdict(b) for b in self.unresolved_buckets],
            "conflict_samples": list(self.conflict_samples),
        }


# =============================================================================
# Parcel index
# =============================================================================

def build_parcel_index(parcels: pd.DataFrame) -> Dict[str, Any]:
    """Normalized parcel BBL -> property id."""
    index: Dict[str, Any] = {}
    if parcels.empty or "bbl" not in parcels.columns:
        return index
    for row in parcels[["id", "bbl"]].itertuples(index=False):
        bbl = normalize_bbl(row.bbl)
        if bbl and bbl not in index:
            index[bbl] = row.id
    return index


# =============================================================================
# Strategies
# =============================================================================

def _blank(value) -> bool:
    return value is None or (isinstance(value, float) and value != value) or str(value).strip() == ""


def raw_sale_bbl(sale: Mapping) -> Optional[str]:
    """BBL computed from a sale's raw borough/block/lot, or None if any part is missing."""
    raw_borough = sale.get("raw_borough")
    raw_block = sale.get("raw_block")
    raw_lot = sale.get("raw_lot")
    if _blank(raw_borough) or _blank(raw_block) or _blank(raw_lot):
        return None
    return create_bbl(raw_borough, raw_block, raw_lot)


def pick_block_candidate(candidates, graph: IdentityGraph) -> str:
    """
    Choose one base BBL among several condo buildings on the same block.

    Heuristic, not a proof: when a sale only reports the block, the building
    with the most registered units is assumed to be the intended one. Equal
    unit counts fall back to the lexicographically smallest base BBL so the
    choice is stable across runs. Alternatives (geographic proximity, most
    recent registry entry) have not been validated against real data.
    """
    return max(sorted(candidates), key=graph.unit_count)


def match_sale(sale: Mapping, graph: IdentityGraph, parcel_index: Mapping[str, Any]) -> SaleResolution:
    """Resolve a single sale. Pure: no I/O."""
    sale_id = sale.get("id")
    raw_bbl = raw_sale_bbl(sale)

    if raw_bbl is None:
        return SaleResolution(
            sale_id=sale_id,
            match_method=MatchMethod.UNRESOLVED,
            unresolved_reason=MISSING_BBL_COMPONENTS,
        )

    # 1. Exact unit match
    base_bbl = graph.base_for_unit(raw_bbl)
    if base_bbl is not None:
        return SaleResolution(
            sale_id=sale_id,
            match_method=MatchMethod.UNIT_IDENTIFIER,
            unit_bbl=raw_bbl,
            base_bbl=base_bbl,
            property_id=parcel_index.get(raw_bbl) or parcel_index.get(base_bbl),
            raw_bbl=raw_bbl,
        )

    # 2. Block-level fallback through the graph
    candidates = graph.candidates_for_block(block_prefix(raw_bbl))
    if candidates:
        chosen = next(iter(candidates)) if len(candidates) == 1 else pick_block_candidate(candidates, graph)
        return SaleResolution(
            sale_id=sale_id,
            match_method=MatchMethod.BLOCK_LOT,
            base_bbl=chosen,
            property_id=parcel_index.get(chosen),
            raw_bbl=raw_bbl,
            block_candidates=len(candidates),
        )

    # 3. Direct parcel hit, no unit-level resolution
    property_id = parcel_index.get(raw_bbl)
    if property_id is not None:
        return SaleResolution(
            sale_id=sale_id,
            match_method=MatchMethod.BLOCK_LOT,
            base_bbl=raw_bbl,
            property_id=property_id,
            raw_bbl=raw_bbl,
        )

    return SaleResolution(
        sale_id=sale_id,
        match_method=MatchMethod.UNRESOLVED,
        unresolved_reason=NO_UNIT_OR_PROPERTY_MATCH,
        raw_bbl=raw_bbl,
    )


# =============================================================================
# Batch run
# =============================================================================

def _evidence(sale: Mapping, resolution: SaleResolution) -> str:
    address = sale.get("raw_address")
    address = "N/A" if _blank(address) else str(address)
    if resolution.raw_bbl:
        return f"BBL: {resolution.raw_bbl}, Addr: {address}"
    return f"ID: {resolution.sale_id}, Addr: {address}"


def resolve_sales(
    sales: pd.DataFrame,
    graph: IdentityGraph,
    parcel_index: Mapping[str, Any],
    *,
    config: MatchConfig = MATCH_CONFIG,
) -> TransactionMatchResult:
    """Resolve every sale in memory and accumulate the run summary (no writes)."""
    stats = MatchStats(total=len(sales))
    buckets: Dict[str, UnresolvedBucket] = {}
    conflict_samples: List[str] = []
    resolutions: List[SaleResolution] = []

    for i, sale in enumerate(sales.to_dict(orient="records"), start=1):
        resolution = match_sale(sale, graph, parcel_index)
        resolutions.append(resolution)

        if resolution.match_method is MatchMethod.UNIT_IDENTIFIER:
            stats.unit_match += 1
        elif resolution.match_method is MatchMethod.BLOCK_LOT:
            stats.block_lot_match += 1
            if resolution.block_candidates > 1:
                stats.conflicts += 1
                if len(conflict_samples) < config.sample_cap:
                    conflict_samples.append(
                        f"{_evidence(sale, resolution)} -> {resolution.base_bbl} "
                        f"({resolution.block_candidates} candidates)"
                    )
        else:
            stats.unresolved += 1
            bucket = buckets.setdefault(resolution.unresolved_reason, UnresolvedBucket(resolution.unresolved_reason))
            bucket.count += 1
            if len(bucket.samples) < config.sample_cap:
                bucket.samples.append(_evidence(sale, resolution))

        if i % config.progress_every == 0:
            logger.info(f"  Processed {i:,}/{stats.total:,} sales...")

    return TransactionMatchResult(
        stats=stats,
        unresolved_buckets=list(buckets.values()),
        conflict_samples=conflict_samples,
        resolutions=resolutions,
    )


def match_transactions(
    storage: PipelineStorage,
    graph: IdentityGraph,
    *,
    parcel_index: Optional[Mapping[str, Any]] = None,
    rematch_all: bool = False,
    config: MatchConfig = MATCH_CONFIG,
) -> TransactionMatchResult:
    """
    Resolve sales from storage and write the resolution fields back.

    Only sales without a match_method are processed unless `rematch_all`,
    in which case every sale's resolution is overwritten. A failed write is
    counted in `stats.write_failures`; it never aborts the run.
    """
    logger.info("=" * 60)
    logger.info("TRANSACTION MATCHING WITH IDENTITY GRAPH")
    logger.info("=" * 60)

    if parcel_index is None:
        parcel_index = build_parcel_index(storage.load_properties())
        logger.info(f"  Properties with BBL: {len(parcel_index):,}")

    sales = storage.load_sales(only_unmatched=not rematch_all)
    logger.info(f"  Sales to match: {len(sales):,}")

    result = resolve_sales(sales, graph, parcel_index, config=config)

    updates = [r.to_update() for r in result.resolutions]
    for i in range(0, len(updates), config.write_batch_size):
        failed = storage.update_sales(updates[i:i + config.write_batch_size])
        result.stats.write_failures += len(failed)

    log_match_summary(result)
    return result


def log_match_summary(result: TransactionMatchResult) -> None:
    stats = result.stats
    logger.info("=" * 60)
    logger.info("MATCH RESULTS")
    logger.info("=" * 60)
    logger.info(f"  Total sales processed: {stats.total:,}")
    logger.info(f"  Unit BBL match: {stats.unit_match:,} ({stats.rate(stats.unit_match) * 100:.1f}%)")
    logger.info(f"  Block/Lot match: {stats.block_lot_match:,} ({stats.rate(stats.block_lot_match) * 100:.1f}%)")
    logger.info(f"  Unresolved: {stats.unresolved:,} ({stats.rate(stats.unresolved) * 100:.1f}%)")
    logger.info(f"  Block conflicts (tie-broken): {stats.conflicts:,}")
    if stats.write_failures:
        logger.warning(f"  Write failures: {stats.write_failures:,}")

    if result.unresolved_buckets:
        logger.info("Unresolved reasons:")
        for bucket in result.unresolved_buckets:
            logger.info(f"  {bucket.reason}: {bucket.count:,}")
            for sample in bucket.samples:
                logger.info(f"    - {sample}")
