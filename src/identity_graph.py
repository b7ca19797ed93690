"""
Parcel Graph NYC - Identity Graph

In-memory indices over the condo unit registry:
- unit BBL -> base (building) BBL
- block prefix (borough + block of the *unit* BBL) -> candidate base BBLs
- base BBL -> member unit BBLs

Sales often report a unit's block/lot exactly as the registry does, but just
as often report only the building's lot. The block prefix index is what
recovers the second case without scanning the registry per sale.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Union

import pandas as pd

from src.bbl import block_prefix, normalize_bbl

logger = logging.getLogger(__name__)


@dataclass
class IdentityGraph:
    """Read-only unit/base/block indices used by the transaction matcher."""

    unit_to_base: Dict[str, str] = field(default_factory=dict)
    block_prefix_to_bases: Dict[str, Set[str]] = field(default_factory=dict)
    base_to_units: Dict[str, List[str]] = field(default_factory=dict)
    skipped_rows: int = 0
    duplicate_units: int = 0

    def base_for_unit(self, unit_bbl: str) -> Optional[str]:
        return self.unit_to_base.get(unit_bbl)

    def candidates_for_block(self, prefix: str) -> Set[str]:
        return self.block_prefix_to_bases.get(prefix, set())

    def unit_count(self, base_bbl: str) -> int:
        return len(self.base_to_units.get(base_bbl, []))

    def summary(self) -> Dict[str, int]:
        return {
            "unit_bbls": len(self.unit_to_base),
            "base_bbls": len(self.base_to_units),
            "block_prefixes": len(self.block_prefix_to_bases),
            "skipped_rows": self.skipped_rows,
            "duplicate_units": self.duplicate_units,
        }


def _iter_rows(unit_rows: Union[pd.DataFrame, Iterable[Mapping]]) -> Iterable[Mapping]:
    if isinstance(unit_rows, pd.DataFrame):
        return unit_rows.to_dict(orient="records")
    return unit_rows


def build_identity_graph(unit_rows: Union[pd.DataFrame, Iterable[Mapping]]) -> IdentityGraph:
    """
    Build the identity graph from registry (or condo unit) rows.

    Each row needs `unit_bbl` and `base_bbl`. Rows missing either are skipped.
    A unit BBL seen twice is indexed once (first occurrence wins) so repeated
    registry rows cannot inflate a building's unit count.
    """
    graph = IdentityGraph()

    for row in _iter_rows(unit_rows):
        unit_bbl = normalize_bbl(row.get("unit_bbl"))
        base_bbl = normalize_bbl(row.get("base_bbl"))
        if not unit_bbl or not base_bbl:
            graph.skipped_rows += 1
            continue

        if unit_bbl in graph.unit_to_base:
            graph.duplicate_units += 1
            continue

        graph.unit_to_base[unit_bbl] = base_bbl
        graph.base_to_units.setdefault(base_bbl, []).append(unit_bbl)
        graph.block_prefix_to_bases.setdefault(block_prefix(unit_bbl), set()).add(base_bbl)

    stats = graph.summary()
    logger.info(f"  Unit BBLs loaded: {stats['unit_bbls']:,}")
    logger.info(f"  Buildings (base BBLs): {stats['base_bbls']:,}")
    logger.info(f"  Block prefixes indexed: {stats['block_prefixes']:,}")
    if graph.skipped_rows or graph.duplicate_units:
        logger.info(
            f"  └─ Skipped {graph.skipped_rows:,} incomplete rows, {graph.duplicate_units:,} duplicate units"
        )

    return graph
