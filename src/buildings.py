"""
Parcel Graph NYC - Building Rollup

Rolls the `condo_units` table up into one `buildings` row per base BBL:
display address, BIN, mean coordinates, borough, ZIP and unit count.
Runs after the condo unit populator and is a full refresh.

Usage:
    from src.buildings import populate_buildings

    summary = populate_buildings(storage)
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import pandas as pd

from src.storage import PipelineStorage

logger = logging.getLogger(__name__)


@dataclass
class BuildingRollupSummary:
    units: int = 0
    buildings: int = 0
    inserted: int = 0
    with_address: int = 0
    with_coords: int = 0
    max_units: int = 0

    @property
    def avg_units(self) -> float:
        return round(self.units / self.buildings, 1) if self.buildings else 0.0

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["avg_units"] = self.avg_units
        return out


def _min_text(values: pd.Series) -> Optional[str]:
    present = [str(v).strip() for v in values if isinstance(v, str) and v.strip()]
    return min(present) if present else None


def _mean(values: pd.Series) -> Optional[float]:
    mean = pd.to_numeric(values, errors="coerce").mean()
    return None if pd.isna(mean) else float(mean)


def build_building_records(units: pd.DataFrame) -> List[Dict[str, Any]]:
    """
    One record per base BBL, largest buildings first.

    Text fields take the smallest non-empty value so the result does not
    depend on unit order; coordinates are the mean over units that have them.
    """
    if units.empty:
        return []
    units = units[units["base_bbl"].notna()]

    records: List[Dict[str, Any]] = []
    for base_bbl, group in units.groupby("base_bbl", sort=True):
        records.append({
            "base_bbl": str(base_bbl),
            "display_address": _min_text(group["building_display_address"]),
            "bin_number": _min_text(group["bin_number"]),
            "latitude": _mean(group["latitude"]),
            "longitude": _mean(group["longitude"]),
            "borough": _min_text(group["borough"]),
            "zip_code": _min_text(group["zip_code"]),
            "unit_count": int(len(group)),
        })
    records.sort(key=lambda r: -r["unit_count"])
    return records


def populate_buildings(storage: PipelineStorage) -> BuildingRollupSummary:
    """Delete and rebuild the buildings table from the current condo_units."""
    logger.info("=" * 60)
    logger.info("POPULATING BUILDINGS TABLE FROM CONDO UNITS")
    logger.info("=" * 60)

    units = storage.load_condo_units()
    records = build_building_records(units)
    logger.info(f"  Found {len(records):,} distinct buildings from {len(units):,} condo units")

    summary = BuildingRollupSummary(
        units=sum(r["unit_count"] for r in records),
        buildings=len(records),
        with_address=sum(1 for r in records if r["display_address"]),
        with_coords=sum(1 for r in records if r["latitude"] is not None and r["longitude"] is not None),
        max_units=max((r["unit_count"] for r in records), default=0),
    )
    summary.inserted = storage.replace_buildings(records)

    logger.info("Buildings table stats:")
    logger.info(f"  ├─ Total buildings: {summary.buildings:,}")
    logger.info(f"  ├─ Total units: {summary.units:,}")
    logger.info(f"  ├─ Avg units/building: {summary.avg_units}")
    logger.info(f"  └─ Max units in building: {summary.max_units:,}")
    return summary
