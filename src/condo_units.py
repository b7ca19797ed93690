"""
Parcel Graph NYC - Condo Unit Population

Rebuilds the `condo_units` table from the condo registry and the parcel
(property) table on every run. Full refresh, not an upsert.

Address/coordinate resolution per registry row:
  1. parcel whose BBL equals the unit BBL
  2. parcel whose BBL equals the base (building) BBL
  3. block majority vote: the most common address among the block's
     condo-unit parcels

Acceptance policy (reported, never enforced):
  - >= 99% of units with an address
  - >= 99% of units with coordinates
  - zero duplicate unit BBLs

Usage:
    python -m src.pipeline --skip-comps --skip-scores
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from config.settings import CONDO_ADDRESS_MIN_PCT, CONDO_COORDS_MIN_PCT
from src.address import simple_address_normalize
from src.bbl import block_prefix, borough_name, lot_number, is_condo_unit_lot, normalize_bbl
from src.storage import PipelineStorage

logger = logging.getLogger(__name__)

UNIT_BBL = "unit_bbl"
BASE_BBL = "base_bbl"
BLOCK_MAJORITY = "block_majority"


@dataclass
class BuildingData:
    """Address/location data borrowed from one parcel row."""

    address: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    property_id: Optional[str] = None
    bin_number: Optional[str] = None
    borough: Optional[str] = None
    zip_code: Optional[str] = None

    @property
    def has_coords(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class CondoAcceptance:
    total: int
    with_address: int
    with_coords: int
    duplicates: int
    address_pct: float
    coords_pct: float
    address_pass: bool
    coords_pass: bool
    no_duplicates: bool

    @property
    def passed(self) -> bool:
        return self.address_pass and self.coords_pass and self.no_duplicates


@dataclass
class CondoPopulateReport:
    """Health report for one populate run."""

    acceptance: CondoAcceptance
    inserted: int = 0
    skipped_incomplete: int = 0
    by_source: Dict[str, int] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.acceptance.passed

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["passed"] = self.passed
        return out


def _value(value) -> Optional[Any]:
    if value is None:
        return None
    if isinstance(value, float) and value != value:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return value


def format_unit_display_address(building_address: Optional[str], unit_designation: Optional[str]) -> Optional[str]:
    """"100 MAIN ST" + "5A" -> "100 MAIN ST, Unit 5A"; APT/UNIT/# designations are kept as written."""
    if not building_address:
        return building_address
    unit = _value(unit_designation)
    if unit is None:
        return building_address

    unit = str(unit).strip().upper()
    if unit.startswith("APT") or unit.startswith("UNIT") or unit.startswith("#"):
        return f"{building_address}, {unit}"
    return f"{building_address}, Unit {unit}"


def acceptance_from_counts(total: int, with_address: int, with_coords: int, duplicates: int) -> CondoAcceptance:
    address_pct = round(with_address / total * 100, 2) if total else 0.0
    coords_pct = round(with_coords / total * 100, 2) if total else 0.0
    return CondoAcceptance(
        total=total,
        with_address=with_address,
        with_coords=with_coords,
        duplicates=duplicates,
        address_pct=address_pct,
        coords_pct=coords_pct,
        address_pass=address_pct >= CONDO_ADDRESS_MIN_PCT,
        coords_pass=coords_pct >= CONDO_COORDS_MIN_PCT,
        no_duplicates=duplicates == 0,
    )


# =============================================================================
# Parcel indices
# =============================================================================

def _building_from_row(row: Dict[str, Any]) -> BuildingData:
    lat = _value(row.get("latitude"))
    lon = _value(row.get("longitude"))
    return BuildingData(
        address=_value(row.get("address")),
        latitude=float(lat) if lat is not None else None,
        longitude=float(lon) if lon is not None else None,
        property_id=_value(row.get("id")),
        bin_number=_value(row.get("bin_number")),
        borough=_value(row.get("borough")),
        zip_code=_value(row.get("zip_code")),
    )


def index_parcels_by_bbl(parcels: pd.DataFrame) -> Dict[str, BuildingData]:
    """Normalize each parcel BBL once; the first row wins for a repeated BBL."""
    index: Dict[str, BuildingData] = {}
    for row in parcels.to_dict(orient="records"):
        bbl = normalize_bbl(row.get("bbl"))
        if bbl and bbl not in index:
            index[bbl] = _building_from_row(row)
    return index


def build_block_address_index(parcels_by_bbl: Dict[str, BuildingData]) -> Dict[str, BuildingData]:
    """
    Block prefix -> representative building by majority vote.

    Voters are the block's condo-unit lots (7501+) with an address and
    coordinates; a block without any falls back to its other parcels with
    address and coordinates. Ties go to the address seen first in BBL order.
    Votes are counted on the normalized address; the winner keeps the text
    of its first voter, uppercased.
    """
    unit_voters: Dict[str, List[BuildingData]] = {}
    other_voters: Dict[str, List[BuildingData]] = {}
    for bbl in sorted(parcels_by_bbl):
        building = parcels_by_bbl[bbl]
        if not building.address or not building.has_coords:
            continue
        target = unit_voters if is_condo_unit_lot(lot_number(bbl)) else other_voters
        target.setdefault(block_prefix(bbl), []).append(building)

    index: Dict[str, BuildingData] = {}
    for prefix in set(unit_voters) | set(other_voters):
        voters = unit_voters.get(prefix) or other_voters[prefix]
        counts: Dict[str, int] = {}
        first_seen: Dict[str, BuildingData] = {}
        for building in voters:
            key = simple_address_normalize(building.address)
            counts[key] = counts.get(key, 0) + 1
            first_seen.setdefault(key, building)

        best_key = None
        for key, count in counts.items():
            if best_key is None or count > counts[best_key]:
                best_key = key
        winner = first_seen[best_key]
        index[prefix] = BuildingData(
            address=str(winner.address).strip().upper(),
            latitude=winner.latitude,
            longitude=winner.longitude,
            borough=winner.borough,
            zip_code=winner.zip_code,
        )
    return index


# =============================================================================
# Populate
# =============================================================================

def build_condo_unit_records(
    registry: pd.DataFrame,
    parcels: pd.DataFrame,
) -> tuple[List[Dict[str, Any]], CondoPopulateReport]:
    """Build the full set of condo unit rows plus the health report (no I/O)."""
    parcels_by_bbl = index_parcels_by_bbl(parcels)
    block_index = build_block_address_index(parcels_by_bbl)
    logger.info(f"  Indexed {len(parcels_by_bbl):,} parcels by BBL, {len(block_index):,} blocks with a majority address")

    records: List[Dict[str, Any]] = []
    seen_units = set()
    duplicates = 0
    skipped = 0
    with_address = 0
    with_coords = 0
    by_source = {UNIT_BBL: 0, BASE_BBL: 0, BLOCK_MAJORITY: 0, "unresolved": 0}

    for reg in registry.to_dict(orient="records"):
        unit_bbl = normalize_bbl(reg.get("unit_bbl"))
        base_bbl = normalize_bbl(reg.get("base_bbl"))
        if not unit_bbl or not base_bbl:
            skipped += 1
            continue

        if unit_bbl in seen_units:
            duplicates += 1
            continue
        seen_units.add(unit_bbl)

        source = None
        building = parcels_by_bbl.get(unit_bbl)
        if building is not None:
            source = UNIT_BBL
        else:
            building = parcels_by_bbl.get(base_bbl)
            if building is not None:
                source = BASE_BBL

        fallback = block_index.get(block_prefix(base_bbl))
        if building is None and fallback is not None:
            building, source = fallback, BLOCK_MAJORITY

        address = building.address if building else None
        lat = building.latitude if building else None
        lon = building.longitude if building else None
        # A direct parcel hit with gaps borrows the block's representative data
        if building is not None and fallback is not None and source != BLOCK_MAJORITY:
            if not address:
                address = fallback.address
            if lat is None or lon is None:
                lat, lon = fallback.latitude, fallback.longitude

        by_source[source or "unresolved"] += 1
        if address:
            with_address += 1
        if lat is not None and lon is not None:
            with_coords += 1

        unit_designation = _value(reg.get("unit_designation"))
        records.append({
            "unit_bbl": unit_bbl,
            "base_bbl": base_bbl,
            "condo_number": _value(reg.get("condo_number")),
            "unit_designation": unit_designation,
            "building_property_id": building.property_id if building else None,
            "building_display_address": address,
            "unit_display_address": format_unit_display_address(address, unit_designation),
            "address_source": source,
            "bin_number": building.bin_number if building else None,
            "latitude": lat,
            "longitude": lon,
            "borough": (building.borough if building else None) or borough_name(unit_bbl[0]),
            "zip_code": building.zip_code if building else None,
        })

    report = CondoPopulateReport(
        acceptance=acceptance_from_counts(len(records), with_address, with_coords, duplicates),
        skipped_incomplete=skipped,
        by_source=by_source,
    )
    return records, report


def populate_condo_units(storage: PipelineStorage) -> CondoPopulateReport:
    """Delete and rebuild the condo_units table. Returns the run's health report."""
    logger.info("=" * 60)
    logger.info("POPULATING CONDO UNITS TABLE")
    logger.info("=" * 60)

    registry = storage.load_condo_registry()
    logger.info(f"  Found {len(registry):,} condo registry records")
    parcels = storage.load_properties()

    records, report = build_condo_unit_records(registry, parcels)
    report.inserted = storage.replace_condo_units(records)

    log_acceptance(report.acceptance)
    logger.info(f"  Sources: {report.by_source}")
    if report.skipped_incomplete:
        logger.info(f"  Skipped (missing unit/base BBL): {report.skipped_incomplete:,}")
    if not report.passed:
        logger.warning("Condo unit acceptance below target; schedule a follow-up enrichment run")
    return report


def verify_condo_units(units: pd.DataFrame) -> CondoAcceptance:
    """Re-check a persisted condo_units table against the acceptance policy."""
    total = len(units)
    address = units["building_display_address"].fillna("").astype(str).str.strip()
    with_address = int((address != "").sum())
    with_coords = int((units["latitude"].notna() & units["longitude"].notna()).sum())
    counts = units["unit_bbl"].value_counts()
    duplicates = int((counts > 1).sum())
    acceptance = acceptance_from_counts(total, with_address, with_coords, duplicates)
    log_acceptance(acceptance)
    return acceptance


def log_acceptance(acceptance: CondoAcceptance) -> None:
    def mark(ok: bool) -> str:
        return "PASS" if ok else "FAIL"

    logger.info(f"  Total units: {acceptance.total:,}")
    logger.info(f"  ├─ With address: {acceptance.with_address:,} ({acceptance.address_pct:.2f}%)")
    logger.info(f"  ├─ With coords: {acceptance.with_coords:,} ({acceptance.coords_pct:.2f}%)")
    logger.info(f"  └─ Duplicate unit BBLs: {acceptance.duplicates:,}")
    logger.info(f"  >={CONDO_ADDRESS_MIN_PCT:.0f}% with address: {mark(acceptance.address_pass)}")
    logger.info(f"  >={CONDO_COORDS_MIN_PCT:.0f}% with coords: {mark(acceptance.coords_pass)}")
    logger.info(f"  0 duplicate unit BBLs: {mark(acceptance.no_duplicates)}")
