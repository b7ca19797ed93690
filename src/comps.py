"""
Parcel Graph NYC - Comparable Selection

For each subject property, picks up to `comp_count` comparables from the
same ZIP code, ranked by distance over z-scored price/sqft, sqft and year
built (z-scores are computed within the ZIP group; missing values sit at the
group median). Equal distances are ordered by a seeded random draw, so a
fixed seed reproduces the same comps.

Each comp carries bounded sqft/age/beds adjustments and an adjusted price:

    adjusted = min(ppsf or 400, 10_000) * 1500 * (1 + adjustments)
    clamped to 2_000_000_000

Usage:
    python -m src.pipeline --skip-condo-units --skip-geocode
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from config.settings import COMP_CONFIG, CompConfig
from src.storage import PipelineStorage

logger = logging.getLogger(__name__)

FEATURES = ["price_per_sqft", "sqft", "year_built"]

# Adjustment per unit of difference, before clamping
SQFT_RATE = 1.0        # relative sqft difference
AGE_RATE = 0.005       # per year newer
BEDS_RATE = 0.025      # per extra bedroom


@dataclass
class CompSummary:
    properties: int = 0
    zip_groups: int = 0
    subjects_with_comps: int = 0
    comps_created: int = 0
    skipped_no_zip: int = 0


def derive_price_per_sqft(properties: pd.DataFrame) -> pd.Series:
    """Stored price/sqft, else last sale price (or estimated value) over sqft."""
    sqft = pd.to_numeric(properties["sqft"], errors="coerce")
    sqft = sqft.where(sqft > 0)
    stored = pd.to_numeric(properties["price_per_sqft"], errors="coerce")
    sale = pd.to_numeric(properties["last_sale_price"], errors="coerce")
    value = pd.to_numeric(properties["estimated_value"], errors="coerce")

    derived = (sale.where(sale > 0) / sqft).fillna(value.where(value > 0) / sqft)
    return stored.where(stored > 0).fillna(derived)


def _zscores(values: np.ndarray) -> np.ndarray:
    """Column-wise z-scores with NaNs at the column median (0 when the column is empty or flat)."""
    out = np.zeros_like(values, dtype=float)
    for j in range(values.shape[1]):
        col = values[:, j]
        present = ~np.isnan(col)
        if not present.any():
            continue
        filled = np.where(present, col, np.median(col[present]))
        std = filled.std()
        if std > 0:
            out[:, j] = (filled - filled.mean()) / std
    return out


def _clamp(value: float, cap: float) -> float:
    return max(-cap, min(cap, value))


def _number(value) -> Optional[float]:
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return None if np.isnan(value) else value


def comp_adjustments(subject: Dict[str, Any], comp: Dict[str, Any], config: CompConfig = COMP_CONFIG) -> Dict[str, float]:
    """Signed sqft/age/beds adjustments (subject relative to comp), each bounded."""
    s_sqft, c_sqft = _number(subject.get("sqft")), _number(comp.get("sqft"))
    s_year, c_year = _number(subject.get("year_built")), _number(comp.get("year_built"))
    s_beds, c_beds = _number(subject.get("beds")), _number(comp.get("beds"))

    sqft_adj = 0.0
    if s_sqft and c_sqft:
        sqft_adj = _clamp((s_sqft - c_sqft) / c_sqft * SQFT_RATE, config.sqft_adjustment_cap)
    age_adj = 0.0
    if s_year is not None and c_year is not None:
        age_adj = _clamp((s_year - c_year) * AGE_RATE, config.age_adjustment_cap)
    beds_adj = 0.0
    if s_beds is not None and c_beds is not None:
        beds_adj = _clamp((s_beds - c_beds) * BEDS_RATE, config.beds_adjustment_cap)

    return {
        "sqft_adjustment": round(sqft_adj, 4),
        "age_adjustment": round(age_adj, 4),
        "beds_adjustment": round(beds_adj, 4),
    }


def adjusted_comp_price(comp_ppsf: Optional[float], total_adjustment: float, config: CompConfig = COMP_CONFIG) -> int:
    ppsf = _number(comp_ppsf)
    if not ppsf or ppsf <= 0:
        ppsf = config.default_price_per_sqft
    ppsf = min(ppsf, config.max_price_per_sqft)
    price = int(round(ppsf * config.representative_sqft * (1 + total_adjustment)))
    return min(config.max_adjusted_price, price)


def select_comps(properties: pd.DataFrame, config: CompConfig = COMP_CONFIG) -> tuple[List[Dict[str, Any]], CompSummary]:
    """Build comp records for every property with a ZIP code (no I/O)."""
    rng = np.random.default_rng(config.random_seed)
    frame = properties.copy()
    frame["price_per_sqft"] = derive_price_per_sqft(frame)

    summary = CompSummary(properties=len(frame))
    has_zip = frame["zip_code"].notna() & (frame["zip_code"].astype(str).str.strip() != "")
    summary.skipped_no_zip = int((~has_zip).sum())
    frame = frame[has_zip].copy()
    frame["zip_code"] = frame["zip_code"].astype(str).str.strip()

    records: List[Dict[str, Any]] = []
    for zip_code, group in sorted(frame.groupby("zip_code"), key=lambda item: item[0]):
        summary.zip_groups += 1
        if len(group) < 2:
            continue

        group = group.sort_values("id", kind="mergesort").reset_index(drop=True)
        matrix = group[FEATURES].apply(pd.to_numeric, errors="coerce").to_numpy(dtype=float)
        z = _zscores(matrix)
        rows = group.to_dict(orient="records")

        for i, subject in enumerate(rows):
            distances = np.sqrt(((z - z[i]) ** 2).sum(axis=1))
            tiebreak = rng.random(len(rows))
            order = [j for j in np.lexsort((tiebreak, distances)) if j != i][:config.comp_count]
            if order:
                summary.subjects_with_comps += 1

            for j in order:
                comp = rows[j]
                adjustments = comp_adjustments(subject, comp, config)
                records.append({
                    "subject_property_id": subject["id"],
                    "comp_property_id": comp["id"],
                    "similarity_score": round(1.0 / (1.0 + float(distances[j])), 4),
                    **adjustments,
                    "adjusted_price": adjusted_comp_price(comp["price_per_sqft"], sum(adjustments.values()), config),
                })

    summary.comps_created = len(records)
    return records, summary


def compute_comps(storage: PipelineStorage, config: CompConfig = COMP_CONFIG) -> CompSummary:
    """Recompute every comp relationship and replace the comps table."""
    logger.info("=" * 60)
    logger.info("CREATING COMPARABLE RELATIONSHIPS")
    logger.info("=" * 60)

    properties = storage.load_properties()
    logger.info(f"  Found {len(properties):,} properties")

    records, summary = select_comps(properties, config)
    storage.replace_comps(records)

    logger.info(f"  Grouped into {summary.zip_groups:,} ZIP codes")
    logger.info(f"  ├─ Subjects with comps: {summary.subjects_with_comps:,}")
    logger.info(f"  ├─ Skipped (no ZIP): {summary.skipped_no_zip:,}")
    logger.info(f"  └─ Comps created: {summary.comps_created:,}")
    return summary
