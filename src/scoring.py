"""
Parcel Graph NYC - Opportunity Score

A bounded 0-100 score with a Low/Medium/High confidence tier, built from
five named components. Each component is clamped to [0, 100] before it is
weighted:

    mispricing   40%   ((estimated - price) / estimated) * 100 + 50
    year_built   15%   (year - 1900) / 1.2
    size         15%   sqft / 30
    liquidity    15%   70 (placeholder until transaction volume is wired in)
    risk         15%   75 (placeholder until market volatility is wired in)

Missing or non-positive price / estimated value gives the neutral score
(50, Low); a score is never fabricated from absent inputs.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

from src.storage import PipelineStorage

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50

# Component weights (must sum to 1.0)
WEIGHT_MISPRICING = 0.40
WEIGHT_YEAR_BUILT = 0.15
WEIGHT_SIZE = 0.15
WEIGHT_LIQUIDITY = 0.15
WEIGHT_RISK = 0.15

LIQUIDITY_PLACEHOLDER = 70.0
RISK_PLACEHOLDER = 75.0

# Confidence tiers (strictly greater than)
HIGH_THRESHOLD = 70
MEDIUM_THRESHOLD = 50


@dataclass
class ScoreComponent:
    name: str
    raw: float
    weight: float

    @property
    def weighted(self) -> float:
        return self.raw * self.weight


@dataclass
class OpportunityScore:
    score: int
    confidence: str
    components: List[ScoreComponent] = field(default_factory=list)

    def breakdown(self) -> Dict[str, Dict[str, float]]:
        """Per-component raw and weighted values, keyed by component name."""
        return {
            c.name: {"raw": round(c.raw, 2), "weight": c.weight, "weighted": round(c.weighted, 2)}
            for c in self.components
        }


@dataclass
class ScoreSummary:
    scored: int = 0
    neutral: int = 0
    write_failures: int = 0
    tiers: Dict[str, int] = field(default_factory=lambda: {"High": 0, "Medium": 0, "Low": 0})


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return min(high, max(low, value))


def _positive(value) -> Optional[float]:
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or value <= 0:
        return None
    return value


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def confidence_tier(score: int) -> str:
    if score > HIGH_THRESHOLD:
        return "High"
    if score > MEDIUM_THRESHOLD:
        return "Medium"
    return "Low"


def calculate_opportunity_score(price, estimated_value, year_built=None, sqft=None) -> OpportunityScore:
    """Score one property. Missing year built or sqft contributes 0 for that component."""
    price = _positive(price)
    estimated_value = _positive(estimated_value)
    if price is None or estimated_value is None:
        return OpportunityScore(score=NEUTRAL_SCORE, confidence="Low")

    year = _positive(year_built)
    size = _positive(sqft)

    components = [
        ScoreComponent("mispricing", _clamp((estimated_value - price) / estimated_value * 100 + 50), WEIGHT_MISPRICING),
        ScoreComponent("year_built", _clamp((year - 1900) / 1.2) if year else 0.0, WEIGHT_YEAR_BUILT),
        ScoreComponent("size", _clamp(size / 30) if size else 0.0, WEIGHT_SIZE),
        ScoreComponent("liquidity", LIQUIDITY_PLACEHOLDER, WEIGHT_LIQUIDITY),
        ScoreComponent("risk", RISK_PLACEHOLDER, WEIGHT_RISK),
    ]
    score = int(_clamp(round_half_up(sum(c.weighted for c in components))))
    return OpportunityScore(score=score, confidence=confidence_tier(score), components=components)


def score_frame(properties: pd.DataFrame) -> pd.DataFrame:
    """Score every row; returns id, opportunity_score, confidence_level."""
    rows = []
    for prop in properties.to_dict(orient="records"):
        result = calculate_opportunity_score(
            prop.get("last_sale_price"),
            prop.get("estimated_value"),
            prop.get("year_built"),
            prop.get("sqft"),
        )
        rows.append({"id": prop["id"], "opportunity_score": result.score, "confidence_level": result.confidence})
    return pd.DataFrame(rows, columns=["id", "opportunity_score", "confidence_level"])


def score_properties(storage: PipelineStorage, batch_size: int = 500) -> ScoreSummary:
    """Recompute and persist the score of every property."""
    logger.info("=" * 60)
    logger.info("SCORING PROPERTIES")
    logger.info("=" * 60)

    properties = storage.load_properties()
    scores = score_frame(properties)

    summary = ScoreSummary(scored=len(scores))
    summary.neutral = int(
        (properties["last_sale_price"].map(_positive).isna() | properties["estimated_value"].map(_positive).isna()).sum()
    )
    for tier, count in scores["confidence_level"].value_counts().items():
        summary.tiers[tier] = int(count)

    updates = scores.to_dict(orient="records")
    for i in range(0, len(updates), batch_size):
        failed = storage.update_properties(updates[i:i + batch_size])
        summary.write_failures += len(failed)

    logger.info(f"  Scored {summary.scored:,} properties ({summary.neutral:,} neutral: missing price or value)")
    logger.info(f"  ├─ High: {summary.tiers['High']:,}")
    logger.info(f"  ├─ Medium: {summary.tiers['Medium']:,}")
    logger.info(f"  └─ Low: {summary.tiers['Low']:,}")
    if summary.write_failures:
        logger.warning(f"  Write failures: {summary.write_failures:,}")
    return summary
