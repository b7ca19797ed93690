"""
Parcel Graph NYC - Geocode Enrichment

Fills in coordinates (and BIN/BBL/ZIP where missing) for properties that
have an address and a BBL or ZIP but no coordinates, via the Geoclient
batch interface.

Outcomes per property:
  - enriched: successful result at or above the confidence threshold, written
  - failed:   unsuccessful result, or the write was rejected
  - skipped:  no borough/ZIP to geocode against, or low confidence

Failed and skipped properties are never retried within a run.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from config.settings import GEOCODE_CONFIG, GeocodeConfig
from src.bbl import normalize_bbl
from src.geocoding import GeoclientClient, GeocodeRequest, GeocodeResult
from src.storage import PipelineStorage

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentSummary:
    candidates: int = 0
    enriched: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    failure_samples: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _text(value) -> Optional[str]:
    if value is None or (isinstance(value, float) and value != value):
        return None
    value = str(value).strip()
    return value or None


def geocode_locator(prop: Dict[str, Any]) -> Optional[str]:
    """Borough code from the BBL's first digit, else the ZIP code."""
    bbl = normalize_bbl(prop.get("bbl"))
    if bbl and bbl[0] in "12345":
        return bbl[0]
    return _text(prop.get("zip_code"))


def enrichment_update(prop: Dict[str, Any], result: GeocodeResult) -> Dict[str, Any]:
    update = {"id": prop["id"], "latitude": result.latitude, "longitude": result.longitude}
    if result.bin and not _text(prop.get("bin_number")):
        update["bin_number"] = result.bin
    bbl = normalize_bbl(result.bbl)
    if bbl and not normalize_bbl(prop.get("bbl")):
        update["bbl"] = bbl
    if result.zip_code and not _text(prop.get("zip_code")):
        update["zip_code"] = result.zip_code
    return update


def enrich_properties(
    storage: PipelineStorage,
    client: GeoclientClient,
    *,
    limit: Optional[int] = None,
    config: GeocodeConfig = GEOCODE_CONFIG,
) -> EnrichmentSummary:
    """Geocode properties missing coordinates in batches of `config.batch_size`."""
    logger.info("=" * 60)
    logger.info("GEOCLIENT ENRICHMENT")
    logger.info("=" * 60)

    summary = EnrichmentSummary()
    if not client.available:
        logger.warning("NYC_GEOCLIENT_API_KEY not set; skipping geocode enrichment")
        return summary

    properties = storage.load_properties_missing_coordinates(limit=limit)
    summary.candidates = len(properties)
    logger.info(f"  Properties needing coordinates: {summary.candidates:,}")

    rows = properties.to_dict(orient="records")
    for start in range(0, len(rows), config.batch_size):
        batch = rows[start:start + config.batch_size]
        summary.batches += 1
        _enrich_batch(storage, client, batch, summary, config)
        logger.info(
            f"  Batch {summary.batches}: enriched={summary.enriched:,} "
            f"failed={summary.failed:,} skipped={summary.skipped:,}"
        )

    logger.info(f"  ├─ Enriched: {summary.enriched:,}")
    logger.info(f"  ├─ Failed: {summary.failed:,}")
    logger.info(f"  └─ Skipped: {summary.skipped:,}")
    return summary


def _enrich_batch(
    storage: PipelineStorage,
    client: GeoclientClient,
    batch: List[Dict[str, Any]],
    summary: EnrichmentSummary,
    config: GeocodeConfig,
) -> None:
    to_geocode = []
    for prop in batch:
        locator = geocode_locator(prop)
        if locator is None:
            summary.skipped += 1
            continue
        to_geocode.append((prop, GeocodeRequest(address=_text(prop.get("address")) or "", borough_or_zip=locator)))

    if not to_geocode:
        return

    results = client.batch_normalize(
        [req for _, req in to_geocode],
        max_per_second=config.max_per_second,
        max_concurrent=config.max_concurrent,
    )

    updates = []
    for (prop, req), result in zip(to_geocode, results):
        if not result.success or result.latitude is None or result.longitude is None:
            summary.failed += 1
            if len(summary.failure_samples) < 5:
                summary.failure_samples.append(f"{req.address} ({req.borough_or_zip}): {result.error}")
            continue
        if result.confidence < config.min_confidence:
            summary.skipped += 1
            continue
        updates.append(enrichment_update(prop, result))

    if updates:
        failed = storage.update_properties(updates)
        summary.failed += len(failed)
        summary.enriched += len(updates) - len(failed)

