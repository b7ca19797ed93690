"""Data contracts for pipeline input tables (parcels, condo registry, sales)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import pandas as pd

from src.bbl import borough_code, normalize_bbl


REQUIRED_COLUMNS: Dict[str, List[str]] = {
    "properties": ["id", "bbl", "address", "zip_code", "latitude", "longitude"],
    "condo_registry": ["unit_bbl", "base_bbl"],
    "sales": ["id", "raw_borough", "raw_block", "raw_lot", "raw_address", "sale_price", "sale_date"],
}

BBL_COLUMNS: Dict[str, List[str]] = {
    "properties": ["bbl"],
    "condo_registry": ["unit_bbl", "base_bbl"],
    "sales": [],
}

# Violations of these checks make the table unusable for the run
FATAL_CHECKS = ("required_columns",)

NYC_LAT_RANGE = (40.40, 41.10)
NYC_LON_RANGE = (-74.35, -73.45)


@dataclass
class ContractViolation:
    """Represents a failed data-contract check."""

    check: str
    message: str
    failed_rows: int = 0


@dataclass
class DataContractResult:
    """Aggregated result for all checks."""

    table: str
    passed: bool
    row_count: int
    checked_at: str
    violations: List[ContractViolation]

    @property
    def fatal(self) -> bool:
        return any(v.check in FATAL_CHECKS for v in self.violations)


class DataContractError(ValueError):
    """Raised when an input table cannot be used for the run."""


def validate_data_contracts(
    df: pd.DataFrame,
    *,
    table: str,
    required_columns: Optional[Iterable[str]] = None,
    max_freshness_days: Optional[int] = None,
    raise_on_error: bool = False,
) -> DataContractResult:
    """
    Execute input data-contract checks.

    Missing required columns always raise. Domain problems are reported as
    violations and only raise when `raise_on_error` is set.

    Checks:
    - required schema columns
    - BBL columns normalizable to 10 digits
    - borough tokens recognized (sales)
    - sale_price positive, sale_date freshness (sales)
    - coordinates inside NYC bounds where present (properties)
    """
    req_cols = list(required_columns if required_columns is not None else REQUIRED_COLUMNS.get(table, []))

    violations: List[ContractViolation] = []
    violations.extend(_check_required_columns(df, req_cols))
    for col in BBL_COLUMNS.get(table, []):
        violations.extend(_check_bbl_domain(df, col))
    if table == "sales":
        violations.extend(_check_borough_domain(df, "raw_borough"))
        violations.extend(_check_sale_price(df))
        if max_freshness_days is not None:
            violations.extend(_check_freshness(df, max_freshness_days=max_freshness_days))
    if table == "properties":
        violations.extend(_check_coordinates(df))

    result = DataContractResult(
        table=table,
        passed=len(violations) == 0,
        row_count=len(df),
        checked_at=datetime.utcnow().isoformat(),
        violations=violations,
    )

    if result.fatal or (raise_on_error and not result.passed):
        raise DataContractError(format_contract_violations(result.violations, table=table))

    return result


def format_contract_violations(violations: List[ContractViolation], table: str = "") -> str:
    """Format violations into a single error message."""
    header = f"Data contract validation failed for '{table}':" if table else "Data contract validation failed:"
    lines = [header]
    for v in violations:
        lines.append(f"- [{v.check}] {v.message} (failed_rows={v.failed_rows})")
    return "\n".join(lines)


def _check_required_columns(df: pd.DataFrame, required_columns: List[str]) -> List[ContractViolation]:
    missing = [col for col in required_columns if col not in df.columns]
    if not missing:
        return []
    return [
        ContractViolation(
            check="required_columns",
            message=f"Missing required columns: {', '.join(missing)}",
            failed_rows=len(df),
        )
    ]


def _check_bbl_domain(df: pd.DataFrame, column: str) -> List[ContractViolation]:
    if column not in df.columns:
        return []
    present = df[column].dropna()
    present = present[present.astype(str).str.strip() != ""]
    invalid = present.map(normalize_bbl).isna()
    if not invalid.any():
        return []
    return [
        ContractViolation(
            check="domain_bbl",
            message=f"{column} must normalize to a 10-digit BBL",
            failed_rows=int(invalid.sum()),
        )
    ]


def _check_borough_domain(df: pd.DataFrame, column: str) -> List[ContractViolation]:
    if column not in df.columns:
        return []
    present = df[column].dropna()
    bad = present.map(borough_code).isna()
    if not bad.any():
        return []
    return [
        ContractViolation(
            check="domain_borough",
            message=f"{column} must be one of 1..5 or a known borough name",
            failed_rows=int(bad.sum()),
        )
    ]


def _check_sale_price(df: pd.DataFrame) -> List[ContractViolation]:
    if "sale_price" not in df.columns:
        return []
    sale_price = pd.to_numeric(df["sale_price"], errors="coerce")
    bad = sale_price.isna() | (sale_price <= 0)
    if not bad.any():
        return []
    return [
        ContractViolation(
            check="domain_sale_price",
            message="sale_price must be a positive number",
            failed_rows=int(bad.sum()),
        )
    ]


def _check_freshness(df: pd.DataFrame, max_freshness_days: int) -> List[ContractViolation]:
    if "sale_date" not in df.columns:
        return []

    sale_dates = pd.to_datetime(df["sale_date"], errors="coerce")
    if sale_dates.notna().sum() == 0:
        return [
            ContractViolation(
                check="freshness",
                message="No valid sale_date values found",
                failed_rows=len(df),
            )
        ]

    latest_date = pd.Timestamp(sale_dates.max()).normalize()
    age_days = (pd.Timestamp.now().normalize() - latest_date).days
    if age_days <= max_freshness_days:
        return []

    return [
        ContractViolation(
            check="freshness",
            message=f"Latest sale_date {latest_date.date()} is stale ({age_days} days old, max {max_freshness_days})",
            failed_rows=len(df),
        )
    ]


def _check_coordinates(df: pd.DataFrame) -> List[ContractViolation]:
    if not {"latitude", "longitude"}.issubset(df.columns):
        return []
    lat = pd.to_numeric(df["latitude"], errors="coerce")
    lon = pd.to_numeric(df["longitude"], errors="coerce")
    present = lat.notna() & lon.notna()
    out_of_bounds = present & (
        (lat < NYC_LAT_RANGE[0])
        | (lat > NYC_LAT_RANGE[1])
        | (lon < NYC_LON_RANGE[0])
        | (lon > NYC_LON_RANGE[1])
    )
    if not out_of_bounds.any():
        return []
    return [
        ContractViolation(
            check="domain_coordinates",
            message="coordinates outside expected NYC bounds",
            failed_rows=int(out_of_bounds.sum()),
        )
    ]
