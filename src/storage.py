"""
Parcel Graph NYC - Storage backends

Pipeline stages never open their own database handles. They receive a
`PipelineStorage` and read/write whole tables as pandas DataFrames:

- SqlStorage: PostgreSQL (or any SQLAlchemy URL) via the models in src.database
- InMemoryStorage: DataFrames held in memory, loadable from / savable to a
  directory of CSVs (fixtures, dry runs)

Usage:
    from src.database import build_engine
    from src.storage import SqlStorage

    storage = SqlStorage(build_engine("postgresql://..."))
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError

from src.database import Building, Comp, CondoRegistry, CondoUnit, Property, Sale, make_session_factory

logger = logging.getLogger(__name__)

# =============================================================================
# Table layouts
# =============================================================================

PROPERTY_COLUMNS = [c.key for c in Property.__table__.columns]
REGISTRY_COLUMNS = [c.key for c in CondoRegistry.__table__.columns]
CONDO_UNIT_COLUMNS = [c.key for c in CondoUnit.__table__.columns]
BUILDING_COLUMNS = [c.key for c in Building.__table__.columns]
SALE_COLUMNS = [c.key for c in Sale.__table__.columns]
COMP_COLUMNS = [c.key for c in Comp.__table__.columns]

SALE_RESOLUTION_COLUMNS = ["unit_bbl", "base_bbl", "property_id", "match_method", "unresolved_reason"]

CSV_TABLES = {
    "properties": PROPERTY_COLUMNS,
    "condo_registry": REGISTRY_COLUMNS,
    "condo_units": CONDO_UNIT_COLUMNS,
    "buildings": BUILDING_COLUMNS,
    "sales": SALE_COLUMNS,
    "comps": COMP_COLUMNS,
}

# Identifier-like columns must survive a CSV round trip as text ("01234", not 1234)
TEXT_COLUMNS = [
    "id", "bbl", "bin_number", "zip_code", "unit_bbl", "base_bbl", "condo_number",
    "unit_designation", "borough", "block", "lot", "raw_borough", "raw_block", "raw_lot",
    "raw_apartment_number", "property_id", "building_property_id", "subject_property_id",
    "comp_property_id", "match_method", "unresolved_reason", "address_source", "confidence_level",
]


class StorageWriteError(RuntimeError):
    """Raised when a single row cannot be written."""


# =============================================================================
# Interface
# =============================================================================

class PipelineStorage(ABC):
    """Table-level read/write surface used by every pipeline stage."""

    @abstractmethod
    def load_properties(self) -> pd.DataFrame:
        """All property (parcel) rows."""

    @abstractmethod
    def load_condo_registry(self) -> pd.DataFrame:
        """All condo registry rows."""

    @abstractmethod
    def load_condo_units(self) -> pd.DataFrame:
        """Current contents of the condo_units table."""

    @abstractmethod
    def load_sales(self, only_unmatched: bool = True) -> pd.DataFrame:
        """Sales rows; by default only those without a match_method."""

    @abstractmethod
    def load_properties_missing_coordinates(self, limit: Optional[int] = None) -> pd.DataFrame:
        """Properties with an address and a BBL or ZIP but no coordinates."""

    @abstractmethod
    def update_sales(self, updates: List[Dict[str, Any]]) -> List[Any]:
        """Apply per-sale column updates (each dict carries `id`). Returns ids that failed."""

    @abstractmethod
    def update_properties(self, updates: List[Dict[str, Any]]) -> List[Any]:
        """Apply per-property column updates (each dict carries `id`). Returns ids that failed."""

    @abstractmethod
    def replace_condo_units(self, records: List[Dict[str, Any]]) -> int:
        """Delete every condo unit and insert `records`. Returns rows inserted."""

    @abstractmethod
    def load_buildings(self) -> pd.DataFrame:
        """Current contents of the buildings table."""

    @abstractmethod
    def replace_buildings(self, records: List[Dict[str, Any]]) -> int:
        """Delete every building and insert `records`. Returns rows inserted."""

    @abstractmethod
    def replace_comps(self, records: List[Dict[str, Any]]) -> int:
        """Delete every comp and insert `records`. Returns rows inserted."""


def _missing_coordinates_mask(df: pd.DataFrame) -> pd.Series:
    address = df["address"].fillna("").astype(str).str.strip()
    return (
        (df["latitude"].isna() | df["longitude"].isna())
        & (address != "")
        & (df["bbl"].notna() | df["zip_code"].notna())
    )


# =============================================================================
# In-memory backend
# =============================================================================

class InMemoryStorage(PipelineStorage):
    """DataFrame-backed storage for fixtures, tests and CSV dry runs."""

    def __init__(
        self,
        *,
        properties: Optional[pd.DataFrame] = None,
        condo_registry: Optional[pd.DataFrame] = None,
        condo_units: Optional[pd.DataFrame] = None,
        buildings: Optional[pd.DataFrame] = None,
        sales: Optional[pd.DataFrame] = None,
        comps: Optional[pd.DataFrame] = None,
    ):
        self.properties = self._conform(properties, PROPERTY_COLUMNS)
        self.condo_registry = self._conform(condo_registry, REGISTRY_COLUMNS)
        self.condo_units = self._conform(condo_units, CONDO_UNIT_COLUMNS)
        self.buildings = self._conform(buildings, BUILDING_COLUMNS)
        self.sales = self._conform(sales, SALE_COLUMNS)
        self.comps = self._conform(comps, COMP_COLUMNS)

    @staticmethod
    def _conform(df: Optional[pd.DataFrame], columns: List[str]) -> pd.DataFrame:
        frame = pd.DataFrame(columns=columns) if df is None else df.copy()
        for col in columns:
            if col not in frame.columns:
                frame[col] = None
        frame = frame.reset_index(drop=True)
        # Object dtype so later writes of text/None never fight a float column
        for col in frame.columns:
            if col in TEXT_COLUMNS or frame[col].isna().all():
                frame[col] = frame[col].astype(object)
        return frame

    # ---- CSV round trip --------------------------------------------------

    @classmethod
    def from_csv_dir(cls, directory: Path) -> "InMemoryStorage":
        """Load `<table>.csv` files from a directory; missing files become empty tables."""
        directory = Path(directory)
        frames = {}
        for table in CSV_TABLES:
            path = directory / f"{table}.csv"
            if path.exists():
                frame = pd.read_csv(path, dtype={c: str for c in TEXT_COLUMNS}, low_memory=False)
                logger.info(f"Loaded {len(frame):,} rows from {path}")
                frames[table] = frame
        if "properties" not in frames or "condo_registry" not in frames:
            raise FileNotFoundError(f"{directory} must contain properties.csv and condo_registry.csv")
        storage = cls(**frames)
        if not storage.sales.empty:
            storage.sales["id"] = pd.to_numeric(storage.sales["id"], errors="coerce").astype(object)
        return storage

    def to_csv_dir(self, directory: Path) -> None:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        for table in CSV_TABLES:
            getattr(self, table).to_csv(directory / f"{table}.csv", index=False)
        logger.info(f"Wrote {len(CSV_TABLES)} tables to {directory}")

    # ---- Reads -----------------------------------------------------------

    def load_properties(self) -> pd.DataFrame:
        return self.properties.copy()

    def load_condo_registry(self) -> pd.DataFrame:
        return self.condo_registry.copy()

    def load_condo_units(self) -> pd.DataFrame:
        return self.condo_units.copy()

    def load_buildings(self) -> pd.DataFrame:
        return self.buildings.copy()

    def load_sales(self, only_unmatched: bool = True) -> pd.DataFrame:
        if only_unmatched:
            return self.sales[self.sales["match_method"].isna()].copy()
        return self.sales.copy()

    def load_properties_missing_coordinates(self, limit: Optional[int] = None) -> pd.DataFrame:
        frame = self.properties[_missing_coordinates_mask(self.properties)]
        if limit is not None:
            frame = frame.head(limit)
        return frame.copy()

    # ---- Writes ----------------------------------------------------------

    @staticmethod
    def _apply_updates(frame: pd.DataFrame, updates: Iterable[Dict[str, Any]]) -> List[Any]:
        positions = {row_id: idx for idx, row_id in frame["id"].items()}
        failed = []
        for update in updates:
            row_id = update.get("id")
            idx = positions.get(row_id)
            if idx is None:
                failed.append(row_id)
                continue
            for key, value in update.items():
                if key == "id":
                    continue
                if key not in frame.columns:
                    raise StorageWriteError(f"Unknown column '{key}'")
                if frame[key].dtype != object and (value is None or isinstance(value, str)):
                    frame[key] = frame[key].astype(object)
                frame.at[idx, key] = value
        return failed

    def update_sales(self, updates: List[Dict[str, Any]]) -> List[Any]:
        return self._apply_updates(self.sales, updates)

    def update_properties(self, updates: List[Dict[str, Any]]) -> List[Any]:
        return self._apply_updates(self.properties, updates)

    def replace_condo_units(self, records: List[Dict[str, Any]]) -> int:
        frame = pd.DataFrame.from_records(records, columns=[c for c in CONDO_UNIT_COLUMNS if c != "id"])
        frame.insert(0, "id", range(1, len(frame) + 1))
        self.condo_units = self._conform(frame, CONDO_UNIT_COLUMNS)
        return len(frame)

    def replace_buildings(self, records: List[Dict[str, Any]]) -> int:
        frame = pd.DataFrame.from_records(records, columns=BUILDING_COLUMNS)
        self.buildings = self._conform(frame, BUILDING_COLUMNS)
        return len(frame)

    def replace_comps(self, records: List[Dict[str, Any]]) -> int:
        frame = pd.DataFrame.from_records(records, columns=[c for c in COMP_COLUMNS if c != "id"])
        frame.insert(0, "id", range(1, len(frame) + 1))
        self.comps = self._conform(frame, COMP_COLUMNS)
        return len(frame)


# =============================================================================
# SQL backend
# =============================================================================

class SqlStorage(PipelineStorage):
    """SQLAlchemy-backed storage over the tables in src.database."""

    def __init__(self, engine, *, batch_size: int = 1000):
        self.engine = engine
        self.session_factory = make_session_factory(engine)
        self.batch_size = batch_size

    def _read(self, stmt) -> pd.DataFrame:
        with self.engine.connect() as conn:
            return pd.read_sql(stmt, conn)

    def load_properties(self) -> pd.DataFrame:
        return self._read(select(Property.__table__))

    def load_condo_registry(self) -> pd.DataFrame:
        return self._read(select(CondoRegistry.__table__))

    def load_condo_units(self) -> pd.DataFrame:
        return self._read(select(CondoUnit.__table__))

    def load_buildings(self) -> pd.DataFrame:
        return self._read(select(Building.__table__).order_by(Building.base_bbl))

    def load_sales(self, only_unmatched: bool = True) -> pd.DataFrame:
        stmt = select(Sale.__table__)
        if only_unmatched:
            stmt = stmt.where(Sale.match_method.is_(None))
        return self._read(stmt.order_by(Sale.id))

    def load_properties_missing_coordinates(self, limit: Optional[int] = None) -> pd.DataFrame:
        stmt = select(Property.__table__).where(
            and_(
                or_(Property.latitude.is_(None), Property.longitude.is_(None)),
                Property.address.isnot(None),
                Property.address != "",
                or_(Property.bbl.isnot(None), Property.zip_code.isnot(None)),
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._read(stmt)

    def _bulk_update(self, model, updates: List[Dict[str, Any]]) -> List[Any]:
        """
        Update rows by primary key in batches. A failed batch is retried row
        by row so one bad row only costs itself.
        """
        failed: List[Any] = []
        session = self.session_factory()
        try:
            for i in range(0, len(updates), self.batch_size):
                batch = updates[i:i + self.batch_size]
                try:
                    session.bulk_update_mappings(model, batch)
                    session.commit()
                    continue
                except SQLAlchemyError as e:
                    session.rollback()
                    logger.warning(f"Batch update on {model.__tablename__} failed, retrying per row: {e}")

                for row in batch:
                    try:
                        session.bulk_update_mappings(model, [row])
                        session.commit()
                    except SQLAlchemyError as e:
                        session.rollback()
                        logger.debug(f"Update failed for {model.__tablename__} id={row.get('id')}: {e}")
                        failed.append(row.get("id"))
        finally:
            session.close()
        return failed

    def update_sales(self, updates: List[Dict[str, Any]]) -> List[Any]:
        return self._bulk_update(Sale, updates)

    def update_properties(self, updates: List[Dict[str, Any]]) -> List[Any]:
        return self._bulk_update(Property, updates)

    def _replace_table(self, model, records: List[Dict[str, Any]]) -> int:
        session = self.session_factory()
        try:
            session.query(model).delete()
            for i in range(0, len(records), self.batch_size):
                session.bulk_insert_mappings(model, records[i:i + self.batch_size])
            session.commit()
            return len(records)
        except Exception as e:
            session.rollback()
            logger.error(f"Error replacing '{model.__tablename__}': {e}")
            raise
        finally:
            session.close()

    def replace_condo_units(self, records: List[Dict[str, Any]]) -> int:
        return self._replace_table(CondoUnit, records)

    def replace_buildings(self, records: List[Dict[str, Any]]) -> int:
        return self._replace_table(Building, records)

    def replace_comps(self, records: List[Dict[str, Any]]) -> int:
        return self._replace_table(Comp, records)
