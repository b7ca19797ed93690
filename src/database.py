"""
Parcel Graph NYC Database Models

SQLAlchemy models for the PostgreSQL database.
The pipeline owns the resolution columns of `sales`, the whole of `buildings`,
`condo_units` and `comps`, and the score columns of `properties`.

Usage:
    from src.database import build_engine, create_tables

    engine = build_engine()
    create_tables(engine)
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    BigInteger,
    Float,
    String,
    DateTime,
    Date,
    Index,
    text,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from config.settings import DATABASE_URL

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Properties Table
# =============================================================================

class Property(Base):
    """
    Canonical real-world parcel.

    Created by ingestion; enriched by geocoding; scored by this pipeline.
    Never deleted here.
    """
    __tablename__ = "properties"

    id = Column(String(36), primary_key=True, default=_new_id)

    # Borough-Block-Lot (10-digit, normalized); not every property has one
    bbl = Column(String(10), index=True)
    bin_number = Column(String(10))

    # Location
    address = Column(String(255), nullable=False)
    borough = Column(String(20))
    zip_code = Column(String(10), index=True)
    latitude = Column(Float)
    longitude = Column(Float)

    # Building Characteristics
    beds = Column(Integer)
    sqft = Column(Integer)
    year_built = Column(Integer)

    # Valuation inputs
    last_sale_price = Column(BigInteger)
    estimated_value = Column(BigInteger)
    price_per_sqft = Column(Float)

    # Derived (recomputed by src.scoring)
    opportunity_score = Column(Integer)
    confidence_level = Column(String(10))

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Property(bbl={self.bbl}, address={self.address!r})>"


# =============================================================================
# Condo Registry Table
# =============================================================================

class CondoRegistry(Base):
    """
    DOF Digital Tax Map condominium unit registry.

    Read-only input for the identity graph and the condo unit populator.
    """
    __tablename__ = "condo_registry"

    id = Column(Integer, primary_key=True, autoincrement=True)

    unit_bbl = Column(String(10), index=True)
    base_bbl = Column(String(10), index=True)
    condo_number = Column(String(20))
    unit_designation = Column(String(50))

    borough = Column(String(20))
    block = Column(String(10))
    lot = Column(String(10))

    def __repr__(self):
        return f"<CondoRegistry(unit_bbl={self.unit_bbl}, base_bbl={self.base_bbl})>"


# =============================================================================
# Condo Units Table
# =============================================================================

class CondoUnit(Base):
    """
    One row per condominium unit, rebuilt in full by every populate run.
    """
    __tablename__ = "condo_units"

    id = Column(Integer, primary_key=True, autoincrement=True)

    unit_bbl = Column(String(10), nullable=False, unique=True)
    base_bbl = Column(String(10), nullable=False, index=True)
    condo_number = Column(String(20))
    unit_designation = Column(String(50))

    # Link to the building's property row (null when resolved by block vote)
    building_property_id = Column(String(36), index=True)
    building_display_address = Column(String(255))
    unit_display_address = Column(String(255))
    address_source = Column(String(20))  # unit_bbl | base_bbl | block_majority

    bin_number = Column(String(10))
    latitude = Column(Float)
    longitude = Column(Float)
    borough = Column(String(20))
    zip_code = Column(String(10))

    def __repr__(self):
        return f"<CondoUnit(unit_bbl={self.unit_bbl}, address={self.unit_display_address!r})>"


# =============================================================================
# Buildings Table
# =============================================================================

class Building(Base):
    """
    One row per condo building (base BBL), rolled up from condo_units.

    Rebuilt in full after every condo unit populate run.
    """
    __tablename__ = "buildings"

    base_bbl = Column(String(10), primary_key=True)

    display_address = Column(String(255))
    bin_number = Column(String(10))
    latitude = Column(Float)
    longitude = Column(Float)
    borough = Column(String(20))
    zip_code = Column(String(10))

    unit_count = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Building(base_bbl={self.base_bbl}, units={self.unit_count})>"


# =============================================================================
# Sales Table
# =============================================================================

class Sale(Base):
    """
    Raw sale transaction.

    Raw fields are immutable as received; the matcher writes only the
    resolution columns.
    """
    __tablename__ = "sales"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Raw source fields
    raw_borough = Column(String(20))
    raw_block = Column(String(10))
    raw_lot = Column(String(10))
    raw_address = Column(String(255))
    raw_apartment_number = Column(String(50))
    sale_price = Column(BigInteger, nullable=False)
    sale_date = Column(Date, nullable=False, index=True)

    # Resolution fields
    unit_bbl = Column(String(10), index=True)
    base_bbl = Column(String(10), index=True)
    property_id = Column(String(36), index=True)
    match_method = Column(String(20), index=True)  # unit_identifier | block_lot | unresolved
    unresolved_reason = Column(String(50))

    def __repr__(self):
        return f"<Sale(id={self.id}, sale_price=${self.sale_price:,}, method={self.match_method})>"


# =============================================================================
# Comps Table
# =============================================================================

class Comp(Base):
    """Subject property -> comparable property, with attribute adjustments."""
    __tablename__ = "comps"

    id = Column(Integer, primary_key=True, autoincrement=True)

    subject_property_id = Column(String(36), nullable=False, index=True)
    comp_property_id = Column(String(36), nullable=False)

    similarity_score = Column(Float)
    sqft_adjustment = Column(Float)
    age_adjustment = Column(Float)
    beds_adjustment = Column(Float)
    adjusted_price = Column(BigInteger)

    computed_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_comps_subject_comp', 'subject_property_id', 'comp_property_id'),
    )

    def __repr__(self):
        return f"<Comp({self.subject_property_id} -> {self.comp_property_id}, adjusted=${self.adjusted_price:,})>"


# =============================================================================
# Helper Functions
# =============================================================================

def build_engine(database_url: str = DATABASE_URL):
    """Create an engine for the given URL."""
    return create_engine(database_url, echo=False, future=True)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine):
    """Create all tables in the database."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def drop_tables(engine):
    """Drop all tables (use with caution!)."""
    Base.metadata.drop_all(bind=engine)
    logger.warning("All tables dropped")


def test_connection(engine) -> bool:
    """Test database connection."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection successful")
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False


# =============================================================================
# CLI
# =============================================================================

if __name__ == "__main__":
    import argparse

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    parser = argparse.ArgumentParser(description="Database management")
    parser.add_argument("command", choices=["create", "drop", "test"])
    parser.add_argument("--database-url", default=DATABASE_URL)

    args = parser.parse_args()
    engine = build_engine(args.database_url)

    if args.command == "create":
        create_tables(engine)
    elif args.command == "drop":
        confirm = input("Are you sure you want to drop all tables? (yes/no): ")
        if confirm.lower() == "yes":
            drop_tables(engine)
        else:
            print("Cancelled")
    elif args.command == "test":
        test_connection(engine)
