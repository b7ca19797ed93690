import unittest

import numpy as np
import pandas as pd

from src.condo_units import (
    BASE_BBL,
    BLOCK_MAJORITY,
    UNIT_BBL,
    build_block_address_index,
    format_unit_display_address,
    index_parcels_by_bbl,
    populate_condo_units,
    verify_condo_units,
)
from src.storage import InMemoryStorage


def _parcel(pid, bbl, address, lat=40.75, lon=-73.99, zip_code="10001"):
    return {"id": pid, "bbl": bbl, "address": address, "latitude": lat, "longitude": lon, "zip_code": zip_code}


class TestFormatUnitDisplayAddress(unittest.TestCase):
    def test_formats(self):
        self.assertEqual(format_unit_display_address("100 MAIN ST", "5a"), "100 MAIN ST, Unit 5A")
        self.assertEqual(format_unit_display_address("100 MAIN ST", " apt 3 "), "100 MAIN ST, APT 3")
        self.assertEqual(format_unit_display_address("100 MAIN ST", "UNIT PH"), "100 MAIN ST, UNIT PH")
        self.assertEqual(format_unit_display_address("100 MAIN ST", "#4"), "100 MAIN ST, #4")

    def test_missing_parts(self):
        self.assertEqual(format_unit_display_address("100 MAIN ST", None), "100 MAIN ST")
        self.assertEqual(format_unit_display_address("100 MAIN ST", np.nan), "100 MAIN ST")
        self.assertIsNone(format_unit_display_address(None, "5A"))


class TestBlockMajority(unittest.TestCase):
    def test_majority_among_unit_lots(self):
        parcels = pd.DataFrame(
            [
                _parcel("p1", "1012347501", "100 Main Street", lat=40.1),
                _parcel("p2", "1012347502", "102 MAIN ST", lat=40.2),
                _parcel("p3", "1012347503", "100 MAIN ST", lat=40.3),
                _parcel("p4", "1012340001", "1 OTHER AVE"),
                _parcel("p5", "1012340002", "1 OTHER AVE"),
                _parcel("p6", "1012347504", "999 NO COORDS ST", lat=None),
            ]
        )
        index = build_block_address_index(index_parcels_by_bbl(parcels))
        self.assertEqual(index["101234"].address, "100 MAIN STREET")
        self.assertEqual(index["101234"].latitude, 40.1)

    def test_falls_back_to_any_parcel_on_block(self):
        parcels = pd.DataFrame(
            [
                _parcel("p1", "3000770010", "5 PARK PLACE"),
                _parcel("p2", "3000770011", "7 PARK PL"),
                _parcel("p3", "3000770012", "7 PARK PL"),
            ]
        )
        index = build_block_address_index(index_parcels_by_bbl(parcels))
        self.assertEqual(index["300077"].address, "7 PARK PL")

    def test_ties_go_to_first_in_bbl_order(self):
        parcels = pd.DataFrame(
            [
                _parcel("p2", "1000107502", "20 B ST"),
                _parcel("p1", "1000107501", "10 A ST"),
            ]
        )
        index = build_block_address_index(index_parcels_by_bbl(parcels))
        self.assertEqual(index["100010"].address, "10 A ST")

    def test_winner_keeps_source_address_text(self):
        parcels = pd.DataFrame([_parcel("p1", "1012347501", " 100 West 57th Street ")])
        index = build_block_address_index(index_parcels_by_bbl(parcels))
        self.assertEqual(index["101234"].address, "100 WEST 57TH STREET")

        registry = pd.DataFrame([{"unit_bbl": "1012347601", "base_bbl": "1012340099", "unit_designation": "2B"}])
        storage = InMemoryStorage(properties=parcels, condo_registry=registry)
        populate_condo_units(storage)
        unit = storage.condo_units.iloc[0]
        self.assertEqual(unit["address_source"], BLOCK_MAJORITY)
        self.assertEqual(unit["building_display_address"], "100 WEST 57TH STREET")
        self.assertEqual(unit["unit_display_address"], "100 WEST 57TH STREET, Unit 2B")


class TestPopulateCondoUnits(unittest.TestCase):
    def setUp(self):
        properties = pd.DataFrame(
            [
                _parcel("prop-base", "1012340001", "100 MAIN STREET"),
                _parcel("prop-unit", "1012347501", "100 Main St"),
                _parcel("prop-u3", "1012347503", "100 MAIN ST"),
                _parcel("prop-u4", "1012347504", "102 MAIN ST"),
            ]
        )
        registry = pd.DataFrame(
            [
                {"unit_bbl": "1012347501", "base_bbl": "1012340001", "unit_designation": "5A", "condo_number": "12"},
                {"unit_bbl": "1012347502", "base_bbl": "1012340001", "unit_designation": "APT 6B", "condo_number": "12"},
                {"unit_bbl": "1012347601", "base_bbl": "1012340099", "unit_designation": "7c", "condo_number": "13"},
                {"unit_bbl": "1012347501", "base_bbl": "1012340001", "unit_designation": "5A", "condo_number": "12"},
                {"unit_bbl": "4001117501", "base_bbl": "4001110001", "unit_designation": None, "condo_number": "99"},
                {"unit_bbl": None, "base_bbl": "1012340001", "unit_designation": "1", "condo_number": "12"},
            ]
        )
        self.storage = InMemoryStorage(properties=properties, condo_registry=registry)

    def test_resolution_order_and_report(self):
        report = populate_condo_units(self.storage)

        units = self.storage.condo_units.set_index("unit_bbl")
        self.assertEqual(len(units), 4)
        self.assertTrue(units.index.is_unique)

        self.assertEqual(units.loc["1012347501", "address_source"], UNIT_BBL)
        self.assertEqual(units.loc["1012347501", "unit_display_address"], "100 Main St, Unit 5A")
        self.assertEqual(units.loc["1012347501", "building_property_id"], "prop-unit")

        self.assertEqual(units.loc["1012347502", "address_source"], BASE_BBL)
        self.assertEqual(units.loc["1012347502", "unit_display_address"], "100 MAIN STREET, APT 6B")

        self.assertEqual(units.loc["1012347601", "address_source"], BLOCK_MAJORITY)
        self.assertEqual(units.loc["1012347601", "unit_display_address"], "100 MAIN ST, Unit 7C")
        self.assertIsNone(units.loc["1012347601", "building_property_id"])

        self.assertIsNone(units.loc["4001117501", "address_source"])
        self.assertEqual(units.loc["4001117501", "borough"], "Queens")

        self.assertEqual(report.inserted, 4)
        self.assertEqual(report.skipped_incomplete, 1)
        self.assertEqual(report.by_source, {UNIT_BBL: 1, BASE_BBL: 1, BLOCK_MAJORITY: 1, "unresolved": 1})
        self.assertEqual(report.acceptance.duplicates, 1)
        self.assertEqual(report.acceptance.with_address, 3)
        self.assertEqual(report.acceptance.address_pct, 75.0)
        self.assertFalse(report.acceptance.address_pass)
        self.assertFalse(report.acceptance.no_duplicates)
        self.assertFalse(report.passed)

    def test_full_refresh_is_repeatable(self):
        populate_condo_units(self.storage)
        first = self.storage.condo_units.copy()
        populate_condo_units(self.storage)
        pd.testing.assert_frame_equal(self.storage.condo_units, first)

    def test_direct_hit_borrows_block_coordinates(self):
        self.storage.properties.loc[self.storage.properties["id"] == "prop-base", ["latitude", "longitude"]] = np.nan
        populate_condo_units(self.storage)
        unit = self.storage.condo_units.set_index("unit_bbl").loc["1012347502"]
        self.assertEqual(unit["address_source"], BASE_BBL)
        self.assertEqual(unit["latitude"], 40.75)

    def test_verify_persisted_table(self):
        populate_condo_units(self.storage)
        acceptance = verify_condo_units(self.storage.load_condo_units())
        self.assertEqual(acceptance.total, 4)
        self.assertEqual(acceptance.duplicates, 0)
        self.assertTrue(acceptance.no_duplicates)
        self.assertEqual(acceptance.with_coords, 3)
        self.assertFalse(acceptance.passed)

    def test_all_resolved_passes(self):
        registry = self.storage.condo_registry.iloc[[0, 1, 2]]
        storage = InMemoryStorage(properties=self.storage.properties, condo_registry=registry)
        report = populate_condo_units(storage)
        self.assertTrue(report.passed)
        self.assertEqual(report.acceptance.address_pct, 100.0)


if __name__ == "__main__":
    unittest.main()
