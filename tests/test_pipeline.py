import json
import tempfile
import unittest
from pathlib import Path

import pandas as pd

from src.geocoding import GeocodeResult
from src.pipeline import main, run_pipeline
from src.storage import InMemoryStorage
from src.validation.data_contracts import DataContractError


class FakeGeocoder:
    available = True

    def batch_normalize(self, requests_, max_per_second=None, max_concurrent=None):
        return [GeocodeResult(success=True, latitude=40.76, longitude=-73.98, confidence=1.0) for _ in requests_]


def _fixture_tables():
    properties = pd.DataFrame(
        [
            {"id": "p-base", "bbl": "1012340001", "address": "100 MAIN ST", "zip_code": "10001",
             "latitude": 40.75, "longitude": -73.99, "sqft": 1200, "year_built": 1960, "beds": 2,
             "last_sale_price": 800000, "estimated_value": 800000},
            {"id": "p-unit", "bbl": "1012347501", "address": "100 MAIN ST", "zip_code": "10001",
             "latitude": 40.75, "longitude": -73.99, "sqft": 900, "year_built": 1960, "beds": 1,
             "last_sale_price": 700000, "estimated_value": 900000},
            {"id": "p-nocoords", "bbl": "1012350001", "address": "200 MAIN ST", "zip_code": "10001",
             "sqft": 2000, "year_built": 2005, "beds": 3, "last_sale_price": None, "estimated_value": 1500000},
        ]
    )
    registry = pd.DataFrame(
        [
            {"unit_bbl": "1012347501", "base_bbl": "1012340001", "unit_designation": "5A"},
            {"unit_bbl": "1012347502", "base_bbl": "1012340001", "unit_designation": "6B"},
        ]
    )
    sales = pd.DataFrame(
        [
            {"id": 1, "raw_borough": "1", "raw_block": "01234", "raw_lot": "7501", "raw_address": "100 MAIN ST",
             "sale_price": 700000, "sale_date": "2024-03-01"},
            {"id": 2, "raw_borough": "1", "raw_block": "01234", "raw_lot": "0001", "raw_address": "100 MAIN ST",
             "sale_price": 9000000, "sale_date": "2024-04-01"},
            {"id": 3, "raw_borough": "MN", "raw_block": "99999", "raw_lot": "1", "raw_address": "1 NOWHERE",
             "sale_price": 100000, "sale_date": "2024-05-01"},
        ]
    )
    return properties, registry, sales


class TestRunPipeline(unittest.TestCase):
    def setUp(self):
        properties, registry, sales = _fixture_tables()
        self.storage = InMemoryStorage(properties=properties, condo_registry=registry, sales=sales)

    def test_all_stages(self):
        with tempfile.TemporaryDirectory() as tmp:
            summary = run_pipeline(self.storage, geocoder=FakeGeocoder(), write_report=True, reports_dir=Path(tmp))
            reports = sorted(p.suffix for p in Path(tmp).iterdir())
            payload = json.loads(next(Path(tmp).glob("*.json")).read_text(encoding="utf-8"))

        self.assertEqual(reports, [".json", ".md"])
        self.assertEqual(payload["match"]["stats"]["total"], 3)

        self.assertEqual(summary.match.stats.unit_match, 1)
        self.assertEqual(summary.match.stats.block_lot_match, 1)
        self.assertEqual(summary.match.stats.unresolved, 1)
        self.assertEqual(summary.graph["unit_bbls"], 2)
        self.assertEqual(summary.condo_units.acceptance.total, 2)
        self.assertEqual(summary.buildings.buildings, 1)
        self.assertEqual(summary.buildings.units, 2)
        self.assertEqual(summary.enrichment.enriched, 1)
        self.assertEqual(summary.comps.comps_created, 6)
        self.assertEqual(summary.scores.scored, 3)
        self.assertEqual(summary.health["status"], "alert")
        self.assertIsNotNone(summary.finished_at)
        self.assertTrue(all(c.passed for c in summary.contracts))

        props = self.storage.properties.set_index("id")
        self.assertEqual(props.loc["p-nocoords", "latitude"], 40.76)
        self.assertEqual(props.loc["p-nocoords", "opportunity_score"], 50)
        self.assertEqual(len(self.storage.condo_units), 2)
        self.assertEqual(self.storage.buildings.iloc[0]["base_bbl"], "1012340001")

    def test_skip_flags(self):
        summary = run_pipeline(
            self.storage, skip_condo_units=True, skip_geocode=True, skip_comps=True, skip_scores=True
        )
        self.assertIsNone(summary.condo_units)
        self.assertIsNone(summary.buildings)
        self.assertIsNone(summary.enrichment)
        self.assertIsNone(summary.comps)
        self.assertIsNone(summary.scores)
        self.assertEqual(summary.match.stats.total, 3)
        self.assertTrue(self.storage.condo_units.empty)

    def test_rerun_is_idempotent(self):
        run_pipeline(self.storage, skip_geocode=True)
        first = self.storage.sales.copy()
        summary = run_pipeline(self.storage, skip_geocode=True, rematch_all=True)
        self.assertEqual(summary.match.stats.total, 3)
        pd.testing.assert_frame_equal(self.storage.sales, first)

    def test_unusable_registry_is_fatal(self):
        class BrokenStorage(InMemoryStorage):
            def load_condo_registry(self):
                return pd.DataFrame({"unit_bbl": ["1012347501"]})

        storage = BrokenStorage(properties=self.storage.properties)
        with self.assertRaises(DataContractError):
            run_pipeline(storage, skip_geocode=True)


class TestCli(unittest.TestCase):
    def test_csv_mode(self):
        properties, registry, sales = _fixture_tables()
        with tempfile.TemporaryDirectory() as tmp:
            input_dir = Path(tmp) / "in"
            output_dir = Path(tmp) / "out"
            InMemoryStorage(properties=properties, condo_registry=registry, sales=sales).to_csv_dir(input_dir)

            summary = main([
                "--input-dir", str(input_dir),
                "--output-dir", str(output_dir),
                "--skip-geocode",
                "--reports-dir", str(Path(tmp) / "reports"),
            ])

            out_sales = pd.read_csv(output_dir / "sales.csv", dtype=str)
            self.assertTrue((output_dir / "comps.csv").exists())
            self.assertTrue((output_dir / "buildings.csv").exists())

        self.assertEqual(summary.match.stats.total, 3)
        self.assertEqual(list(out_sales["match_method"]), ["unit_identifier", "block_lot", "unresolved"])


if __name__ == "__main__":
    unittest.main()
