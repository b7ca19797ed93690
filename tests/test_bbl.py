import unittest

import numpy as np

from src.bbl import (
    block_prefix,
    borough_code,
    create_bbl,
    is_condo_unit_lot,
    lot_number,
    normalize_bbl,
    split_bbl,
)


class TestCreateBbl(unittest.TestCase):
    def test_pads_components(self):
        self.assertEqual(create_bbl("1", "1234", "1"), "1012340001")
        self.assertEqual(create_bbl("1", "01234", "7501"), "1012347501")

    def test_accepts_borough_abbreviations_and_names(self):
        self.assertEqual(create_bbl("BK", "77", "12"), "3000770012")
        self.assertEqual(create_bbl("staten island", "5", "100"), "5000050100")
        self.assertEqual(create_bbl(2, 10.0, 5), "2000100005")

    def test_strips_stray_punctuation(self):
        self.assertEqual(create_bbl("4", " 1,234 ", "0012."), "4012340012")

    def test_unknown_borough_returns_none(self):
        self.assertIsNone(create_bbl("9", "1234", "1"))
        self.assertIsNone(create_bbl("XX", "1234", "1"))
        self.assertIsNone(create_bbl(None, "1234", "1"))

    def test_oversize_component_returns_none(self):
        self.assertIsNone(create_bbl("1", "123456", "1"))
        self.assertIsNone(create_bbl("1", "1", "12345"))

    def test_borough_code(self):
        self.assertEqual(borough_code("mn"), "1")
        self.assertEqual(borough_code("KINGS"), "3")
        self.assertEqual(borough_code(5.0), "5")
        self.assertIsNone(borough_code(""))


class TestNormalizeBbl(unittest.TestCase):
    def test_decimal_and_grouped_variants_compare_equal(self):
        self.assertEqual(normalize_bbl("1002345.001"), "1002345001")
        self.assertEqual(normalize_bbl("1,002,345,0001"), "1002345001")

    def test_float_artifacts(self):
        self.assertEqual(normalize_bbl(1012340001.0), "1012340001")
        self.assertEqual(normalize_bbl("1012340001.00000000"), "1012340001")

    def test_leading_zeros_and_padding(self):
        self.assertEqual(normalize_bbl("0001012340001"), "1012340001")
        self.assertEqual(normalize_bbl(1012340001), "1012340001")

    def test_borough_block_lot_groups(self):
        self.assertEqual(normalize_bbl("1-01234-7501"), "1012347501")
        self.assertEqual(normalize_bbl("1/1234/1"), "1012340001")

    def test_idempotent(self):
        for raw in ["1002345.001", "1,002,345,0001", "1-01234-7501", 3000770012.0, "0001012340001"]:
            once = normalize_bbl(raw)
            self.assertIsNotNone(once)
            self.assertEqual(normalize_bbl(once), once)
            self.assertEqual(len(once), 10)

    def test_unplaceable_input_returns_none(self):
        self.assertIsNone(normalize_bbl(None))
        self.assertIsNone(normalize_bbl(np.nan))
        self.assertIsNone(normalize_bbl(""))
        self.assertIsNone(normalize_bbl("abc"))
        self.assertIsNone(normalize_bbl("12345678901"))
        self.assertIsNone(normalize_bbl("0"))


class TestBblParts(unittest.TestCase):
    def test_split_and_prefix(self):
        self.assertEqual(split_bbl("1012347501"), ("1", "01234", "7501"))
        self.assertEqual(block_prefix("1012347501"), "101234")
        self.assertEqual(lot_number("1012347501"), 7501)
        self.assertIsNone(split_bbl("12345"))
        self.assertIsNone(block_prefix(None))

    def test_condo_unit_lot(self):
        self.assertTrue(is_condo_unit_lot(7501))
        self.assertTrue(is_condo_unit_lot("7600"))
        self.assertFalse(is_condo_unit_lot(7500))
        self.assertFalse(is_condo_unit_lot(None))


if __name__ == "__main__":
    unittest.main()
