import unittest

from src.monitoring.match_health import evaluate_match_health, render_health_markdown


def _match(total, unit, block_lot, buckets, write_failures=0):
    return {
        "stats": {
            "total": total,
            "unit_match": unit,
            "block_lot_match": block_lot,
            "unresolved": sum(count for _, count in buckets),
            "conflicts": 0,
            "write_failures": write_failures,
        },
        "unresolved_buckets": [{"reason": r, "count": c, "samples": []} for r, c in buckets],
        "conflict_samples": [],
    }


class TestMatchHealth(unittest.TestCase):
    def test_ok(self):
        report = evaluate_match_health(_match(100, 70, 25, [("no_unit_or_property_match", 5)]))
        self.assertEqual(report["status"], "ok")
        self.assertEqual(report["metrics"]["unresolved_rate"], 0.05)
        self.assertEqual(report["findings"], [])

    def test_warn_and_alert_on_unresolved_rate(self):
        warn = evaluate_match_health(
            _match(100, 60, 25, [("no_unit_or_property_match", 8), ("missing_bbl_components", 7)])
        )
        self.assertEqual(warn["status"], "warn")

        alert = evaluate_match_health(_match(100, 40, 20, [("no_unit_or_property_match", 40)]))
        self.assertEqual(alert["status"], "alert")
        self.assertEqual(alert["metrics"]["reason_rates"]["no_unit_or_property_match"], 0.4)

    def test_condo_acceptance_and_write_failures_warn(self):
        clean = _match(100, 90, 10, [])
        self.assertEqual(evaluate_match_health(clean, condo_acceptance={"passed": False})["status"], "warn")
        self.assertEqual(evaluate_match_health(_match(100, 90, 10, [], write_failures=2))["status"], "warn")

    def test_empty_run(self):
        report = evaluate_match_health(_match(0, 0, 0, []))
        self.assertEqual(report["status"], "ok")
        self.assertIn("Status: `ok`", render_health_markdown(report))


if __name__ == "__main__":
    unittest.main()
