import threading
import unittest
from unittest import mock

import requests

from src.address import simple_address_normalize
from src.geocoding import (
    GeoclientClient,
    GeocodeRequest,
    RateLimiter,
    parse_borough_code,
)


def _response(payload=None, status=200, text=""):
    response = mock.Mock()
    response.ok = 200 <= status < 300
    response.status_code = status
    response.text = text
    response.json.return_value = payload
    return response


def _address_payload(return_code="00", **overrides):
    address = {
        "geosupportReturnCode": return_code,
        "houseNumber": "100",
        "boePreferredStreetName": "Main Street",
        "bbl": "1012340001",
        "buildingIdentificationNumber": "1000001",
        "latitude": "40.7501",
        "longitude": "-73.9901",
        "zipCode": "10001",
    }
    address.update(overrides)
    return {"address": address}


class TestSingleLookup(unittest.TestCase):
    def setUp(self):
        self.session = mock.Mock()
        self.client = GeoclientClient(api_key="secret", base_url="https://geo.test/v2/", session=self.session)

    def test_success_with_borough(self):
        self.session.get.return_value = _response(_address_payload())

        result = self.client.normalize_address("100 main st", "MN")

        self.assertTrue(result.success)
        self.assertEqual(result.confidence, 1.0)
        self.assertEqual(result.latitude, 40.7501)
        self.assertEqual(result.bbl, "1012340001")
        self.assertEqual(result.bin, "1000001")
        self.assertEqual(result.normalized_address, "100 MAIN STREET")

        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "https://geo.test/v2/address.json")
        self.assertEqual(kwargs["params"], {"houseNumber": "100", "street": "main st", "borough": "manhattan"})
        self.assertEqual(kwargs["headers"]["Ocp-Apim-Subscription-Key"], "secret")

    def test_zip_locator_and_warning_code(self):
        self.session.get.return_value = _response(_address_payload(return_code="01"))
        result = self.client.normalize_address("100 Main St", "10001")
        self.assertTrue(result.success)
        self.assertEqual(result.confidence, 0.9)
        self.assertEqual(self.session.get.call_args.kwargs["params"]["zip"], "10001")

    def test_failures_never_raise(self):
        self.assertFalse(self.client.normalize_address("Main St", "1").success)
        self.assertIn("Invalid borough or ZIP", self.client.normalize_address("100 Main St", "XYZ").error)

        self.session.get.return_value = _response(status=500, text="boom")
        self.assertIn("500", self.client.normalize_address("100 Main St", "1").error)

        self.session.get.return_value = _response(_address_payload(return_code="11", message="NOT RECOGNIZED"))
        self.assertEqual(self.client.normalize_address("100 Main St", "1").error, "NOT RECOGNIZED")

        self.session.get.return_value = _response({})
        self.assertEqual(self.client.normalize_address("100 Main St", "1").error, "No address data in response")

        self.session.get.side_effect = requests.ConnectionError("down")
        result = self.client.normalize_address("100 Main St", "1")
        self.assertFalse(result.success)
        self.assertEqual(result.confidence, 0.0)

    def test_missing_api_key_fails_fast(self):
        client = GeoclientClient(api_key="", session=self.session)
        results = client.batch_normalize([GeocodeRequest("100 Main St", "1")] * 3)
        self.assertEqual(len(results), 3)
        self.assertTrue(all(not r.success for r in results))
        self.session.get.assert_not_called()


class TestBatchNormalize(unittest.TestCase):
    def test_preserves_input_order_and_bounds_concurrency(self):
        in_flight = 0
        peak = 0
        lock = threading.Lock()

        def fake_get(url, params=None, headers=None, timeout=None):
            nonlocal in_flight, peak
            with lock:
                in_flight += 1
                peak = max(peak, in_flight)
            try:
                house = params["houseNumber"]
                if house == "13":
                    raise RuntimeError("unexpected")
                return _response(_address_payload(houseNumber=house, latitude=f"40.{house}"))
            finally:
                with lock:
                    in_flight -= 1

        session = mock.Mock()
        session.get.side_effect = fake_get
        client = GeoclientClient(api_key="secret", session=session)
        reqs = [GeocodeRequest(f"{i} Main St", "1") for i in range(1, 31)]
        progress = []

        results = client.batch_normalize(
            reqs, max_per_second=1000, max_concurrent=4, on_progress=lambda done, total: progress.append(done)
        )

        self.assertEqual(len(results), 30)
        self.assertEqual(results[0].normalized_address, "1 MAIN STREET")
        self.assertEqual(results[29].latitude, 40.30)
        self.assertFalse(results[12].success)
        self.assertIn("unexpected", results[12].error)
        self.assertLessEqual(peak, 4)
        self.assertEqual(sorted(progress), list(range(1, 31)))

    def test_empty_batch(self):
        client = GeoclientClient(api_key="secret", session=mock.Mock())
        self.assertEqual(client.batch_normalize([]), [])


class TestRateLimiter(unittest.TestCase):
    def _fake_time(self):
        now = [0.0]
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        return now, sleeps, sleep

    def test_waits_when_window_is_full(self):
        now, sleeps, sleep = self._fake_time()
        limiter = RateLimiter(2, clock=lambda: now[0], sleep=sleep)
        for _ in range(4):
            limiter.acquire()

        self.assertEqual(len(sleeps), 1)
        self.assertAlmostEqual(now[0], 1.0)

    def test_never_exceeds_rate_in_any_second(self):
        now, _, sleep = self._fake_time()
        limiter = RateLimiter(40, clock=lambda: now[0], sleep=sleep)
        starts = []
        for _ in range(200):
            limiter.acquire()
            starts.append(now[0])

        self.assertLessEqual(sum(1 for t in starts if t < 1.0), 40)
        for t in starts:
            in_window = sum(1 for s in starts if t <= s < t + 1.0)
            self.assertLessEqual(in_window, 40)

    def test_rejects_non_positive_rate(self):
        with self.assertRaises(ValueError):
            RateLimiter(0)


class TestAddressHelpers(unittest.TestCase):
    def test_parse_borough_code(self):
        self.assertEqual(parse_borough_code("Brooklyn"), "3")
        self.assertEqual(parse_borough_code("si"), "5")
        self.assertIsNone(parse_borough_code("10001"))

    def test_simple_address_normalize(self):
        self.assertEqual(simple_address_normalize("  100 West 57th Street, Apt 5A "), "100 W 57TH ST APT 5A")
        self.assertEqual(simple_address_normalize("1 Grand Concourse Blvd."), "1 GRAND CONCOURSE BLVD")
        self.assertEqual(simple_address_normalize("350 5th Avenue, #12"), "350 5TH AVE #12")
        self.assertEqual(simple_address_normalize(None), "")


if __name__ == "__main__":
    unittest.main()
