"""
NYC Geoclient Batch Interface

Address -> coordinates/BBL/BIN through the NYC Geoclient v2 API.
Requests are dispatched by a bounded thread pool and paced by a
one-second sliding window (requests per second), since Geoclient enforces its own quota.
Any per-request problem becomes a failed GeocodeResult; nothing raises out
of `batch_normalize`.

Usage:
    client = GeoclientClient()
    results = client.batch_normalize([GeocodeRequest("100 Main St", "1")])
"""

import logging
import re
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config.settings import GEOCLIENT_BASE_URL, GEOCODE_CONFIG, NYC_GEOCLIENT_API_KEY, GeocodeConfig
from src.address import parse_house_number
from src.bbl import borough_code, borough_name

logger = logging.getLogger(__name__)

# Geosupport return codes: 00 exact, 01 success with warning
CONFIDENCE_BY_RETURN_CODE = {"00": 1.0, "01": 0.9}


@dataclass
class GeocodeRequest:
    address: str
    borough_or_zip: str


@dataclass
class GeocodeResult:
    success: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    bbl: Optional[str] = None
    bin: Optional[str] = None
    zip_code: Optional[str] = None
    confidence: float = 0.0
    normalized_address: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "GeocodeResult":
        return cls(success=False, confidence=0.0, error=error)


def parse_borough_code(value: str) -> Optional[str]:
    """Borough name/abbreviation/code -> "1".."5" (None for ZIPs and junk)."""
    code = borough_code(value)
    return code if code in {"1", "2", "3", "4", "5"} else None


# =============================================================================
# Rate limiting
# =============================================================================

class RateLimiter:
    """Thread-safe sliding window: at most `rate` acquisitions in any one-second window."""

    def __init__(self, rate: float, clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        # fractional rates stretch the window instead of the count
        self.capacity = max(1, int(rate))
        self.window = self.capacity / self.rate
        self._starts = deque()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            with self._lock:
                now = self._clock()
                while self._starts and self._starts[0] <= now - self.window:
                    self._starts.popleft()
                if len(self._starts) < self.capacity:
                    self._starts.append(now)
                    return
                wait = self._starts[0] + self.window - now
            self._sleep(wait)


# =============================================================================
# HTTP client
# =============================================================================

def create_session(config: GeocodeConfig = GEOCODE_CONFIG) -> requests.Session:
    """Create a requests session with retry logic and proper headers."""
    session = requests.Session()

    retry_strategy = Retry(
        total=config.max_retries,
        backoff_factor=config.retry_backoff,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry_strategy, pool_maxsize=config.max_concurrent)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    session.headers.update({
        "User-Agent": "Parcel-Graph-NYC/1.0",
        "Accept": "application/json",
        "Cache-Control": "no-cache",
    })
    return session


class GeoclientClient:
    """Thin Geoclient v2 client: single lookups plus rate-limited batches."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = GEOCLIENT_BASE_URL,
        session: Optional[requests.Session] = None,
        config: GeocodeConfig = GEOCODE_CONFIG,
    ):
        self.api_key = NYC_GEOCLIENT_API_KEY if api_key is None else api_key
        self.base_url = base_url.rstrip("/")
        self.config = config
        self.session = session or create_session(config)

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def normalize_address(self, address: str, borough_or_zip: str) -> GeocodeResult:
        if not self.available:
            return GeocodeResult.failure(
                "NYC Geoclient API key not configured. Set NYC_GEOCLIENT_API_KEY to enable address normalization."
            )

        parsed = parse_house_number(address or "")
        if not parsed:
            return GeocodeResult.failure(f"Could not parse house number from address: {address}")
        house_number, street = parsed

        params = {"houseNumber": house_number, "street": street}
        code = parse_borough_code(borough_or_zip)
        if code:
            params["borough"] = borough_name(code).lower()
        elif re.fullmatch(r"\d{5}", str(borough_or_zip or "").strip()):
            params["zip"] = str(borough_or_zip).strip()
        else:
            return GeocodeResult.failure(f"Invalid borough or ZIP code: {borough_or_zip}")

        try:
            response = self.session.get(
                f"{self.base_url}/address.json",
                params=params,
                headers={"Ocp-Apim-Subscription-Key": self.api_key},
                timeout=self.config.request_timeout,
            )
            if not response.ok:
                return GeocodeResult.failure(f"Geoclient API error: {response.status_code} - {response.text[:200]}")
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            return GeocodeResult.failure(f"Geoclient request failed: {e}")

        addr = data.get("address") if isinstance(data, dict) else None
        if not addr:
            return GeocodeResult.failure("No address data in response")

        return_code = addr.get("geosupportReturnCode") or ""
        if return_code not in CONFIDENCE_BY_RETURN_CODE:
            return GeocodeResult.failure(
                addr.get("message") or addr.get("message2") or f"Geoclient return code: {return_code}"
            )

        street_name = addr.get("boePreferredStreetName") or addr.get("giStreetName1") or street
        normalized = f"{addr.get('houseNumber') or house_number} {street_name}".upper().strip()
        return GeocodeResult(
            success=True,
            latitude=_to_float(addr.get("latitude")),
            longitude=_to_float(addr.get("longitude")),
            bbl=addr.get("bbl") or None,
            bin=addr.get("buildingIdentificationNumber") or None,
            zip_code=addr.get("zipCode") or None,
            confidence=CONFIDENCE_BY_RETURN_CODE[return_code],
            normalized_address=normalized,
        )

    def batch_normalize(
        self,
        requests_: List[GeocodeRequest],
        max_per_second: Optional[int] = None,
        max_concurrent: Optional[int] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> List[GeocodeResult]:
        """
        Geocode many addresses; results come back in input order.

        At most `max_concurrent` requests are in flight and at most
        `max_per_second` start in any one second.
        """
        if not requests_:
            return []
        if not self.available:
            return [GeocodeResult.failure("NYC Geoclient API key not configured") for _ in requests_]

        max_per_second = max_per_second or self.config.max_per_second
        max_concurrent = min(max_concurrent or self.config.max_concurrent, max_per_second)
        limiter = RateLimiter(max_per_second)
        completed = 0
        lock = threading.Lock()

        logger.info(f"  Processing {len(requests_):,} addresses ({max_per_second}/sec, {max_concurrent} concurrent)")

        def run(req: GeocodeRequest) -> GeocodeResult:
            nonlocal completed
            limiter.acquire()
            try:
                result = self.normalize_address(req.address, req.borough_or_zip)
            except Exception as e:
                logger.debug(f"Geocode failed for {req.address!r}: {e}")
                result = GeocodeResult.failure(f"Geoclient request failed: {e}")
            with lock:
                completed += 1
                if on_progress:
                    on_progress(completed, len(requests_))
            return result

        with ThreadPoolExecutor(max_workers=max_concurrent) as executor:
            return list(executor.map(run, requests_))


def _to_float(value) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
