"""HTTP client shared by the REST-based venue adapters."""

import logging
import random
import time
from typing import Any, Dict, Optional

import requests

from core.exceptions import VenueUnavailable

logger = logging.getLogger(__name__)


class VenueHttpClient:
    """
    Thin ``requests`` wrapper with timeouts and exponential backoff.

    Retries on:
    - 429 (rate limit)
    - 5xx (server errors)
    - Network errors (timeout, connection)

    Does NOT retry on other 4xx responses. Every failure surfaces as
    ``VenueUnavailable`` so callers can skip the venue for the cycle.
    """

    def __init__(self, venue: str, base_url: str, timeout: float = 10.0,
                 max_retries: int = 3, backoff_base: float = 1.0,
                 session: Optional[requests.Session] = None):
        self.venue = venue
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = backoff_base
        self.session = session or requests.Session()

    def request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None,
                json_body: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"{self.venue} API client error: {status_code} on {path}")
                    raise VenueUnavailable(self.venue, e) from e

                if status_code == 429:
                    logger.warning(f"{self.venue} rate limited (429) on {path}, attempt {attempt + 1}/{self.max_retries}")
                else:
                    logger.warning(f"{self.venue} server error ({status_code}) on {path}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"{self.venue} network error on {path}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.RequestException, ValueError) as e:
                # ValueError covers undecodable JSON bodies
                logger.error(f"{self.venue} request to {path} failed: {e}")
                raise VenueUnavailable(self.venue, e) from e

            if attempt < self.max_retries - 1:
                backoff = self.backoff_base * (2 ** attempt) + random.uniform(0, self.backoff_base)
                logger.info(f"Retrying {self.venue} in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {self.venue} {path}")
        raise VenueUnavailable(self.venue, last_exception)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, json_body: Dict[str, Any]) -> Any:
        return self.request("POST", path, json_body=json_body)
