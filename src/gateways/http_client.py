"""JSON-over-HTTP client shared by the yield oracle and swap gateways.

This module provides a small requests-based client with API-key
authentication, client-side rate limiting, timeouts and retry logic.
"""

import time
from typing import Any, Dict, Optional, Type

import requests

from src.utils.exceptions import GatewayError
from src.utils.logging import get_logger

logger = get_logger(__name__)


class JsonHttpClient:
    """POST JSON to an external API and return the decoded body.

    This class handles:
    - API key header and JSON content type
    - Rate limiting (sliding one-minute window)
    - Retry with linear backoff on connection errors, timeouts and 5xx
    - Translating transport failures into a gateway-specific exception

    Client errors (4xx) are never retried.

    Example:
        >>> client = JsonHttpClient("https://router.example", api_key="key")
        >>> body = client.post_json("/v1/quote", {"inputToken": "0x..."})
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        rate_limit_per_minute: int = 120,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        error_class: Type[GatewayError] = GatewayError,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root, without trailing slash
            api_key: Value sent in the ``x-api-key`` header
            timeout: Per-request timeout in seconds
            rate_limit_per_minute: Max requests per minute
            retry_attempts: Attempts per call (>= 1)
            retry_delay: Base delay between attempts in seconds
            error_class: Exception raised when a call finally fails
            session: Pre-built session (tests inject a mock)
        """
        if not base_url:
            raise ValueError("base_url is required")
        if retry_attempts < 1:
            raise ValueError(f"retry_attempts must be >= 1, got {retry_attempts}")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limit_per_minute = rate_limit_per_minute
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.error_class = error_class

        self._request_times: list[float] = []

        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_key:
            self.session.headers.update({"x-api-key": api_key})

        logger.debug(
            "JsonHttpClient initialized (%s, timeout: %.1fs, retries: %d)",
            self.base_url,
            timeout,
            retry_attempts,
        )

    def check_rate_limit(self) -> None:
        """Sleep if another request would exceed the per-minute budget."""
        current_time = time.time()
        one_minute_ago = current_time - 60
        self._request_times = [t for t in self._request_times if t > one_minute_ago]

        if len(self._request_times) >= self.rate_limit_per_minute:
            sleep_time = self._request_times[0] + 60 - current_time
            if sleep_time > 0:
                logger.warning(
                    "Rate limit reached (%d requests/min). Sleeping for %.2f seconds.",
                    self.rate_limit_per_minute,
                    sleep_time,
                )
                time.sleep(sleep_time)
                current_time = time.time()
                one_minute_ago = current_time - 60
                self._request_times = [t for t in self._request_times if t > one_minute_ago]

        self._request_times.append(current_time)

    def with_retry(self, func, *args, **kwargs):
        """Execute func with retry logic.

        Raises:
            GatewayError: (``error_class``) on a 4xx or when all attempts fail
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.retry_attempts):
            try:
                self.check_rate_limit()
                return func(*args, **kwargs)

            except requests.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if status is not None and status < 500:
                    body = e.response.text if e.response is not None else ""
                    raise self.error_class(f"HTTP {status}: {body}") from e
                last_exception = e

            except (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError) as e:
                last_exception = e

            except requests.RequestException as e:
                raise self.error_class(f"API request failed: {type(e).__name__}: {e}") from e

            logger.warning(
                "API request failed (attempt %d/%d): %s",
                attempt + 1,
                self.retry_attempts,
                last_exception,
            )
            if attempt < self.retry_attempts - 1:
                time.sleep(self.retry_delay * (attempt + 1))

        error_msg = f"API request failed after {self.retry_attempts} attempts: {last_exception}"
        logger.error(error_msg)
        raise self.error_class(error_msg) from last_exception

    def post_json(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST ``body`` to ``base_url + path`` and return the JSON object.

        Raises:
            GatewayError: (``error_class``) on transport failure, non-2xx
                or a body that is not a JSON object
        """
        url = f"{self.base_url}{path}"
        response = self.with_retry(self._post, url, body)

        try:
            data = response.json()
        except ValueError as e:
            raise self.error_class(f"Non-JSON response from {url}") from e

        if not isinstance(data, dict):
            raise self.error_class(f"Unexpected response from {url}: {type(data).__name__}")
        return data

    def _post(self, url: str, body: Dict[str, Any]) -> requests.Response:
        logger.debug("POST %s", url)
        response = self.session.post(url, json=body, timeout=self.timeout)
        response.raise_for_status()
        return response
