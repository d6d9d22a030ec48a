"""Retrying HTTP client for the Polymarket data API."""
import logging
import requests
from typing import Optional, Dict, Any, List, Union
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

logger = logging.getLogger("polymarket_pnl_tracker")

DATA_API_BASE = "https://data-api.polymarket.com"
PROFILE_PAGE_BASE = "https://polymarket.com/profile"

# Default retry settings
DEFAULT_MAX_RETRIES = 3
DEFAULT_MIN_WAIT = 1  # seconds
DEFAULT_MAX_WAIT = 30  # seconds
DEFAULT_TIMEOUT = 30  # seconds

JSONPayload = Union[Dict[str, Any], List[Any]]


class APIError(Exception):
    """Raised when API request fails after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DataAPIClient:
    """Client for the Polymarket data API and public profile pages."""

    def __init__(
        self,
        base_url: str = DATA_API_BASE,
        profile_base_url: str = PROFILE_PAGE_BASE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        min_wait: float = DEFAULT_MIN_WAIT,
        max_wait: float = DEFAULT_MAX_WAIT,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.profile_base_url = profile_base_url.rstrip("/")
        self.max_retries = max_retries
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.timeout = timeout
        self._session: Optional[requests.Session] = None

    @classmethod
    def from_config(cls, api_config: Dict[str, Any]) -> "DataAPIClient":
        """Build a client from the ``api`` section of the config."""
        return cls(
            base_url=api_config.get("data_api_url", DATA_API_BASE),
            profile_base_url=api_config.get("profile_url", PROFILE_PAGE_BASE),
            max_retries=api_config.get("max_retries", DEFAULT_MAX_RETRIES),
            min_wait=api_config.get("min_wait", DEFAULT_MIN_WAIT),
            max_wait=api_config.get("max_wait", DEFAULT_MAX_WAIT),
            timeout=api_config.get("timeout", DEFAULT_TIMEOUT),
        )

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({
                "Accept": "application/json",
                "User-Agent": "PolymarketPnLTracker/1.0",
            })
        return self._session

    def close(self) -> None:
        """Close the HTTP session."""
        if self._session is not None:
            self._session.close()
            self._session = None

    def _make_request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        expect_json: bool = True,
    ) -> Union[JSONPayload, str]:
        """Make an HTTP request with retry logic."""

        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(
                multiplier=1, min=self.min_wait, max=self.max_wait
            ),
            retry=retry_if_exception_type(
                (requests.ConnectionError, requests.Timeout)
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        def do_request():
            resp = self.session.request(
                method=method,
                url=url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            if expect_json:
                return resp.json()
            return resp.text

        try:
            return do_request()
        except requests.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            raise APIError(f"HTTP {status_code}: {e}", status_code=status_code)
        except requests.JSONDecodeError as e:
            # Subclass of RequestException, so it must be caught first
            raise APIError(f"Invalid JSON from {url}: {e}")
        except requests.RequestException as e:
            raise APIError(f"Request failed after {self.max_retries} retries: {e}")

    def get(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None
    ) -> JSONPayload:
        """Make a GET request against the data API."""
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        return self._make_request("GET", url, params=params)

    # Data API endpoints
    def get_positions(self, wallet_address: str) -> List[Dict[str, Any]]:
        """Fetch open positions for a wallet."""
        result = self.get("/positions", params={"user": wallet_address.lower()})
        return _as_list(result, "positions")

    def get_trades(self, wallet_address: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Fetch the most recent trades for a wallet, newest first."""
        result = self.get(
            "/trades", params={"user": wallet_address.lower(), "limit": limit}
        )
        return _as_list(result, "trades")

    def get_activity(self, wallet_address: str, limit: int = 1) -> List[Dict[str, Any]]:
        """Fetch activity entries for a wallet (they carry profile fields)."""
        result = self.get(
            "/activity", params={"user": wallet_address.lower(), "limit": limit}
        )
        return _as_list(result, "activity")

    def get_profile_page(self, username: str) -> str:
        """Fetch the public profile page HTML for a username."""
        url = f"{self.profile_base_url}/@{username}"
        return self._make_request(
            "GET", url, headers={"Accept": "text/html"}, expect_json=False
        )


def _as_list(result: JSONPayload, key: str) -> List[Dict[str, Any]]:
    # The data API returns bare lists; tolerate a wrapped object as well
    if isinstance(result, list):
        return result
    if isinstance(result, dict):
        items = result.get(key) or result.get("data") or []
        if isinstance(items, list):
            return items
    raise APIError(f"Unexpected response shape for {key}: {type(result).__name__}")
