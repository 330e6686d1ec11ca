"""API-based ingest adapter for practice-management platforms."""

import time
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import BaseIngestAdapter, Marker
from ..errors import IngestError
from ..models.migration import SourceVendor
from ..models.record import RawRecord

logger = logging.getLogger(__name__)


BOULEVARD_CLIENTS_QUERY = """query ClientSearch($query: String, $pageSize: Int, $pageNumber: Int, $filter: JSON) {
  clientSearch(query: $query, pageSize: $pageSize, pageNumber: $pageNumber, filter: $filter) {
    totalEntries
    clients {
      id firstName lastName fullName email phoneNumber dob pronoun sexAssignedAtBirth active
      address { line1 line2 city state zip }
      tags { id name }
      bookingMemo { text }
    }
  }
}"""

BOULEVARD_APPOINTMENTS_QUERY = """query($first: Int, $after: String) {
  appointments(first: $first, after: $after) {
    edges { node {
      id
      client { id }
      staff { firstName lastName }
      service { id name }
      startAt endAt state notes
    } }
    pageInfo { hasNextPage endCursor }
  }
}"""

BOULEVARD_ORDERS_QUERY = """query($first: Int, $after: String) {
  orders(first: $first, after: $after) {
    edges { node {
      id
      client { id }
      number state total subtotal totalTax notes closedAt
      lineItems { description service { id } quantity unitPrice total }
    } }
    pageInfo { hasNextPage endCursor }
  }
}"""


class APIIngestAdapter(BaseIngestAdapter):
    """
    Ingest adapter for network APIs.

    Supports:
    - Boulevard (GraphQL; client search by page number, everything else by cursor)
    - Aesthetics Record (REST; page-number pagination)
    - Retry with backoff on 429 and 5xx
    - Optional client-side rate limiting

    Only read operations are ever issued against the source.
    """

    # Vendor-specific configurations
    VENDOR_CONFIGS = {
        SourceVendor.BOULEVARD: {
            "base_url": "https://dashboard.boulevard.io",
            "protocol": "graphql",
            "graph_path": "/api/v1.0/graph",
            "session_path": "/auth/sessions",
            "identity_path": "/auth/identities",
        },
        SourceVendor.AESTHETICS_RECORD: {
            "base_url": "https://api.aestheticrecord.com/api/v1",
            "protocol": "rest",
            "data_field": "data",
            "page_param": "page",
            "size_param": "per_page",
            "id_field": "id",
        },
    }

    # Source entity -> how to fetch it, in ingest order
    ENTITY_SOURCES = {
        SourceVendor.BOULEVARD: {
            "clients": {"query": BOULEVARD_CLIENTS_QUERY, "root": "clientSearch", "pagination": "page_number"},
            "appointments": {"query": BOULEVARD_APPOINTMENTS_QUERY, "root": "appointments", "pagination": "cursor"},
            "orders": {"query": BOULEVARD_ORDERS_QUERY, "root": "orders", "pagination": "cursor"},
        },
        SourceVendor.AESTHETICS_RECORD: {
            "patients": {"endpoint": "/patients"},
            "appointments": {"endpoint": "/appointments"},
            "procedures": {"endpoint": "/procedures"},
            "invoices": {"endpoint": "/invoices"},
        },
    }

    def __init__(
        self,
        vendor: SourceVendor,
        page_size: int = 100,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        retry_config: Optional[Dict[str, Any]] = None,
        timeout: float = 30.0,
        rate_limit: Optional[float] = None
    ):
        """
        Initialize the API adapter.

        Args:
            vendor: Source platform
            page_size: Records requested per page
            base_url: Override the vendor's base URL
            session: Custom requests session
            retry_config: {"max_retries", "backoff_factor"}
            timeout: Per-request timeout in seconds
            rate_limit: Maximum requests per second
        """
        super().__init__(page_size=page_size)
        self.vendor = SourceVendor(vendor)
        if self.vendor not in self.VENDOR_CONFIGS:
            raise ValueError(f"No API configuration for vendor: {self.vendor.value}")

        self._config = self.VENDOR_CONFIGS[self.vendor]
        self._base_url = base_url
        self.retry_config = retry_config or {"max_retries": 3, "backoff_factor": 2.0}
        self.timeout = timeout
        self._session = session or self._create_session()
        self._rate_limit_delay = 1 / rate_limit if rate_limit else 0
        self._authenticated_as: Optional[str] = None
        self._csrf_token: Optional[str] = None

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retries = Retry(
            total=self.retry_config.get("max_retries", 3),
            backoff_factor=self.retry_config.get("backoff_factor", 2.0),
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    @property
    def base_url(self) -> str:
        """Get the base URL for API requests."""
        return (self._base_url or self._config["base_url"]).rstrip("/")

    def list_entities(self, credentials: Dict[str, Any]) -> List[str]:
        return list(self.ENTITY_SOURCES[self.vendor])

    def fetch_page(
        self,
        credentials: Dict[str, Any],
        entity: str,
        marker: Marker = None
    ) -> Tuple[List[RawRecord], Marker]:
        source = self.ENTITY_SOURCES[self.vendor].get(entity)
        if source is None:
            raise IngestError(f"{self.vendor.value} has no entity named {entity}")

        # Apply rate limiting
        if self._rate_limit_delay > 0:
            time.sleep(self._rate_limit_delay)

        if self._config["protocol"] == "graphql":
            return self._fetch_graphql_page(credentials, entity, source, marker)
        return self._fetch_rest_page(credentials, entity, source, marker)

    # GraphQL (Boulevard)

    def _fetch_graphql_page(
        self,
        credentials: Dict[str, Any],
        entity: str,
        source: Dict[str, Any],
        marker: Marker
    ) -> Tuple[List[RawRecord], Marker]:
        if source["pagination"] == "page_number":
            page_number = int(marker or 0)
            data = self._graphql(credentials, source["query"], {
                "query": "",
                "pageSize": self.page_size,
                "pageNumber": page_number,
                "filter": "null",
            })
            search = data.get(source["root"]) or {}
            nodes = search.get("clients") or []
            total = search.get("totalEntries") or 0
            has_more = bool(nodes) and (page_number + 1) * self.page_size < total
            next_marker = page_number + 1 if has_more else None
        else:
            data = self._graphql(credentials, source["query"], {"first": self.page_size, "after": marker})
            connection = data.get(source["root"]) or {}
            nodes = [edge.get("node") or {} for edge in connection.get("edges") or []]
            page_info = connection.get("pageInfo") or {}
            next_marker = page_info.get("endCursor") if page_info.get("hasNextPage") else None

        records = [self.create_raw_record(entity, node) for node in nodes]
        logger.debug(f"Fetched {len(records)} {entity} from {self.vendor.value}")
        return records, next_marker

    def _graphql(self, credentials: Dict[str, Any], query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Run a GraphQL query, re-authenticating once if the session expired."""
        self._ensure_authenticated(credentials)
        url = f"{self.base_url}{self._config['graph_path']}"
        body = {"query": query, "variables": variables}

        response = self._request("POST", url, json=body, headers=self._get_auth_headers(credentials))
        if response.status_code in (401, 403) and not credentials.get("api_key"):
            logger.info("Boulevard session expired, re-authenticating")
            self._authenticated_as = None
            self._ensure_authenticated(credentials)
            response = self._request("POST", url, json=body, headers=self._get_auth_headers(credentials))

        if not response.ok:
            raise IngestError(f"{self.vendor.value} API error ({response.status_code}): {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise IngestError(f"{self.vendor.value} returned a non-JSON response") from e

        if payload.get("errors") and not payload.get("data"):
            messages = "; ".join(str(err.get("message", err)) for err in payload["errors"])
            raise IngestError(f"{self.vendor.value} GraphQL error: {messages}")
        return payload.get("data") or {}

    def _ensure_authenticated(self, credentials: Dict[str, Any]) -> None:
        """Log in with email/password unless an API token was supplied."""
        if credentials.get("api_key"):
            return
        email = credentials.get("email")
        password = credentials.get("password")
        if not email or not password:
            raise IngestError(f"{self.vendor.value} requires an api_key or email and password credentials")
        if self._authenticated_as == email:
            return

        session_res = self._request(
            "POST",
            f"{self.base_url}{self._config['session_path']}",
            json={"email": email, "password": password},
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            allow_redirects=False,
        )
        if session_res.status_code not in (200, 204):
            raise IngestError(f"{self.vendor.value} login failed ({session_res.status_code})")

        identity_res = self._request(
            "GET",
            f"{self.base_url}{self._config['identity_path']}",
            headers={"Accept": "application/json"},
            allow_redirects=False,
        )
        if identity_res.status_code == 401:
            raise IngestError(f"{self.vendor.value} login failed: invalid email or password")

        self._csrf_token = self._session.cookies.get("csrf-token")
        self._authenticated_as = email
        logger.info(f"Authenticated with {self.vendor.value}")

    def _get_auth_headers(self, credentials: Dict[str, Any]) -> Dict[str, str]:
        """Get authentication headers for the vendor."""
        headers = {"Accept": "application/json"}
        if credentials.get("api_key"):
            headers["Authorization"] = f"Bearer {credentials['api_key']}"
        elif self._csrf_token:
            headers["csrf-token"] = self._csrf_token
        return headers

    # REST (Aesthetics Record)

    def _fetch_rest_page(
        self,
        credentials: Dict[str, Any],
        entity: str,
        source: Dict[str, Any],
        marker: Marker
    ) -> Tuple[List[RawRecord], Marker]:
        if not credentials.get("api_key"):
            raise IngestError(f"{self.vendor.value} requires an api_key credential")

        page = int(marker or 1)
        url = f"{self.base_url}{source['endpoint']}"
        params = {self._config["page_param"]: page, self._config["size_param"]: self.page_size}

        response = self._request("GET", url, params=params, headers=self._get_auth_headers(credentials))
        if not response.ok:
            raise IngestError(f"{self.vendor.value} API error ({response.status_code}): {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise IngestError(f"{self.vendor.value} returned a non-JSON response") from e

        items = payload.get(self._config["data_field"], []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            items = [items]

        meta = (payload.get("meta") or {}) if isinstance(payload, dict) else {}
        if "last_page" in meta:
            has_more = page < int(meta["last_page"])
        else:
            has_more = len(items) >= self.page_size

        records = [
            self.create_raw_record(entity, item, id_field=self._config["id_field"])
            for item in items if isinstance(item, dict)
        ]
        return records, (page + 1 if has_more and items else None)

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Issue a request, converting transport failures to IngestError."""
        try:
            return self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"Request to {self.vendor.value} failed: {str(e)}")
            raise IngestError(f"Cannot reach {self.vendor.value}: {str(e)}") from e

    def validate_source(self, credentials: Dict[str, Any]) -> List[str]:
        """Validate the API source configuration."""
        errors = []
        if not self.base_url:
            errors.append("Base URL could not be determined")
        if self.vendor == SourceVendor.BOULEVARD:
            if not credentials.get("api_key") and not (credentials.get("email") and credentials.get("password")):
                errors.append("Boulevard requires an api_key or email and password")
        elif not credentials.get("api_key"):
            errors.append("API key is required for API ingest")
        return errors
