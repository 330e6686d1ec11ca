"""REST loader for the target store."""

import time
import logging
from typing import Any, Dict, List, Optional

import requests

from .base import BaseLoader, References
from ..errors import LoaderUnavailableError
from ..models.canonical import EntityType
from ..models.migration import utc_now
from ..models.record import CanonicalEnvelope, MigrationResult

logger = logging.getLogger(__name__)


class APILoader(BaseLoader):
    """
    Loader for the target store's REST API.

    Records are created with POST; a 409 conflict means the record (by
    external_id) already exists and is updated with PUT instead.
    """

    DEFAULT_ENDPOINTS = {
        EntityType.PATIENT.value: "/patients",
        EntityType.APPOINTMENT.value: "/appointments",
        EntityType.CHART.value: "/charts",
        EntityType.ENCOUNTER.value: "/encounters",
        EntityType.CONSENT.value: "/consents",
        EntityType.PHOTO.value: "/photos",
        EntityType.DOCUMENT.value: "/documents",
        EntityType.INVOICE.value: "/invoices",
    }

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        dry_run: bool = False,
        rate_limit: float = 10.0,
        timeout: float = 30.0,
        endpoints: Optional[Dict[str, str]] = None,
        page_size: int = 100,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the API loader.

        Args:
            base_url: Base URL for the target API
            api_key: Bearer token for the target API
            dry_run: If True, simulate without making changes
            rate_limit: Max requests per second
            timeout: Per-request timeout in seconds
            endpoints: Mapping of entity type -> endpoint path
            page_size: Page size when listing existing target records
            session: Custom requests session
        """
        super().__init__(dry_run=dry_run)
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.rate_limit = rate_limit
        self.timeout = timeout
        self.endpoints = {**self.DEFAULT_ENDPOINTS, **(endpoints or {})}
        self.page_size = page_size
        self._last_request_time = 0.0
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with authentication."""
        session = requests.Session()
        if self.api_key:
            session.headers["Authorization"] = f"Bearer {self.api_key}"
        session.headers["Content-Type"] = "application/json"
        return session

    def _rate_limit_wait(self):
        """Wait to respect rate limits."""
        if self.rate_limit > 0:
            elapsed = time.time() - self._last_request_time
            wait_time = (1.0 / self.rate_limit) - elapsed
            if wait_time > 0:
                time.sleep(wait_time)
        self._last_request_time = time.time()

    def _get_endpoint(self, entity: str) -> str:
        """Get the API endpoint for an entity."""
        return self.endpoints.get(entity, f"/{entity}s")

    def load_record(
        self,
        envelope: CanonicalEnvelope,
        references: Optional[References] = None
    ) -> MigrationResult:
        """Load a single record to the API."""
        if self.dry_run:
            return MigrationResult(
                record_id=envelope.canonical_id,
                target_id=f"dry-run-{envelope.canonical_id}",
                success=True,
                loaded_at=utc_now(),
            )

        if not self.base_url:
            raise LoaderUnavailableError("No target URL configured")

        payload = self.build_payload(envelope, references)
        url = f"{self.base_url}{self._get_endpoint(envelope.entity_type.value)}"

        self._rate_limit_wait()

        try:
            # Try POST first (create)
            response = self._session.post(url, json=payload, timeout=self.timeout)

            if response.status_code == 409:
                # Conflict - already created by an earlier attempt, update it
                response = self._session.put(f"{url}/{envelope.canonical_id}", json=payload, timeout=self.timeout)

        except requests.exceptions.RequestException as e:
            logger.error(f"Target API unreachable: {e}")
            raise LoaderUnavailableError(f"Target API unreachable: {e}") from e

        if response.status_code >= 500:
            raise LoaderUnavailableError(f"Target API error ({response.status_code})")

        if response.status_code >= 400:
            return self.rejected(envelope, f"HTTP {response.status_code}: {self._error_message(response)}")

        try:
            response_data = response.json() if response.text else {}
        except ValueError:
            response_data = {}

        if not isinstance(response_data, dict):
            return self.rejected(
                envelope,
                f"HTTP {response.status_code}: expected a JSON object, got {type(response_data).__name__}",
            )

        data = response_data.get("data")
        target_id = (
            response_data.get("id") or
            (data.get("id") if isinstance(data, dict) else None) or
            envelope.canonical_id
        )

        return MigrationResult(
            record_id=envelope.canonical_id,
            target_id=str(target_id),
            success=True,
            loaded_at=utc_now(),
        )

    def _error_message(self, response: requests.Response) -> str:
        """Pull a readable message out of an error response body."""
        try:
            error_data = response.json()
        except ValueError:
            return response.text[:500]
        if isinstance(error_data, dict):
            return str(error_data.get("message") or error_data.get("error") or error_data)[:500]
        return str(error_data)[:500]

    def existing_patients(self) -> List[Dict[str, Any]]:
        """
        Fetch the patients the target store already holds, page by page.

        Returns:
            Patient rows with id, names, email, phone and date_of_birth

        Raises:
            LoaderUnavailableError: If the target cannot be read
        """
        if self.dry_run or not self.base_url:
            return []

        url = f"{self.base_url}{self._get_endpoint(EntityType.PATIENT.value)}"
        patients: List[Dict[str, Any]] = []
        page = 1

        while True:
            self._rate_limit_wait()
            try:
                response = self._session.get(
                    url,
                    params={"page": page, "per_page": self.page_size},
                    timeout=self.timeout,
                )
            except requests.exceptions.RequestException as e:
                raise LoaderUnavailableError(f"Target API unreachable: {e}") from e

            if response.status_code >= 400:
                raise LoaderUnavailableError(f"Could not list target patients ({response.status_code})")

            try:
                body = response.json()
            except ValueError as e:
                raise LoaderUnavailableError("Target patient listing is not JSON") from e

            rows = body.get("data", []) if isinstance(body, dict) else body
            if not isinstance(rows, list):
                raise LoaderUnavailableError("Target patient listing has no list of patients")

            patients.extend(row for row in rows if isinstance(row, dict))
            if len(rows) < self.page_size:
                break
            page += 1

        logger.info(f"Found {len(patients)} existing patients in the target store")
        return patients

    def validate_connection(self) -> bool:
        """Validate connection to the API."""
        if self.dry_run:
            return True
        if not self.base_url:
            return False
        try:
            self._rate_limit_wait()
            response = self._session.get(self.base_url, timeout=self.timeout)
            return response.status_code < 500
        except requests.exceptions.RequestException as e:
            logger.error(f"API connection validation failed: {e}")
            return False
