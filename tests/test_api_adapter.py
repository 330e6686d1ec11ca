"""
Tests for the vendor API ingest adapter.

The HTTP session is mocked; tests assert on the requests issued and on how
responses are paged into raw records.
"""

from unittest.mock import Mock

import pytest
import requests

from clinic_migration.errors import IngestError
from clinic_migration.ingest import create_adapter
from clinic_migration.ingest.api_adapter import APIIngestAdapter
from clinic_migration.models.migration import SourceVendor


def _response(payload=None, status_code=200, text=""):
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = text
    response.json.return_value = payload
    return response


@pytest.fixture
def session():
    return Mock()


class TestAestheticsRecordREST:
    """Tests for page-number pagination against the REST API."""

    def test_first_page(self, session):
        """The first page requests page 1 and returns the next page number."""
        session.request.return_value = _response({
            "data": [{"id": 1, "first_name": "Ada"}, {"id": 2, "first_name": "Grace"}],
            "meta": {"current_page": 1, "last_page": 2},
        })
        adapter = APIIngestAdapter(SourceVendor.AESTHETICS_RECORD, page_size=2, session=session)

        records, marker = adapter.fetch_page({"api_key": "key-1"}, "patients")

        assert [r.source_id for r in records] == ["1", "2"]
        assert records[0].source_entity_type == "patients"
        assert marker == 2

        method, url = session.request.call_args[0]
        kwargs = session.request.call_args[1]
        assert method == "GET"
        assert url == "https://api.aestheticrecord.com/api/v1/patients"
        assert kwargs["params"] == {"page": 1, "per_page": 2}
        assert kwargs["headers"]["Authorization"] == "Bearer key-1"

    def test_last_page_from_meta(self, session):
        """Reaching meta.last_page ends pagination."""
        session.request.return_value = _response({
            "data": [{"id": 3}],
            "meta": {"current_page": 2, "last_page": 2},
        })
        adapter = APIIngestAdapter(SourceVendor.AESTHETICS_RECORD, page_size=2, session=session)

        records, marker = adapter.fetch_page({"api_key": "key-1"}, "patients", 2)

        assert [r.source_id for r in records] == ["3"]
        assert marker is None

    def test_short_page_without_meta(self, session):
        """Without meta, a short page is the last page."""
        session.request.return_value = _response({"data": [{"id": 3}]})
        adapter = APIIngestAdapter(SourceVendor.AESTHETICS_RECORD, page_size=2, session=session)

        _, marker = adapter.fetch_page({"api_key": "key-1"}, "invoices")

        assert marker is None

    def test_requires_api_key(self, session):
        """REST ingest without an api_key fails before any request."""
        adapter = APIIngestAdapter(SourceVendor.AESTHETICS_RECORD, session=session)

        with pytest.raises(IngestError):
            adapter.fetch_page({}, "patients")
        session.request.assert_not_called()

    def test_http_error(self, session):
        """Non-2xx responses raise IngestError."""
        session.request.return_value = _response(status_code=500, text="Internal Server Error")
        adapter = APIIngestAdapter(SourceVendor.AESTHETICS_RECORD, session=session)

        with pytest.raises(IngestError, match="500"):
            adapter.fetch_page({"api_key": "key-1"}, "patients")

    def test_transport_error(self, session):
        """Connection failures raise IngestError."""
        session.request.side_effect = requests.exceptions.ConnectionError("connection refused")
        adapter = APIIngestAdapter(SourceVendor.AESTHETICS_RECORD, session=session)

        with pytest.raises(IngestError):
            adapter.fetch_page({"api_key": "key-1"}, "patients")

    def test_unknown_entity(self, session):
        """Entities the vendor does not expose are rejected."""
        adapter = APIIngestAdapter(SourceVendor.AESTHETICS_RECORD, session=session)

        with pytest.raises(IngestError):
            adapter.fetch_page({"api_key": "key-1"}, "clients")

    def test_fetch_raw_records_walks_pages(self, session):
        """Pages are fetched until the source reports no more."""
        session.request.side_effect = [
            _response({"data": [{"id": 1}, {"id": 2}], "meta": {"last_page": 2}}),
            _response({"data": [{"id": 3}], "meta": {"last_page": 2}}),
        ]
        adapter = APIIngestAdapter(SourceVendor.AESTHETICS_RECORD, page_size=2, session=session)
        adapter.list_entities = Mock(return_value=["patients"])

        pages = list(adapter.fetch_raw_records({"api_key": "key-1"}))

        assert [p.page_index for p in pages] == [0, 1]
        assert [p.marker for p in pages] == [None, 2]
        assert pages[-1].is_last


class TestBoulevardGraphQL:
    """Tests for Boulevard's GraphQL API."""

    def test_clients_page_number(self, session):
        """Client search pages by page number until totalEntries is reached."""
        session.request.return_value = _response({
            "data": {"clientSearch": {"totalEntries": 3, "clients": [{"id": "c1"}, {"id": "c2"}]}}
        })
        adapter = APIIngestAdapter(SourceVendor.BOULEVARD, page_size=2, session=session)

        records, marker = adapter.fetch_page({"api_key": "tok"}, "clients")

        assert [r.source_id for r in records] == ["c1", "c2"]
        assert marker == 1
        body = session.request.call_args[1]["json"]
        assert body["variables"]["pageNumber"] == 0
        assert body["variables"]["pageSize"] == 2

    def test_cursor_pagination(self, session):
        """Connections page by cursor and stop when hasNextPage is false."""
        session.request.side_effect = [
            _response({"data": {"appointments": {
                "edges": [{"node": {"id": "a1"}}],
                "pageInfo": {"hasNextPage": True, "endCursor": "cur-1"},
            }}}),
            _response({"data": {"appointments": {
                "edges": [{"node": {"id": "a2"}}],
                "pageInfo": {"hasNextPage": False, "endCursor": "cur-2"},
            }}}),
        ]
        adapter = APIIngestAdapter(SourceVendor.BOULEVARD, page_size=1, session=session)

        records, marker = adapter.fetch_page({"api_key": "tok"}, "appointments")
        assert [r.source_id for r in records] == ["a1"]
        assert marker == "cur-1"

        records, marker = adapter.fetch_page({"api_key": "tok"}, "appointments", marker)
        assert [r.source_id for r in records] == ["a2"]
        assert marker is None
        assert session.request.call_args[1]["json"]["variables"]["after"] == "cur-1"

    def test_graphql_errors(self, session):
        """GraphQL errors without data raise IngestError."""
        session.request.return_value = _response({"errors": [{"message": "Not authorized"}]})
        adapter = APIIngestAdapter(SourceVendor.BOULEVARD, session=session)

        with pytest.raises(IngestError, match="Not authorized"):
            adapter.fetch_page({"api_key": "tok"}, "orders")

    def test_login_with_email_and_password(self, session):
        """Email/password credentials log in once and send the CSRF token."""
        session.cookies.get.return_value = "csrf-123"
        session.request.side_effect = [
            _response(status_code=204),
            _response({"id": "identity"}),
            _response({"data": {"orders": {"edges": [], "pageInfo": {"hasNextPage": False}}}}),
        ]
        adapter = APIIngestAdapter(SourceVendor.BOULEVARD, session=session)

        records, marker = adapter.fetch_page({"email": "ops@clinic.test", "password": "pw"}, "orders")

        assert records == []
        assert marker is None
        login_call = session.request.call_args_list[0]
        assert login_call[0][1].endswith("/auth/sessions")
        assert session.request.call_args_list[2][1]["headers"]["csrf-token"] == "csrf-123"

    def test_login_failure(self, session):
        """A rejected login raises IngestError."""
        session.request.return_value = _response(status_code=401)
        adapter = APIIngestAdapter(SourceVendor.BOULEVARD, session=session)

        with pytest.raises(IngestError):
            adapter.fetch_page({"email": "ops@clinic.test", "password": "wrong"}, "clients")

    def test_validate_source(self):
        """Boulevard needs a token or a login."""
        adapter = APIIngestAdapter(SourceVendor.BOULEVARD, session=Mock())

        assert adapter.validate_source({"api_key": "tok"}) == []
        assert adapter.validate_source({"email": "ops@clinic.test"})


class TestCreateAdapter:
    """Tests for the adapter factory."""

    def test_api_vendor(self, config):
        """API vendors get an APIIngestAdapter using the configured page size."""
        adapter = create_adapter(SourceVendor.BOULEVARD, config)

        assert isinstance(adapter, APIIngestAdapter)
        assert adapter.page_size == config.page_size
        assert adapter.list_entities({}) == ["clients", "appointments", "orders"]

    def test_csv_without_source(self, config):
        """csv_upload needs an export path."""
        with pytest.raises(ValueError):
            create_adapter(SourceVendor.CSV_UPLOAD, config)
